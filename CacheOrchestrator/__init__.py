"""CacheOrchestrator — per-site Varnish caching in front of nginx."""

__version__ = "1.0.0"

from .exceptions import (
    AlreadyEnabled,
    IllegalTransition,
    LockTimeoutError,
    NotEnabled,
    OrchestratorError,
    RollbackPartial,
    SiteNotFoundError,
    StepFailed,
    StoreError,
    ValidationError,
    WorkflowCancelled,
)
from .models import (
    CacheState,
    EnableRequest,
    PurgeMode,
    PurgeRequest,
    PurgeResult,
    Site,
    Topology,
    WorkflowResult,
)
from .orchestrator import CacheOrchestrator
from .state_store import StateStore
from .step_engine import ExecutionTrace, ProvisioningStep, StepEngine

__all__ = [
    "AlreadyEnabled",
    "CacheOrchestrator",
    "CacheState",
    "EnableRequest",
    "ExecutionTrace",
    "IllegalTransition",
    "LockTimeoutError",
    "NotEnabled",
    "OrchestratorError",
    "ProvisioningStep",
    "PurgeMode",
    "PurgeRequest",
    "PurgeResult",
    "RollbackPartial",
    "SiteNotFoundError",
    "Site",
    "StateStore",
    "StepEngine",
    "StepFailed",
    "StoreError",
    "Topology",
    "ValidationError",
    "WorkflowCancelled",
    "WorkflowResult",
]

"""Pydantic models for the CacheOrchestrator module."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from policy.vcl import normalize_hosts

MEMORY_BUDGET_PATTERN = r"^[1-9][0-9]*[KMGTkmgt]?$"


class Topology(str, Enum):
    """Which service binds the public ports."""

    SHARED_PORT = "shared_port"
    DEDICATED_PORT = "dedicated_port"


class PurgeMode(str, Enum):
    ALL = "all"
    PATTERN = "pattern"
    SINGLE = "single"


class CacheState(BaseModel):
    """Desired caching state of one site.

    While ``enabled`` is False the other fields are historical only.
    """

    enabled: bool = False
    ttl_seconds: int | None = Field(default=None, ge=0)
    memory_budget: str | None = Field(default=None, pattern=MEMORY_BUDGET_PATTERN)
    topology: Topology | None = None
    backend_port: int | None = Field(default=None, ge=1, le=65535)

    @model_validator(mode="after")
    def _check_invariants(self) -> CacheState:
        dedicated = self.topology is Topology.DEDICATED_PORT
        if dedicated and self.backend_port is None:
            raise ValueError("backend_port is required for dedicated_port topology")
        if not dedicated and self.backend_port is not None:
            raise ValueError("backend_port is only valid for dedicated_port topology")
        if self.enabled and (
            self.ttl_seconds is None
            or self.memory_budget is None
            or self.topology is None
        ):
            raise ValueError(
                "enabled state requires ttl_seconds, memory_budget and topology"
            )
        return self


class Site(BaseModel):
    """One tenant web property on a host."""

    site_id: str = Field(min_length=1)
    host_id: str = Field(min_length=1)
    domain: str
    aliases: list[str] = Field(default_factory=list)
    cache: CacheState = Field(default_factory=CacheState)

    @field_validator("aliases", mode="before")
    @classmethod
    def _split_aliases(cls, value: Any) -> Any:
        # Aliases were historically stored as one comma separated string.
        if isinstance(value, str):
            return [part for part in value.split(",")]
        return value

    @model_validator(mode="after")
    def _normalize_hosts(self) -> Site:
        hosts = normalize_hosts(self.domain, self.aliases)
        self.domain = hosts[0]
        self.aliases = hosts[1:]
        return self

    @property
    def hosts(self) -> list[str]:
        return [self.domain, *self.aliases]


class EnableRequest(BaseModel):
    """Parameters of an Enable workflow."""

    ttl_seconds: int = Field(ge=0)
    memory_budget: str = Field(pattern=MEMORY_BUDGET_PATTERN)
    topology: Topology = Topology.SHARED_PORT
    backend_port: int | None = None

    @model_validator(mode="after")
    def _check_backend_port(self) -> EnableRequest:
        if self.topology is Topology.DEDICATED_PORT and self.backend_port is None:
            raise ValueError("backend_port is required for dedicated_port topology")
        if self.topology is Topology.SHARED_PORT and self.backend_port is not None:
            raise ValueError("backend_port is only valid for dedicated_port topology")
        return self

    def to_state(self) -> CacheState:
        return CacheState(
            enabled=True,
            ttl_seconds=self.ttl_seconds,
            memory_budget=self.memory_budget.upper(),
            topology=self.topology,
            backend_port=self.backend_port,
        )


class PurgeRequest(BaseModel):
    """Parameters of a Purge workflow."""

    mode: PurgeMode = PurgeMode.ALL
    pattern: str | None = None
    path: str | None = None

    @model_validator(mode="after")
    def _check_mode(self) -> PurgeRequest:
        if self.mode is PurgeMode.PATTERN and not (self.pattern or "").strip():
            raise ValueError("pattern is required for pattern purge")
        if self.mode is PurgeMode.SINGLE:
            path = (self.path or "").strip()
            if not path:
                raise ValueError("path is required for single purge")
            if any(ch.isspace() for ch in path):
                raise ValueError("path must not contain whitespace")
            if not path.startswith("/"):
                path = "/" + path
            self.path = path
        return self


class WorkflowResult(BaseModel):
    """Outcome of a successful Enable or Disable workflow."""

    success: bool
    workflow: str
    site_id: str
    request_id: str = Field(default_factory=lambda: uuid4().hex)
    performed_steps: list[str] = Field(default_factory=list)
    skipped_steps: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class PurgeResult(BaseModel):
    """Outcome of a Purge workflow."""

    site_id: str
    mode: PurgeMode
    mechanism: str
    target: str
    output: str = ""
    request_id: str = Field(default_factory=lambda: uuid4().hex)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

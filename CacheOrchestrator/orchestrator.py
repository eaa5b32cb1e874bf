"""CacheOrchestrator — top-level entry point for cache workflows.

Validates requests, checks them against the recorded desired state, runs
the workflow's steps through the StepEngine and commits the new desired
state only once every step succeeded.
"""

from __future__ import annotations

import logging
import shlex
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, TypeVar
from uuid import uuid4

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from infra.channel import CommandChannel
from infra.exceptions import ChannelError, CommandFailed
from infra.factory import ChannelFactory
from infra.inventory import HostInventory
from policy import vcl

from .audit import AuditJournal
from .config import OrchestratorConfig
from .exceptions import (
    AlreadyEnabled,
    IllegalTransition,
    NotEnabled,
    OrchestratorError,
    RollbackPartial,
    StepFailed,
    ValidationError,
)
from .locks import LockRegistry
from .logger import workflow_context
from .models import (
    EnableRequest,
    PurgeMode,
    PurgeRequest,
    PurgeResult,
    Site,
    Topology,
    WorkflowResult,
)
from .state_store import StateStore
from .step_engine import ExecutionTrace, ProvisioningStep, StepEngine
from .steps import StepContext
from .workflows import build_disable_steps, build_enable_steps, build_purge_step

logger = logging.getLogger(__name__)

_ModelT = TypeVar("_ModelT", bound=BaseModel)


def _parse(model: type[_ModelT], **kwargs: Any) -> _ModelT:
    """Build *model* from caller input, mapping failures to ValidationError."""
    try:
        return model(**kwargs)
    except PydanticValidationError as exc:
        errors = [
            f"{'.'.join(str(p) for p in err['loc']) or '(root)'}: {err['msg']}"
            for err in exc.errors()
        ]
        raise ValidationError(errors) from exc


class CacheOrchestrator:
    """Enable, disable and purge Varnish caching per site."""

    def __init__(
        self,
        *,
        config: OrchestratorConfig | None = None,
        store: StateStore | None = None,
        channel_factory: Callable[[str], CommandChannel] | None = None,
        locks: LockRegistry | None = None,
        audit: AuditJournal | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Settings; read from the environment when omitted.
            store: Desired-state store (default: ``config.state_file``).
            channel_factory: ``host_id -> CommandChannel``. Defaults to a
                ChannelFactory over ``config.inventory_file``, built on first use.
            locks: Site/host lock registry (default: ``config.locks_dir``).
            audit: Audit journal (default: ``config.audit_log_file``).
            cancel_event: When set, running workflows stop before their next
                step and roll back.
        """
        self._config = config or OrchestratorConfig.from_env()
        cfg = self._config
        self._store = store or StateStore(cfg.state_file, cfg.lock_timeout_seconds)
        self._locks = locks or LockRegistry(cfg.locks_dir, cfg.lock_timeout_seconds)
        self._audit = audit or AuditJournal(cfg.audit_log_file)
        self._channel_factory = channel_factory
        self._owned_factory: ChannelFactory | None = None
        self._cancel_event = cancel_event

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def store(self) -> StateStore:
        return self._store

    # ------------------------------------------------------------------
    # Site registry
    # ------------------------------------------------------------------

    def register_site(
        self,
        site_id: str,
        host_id: str,
        domain: str,
        aliases: list[str] | str | None = None,
    ) -> Site:
        site = _parse(
            Site,
            site_id=site_id,
            host_id=host_id,
            domain=domain,
            aliases=aliases or [],
        )
        with self._locks.site(site_id):
            return self._store.register_site(site)

    def remove_site(self, site_id: str) -> None:
        with self._locks.site(site_id):
            self._store.remove_site(site_id)

    def status(self, site_id: str) -> Site:
        """Return the recorded site and its cache state."""
        return self._store.get_site(site_id)

    def verify(self) -> list[str]:
        """Integrity problems of the desired-state store (empty when sound)."""
        return self._store.verify_integrity()

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    def enable(
        self,
        site_id: str,
        ttl_seconds: int,
        memory_budget: str,
        topology: Topology | str = Topology.SHARED_PORT,
        backend_port: int | None = None,
    ) -> WorkflowResult:
        """Turn caching on for *site_id*.

        Raises:
            ValidationError: Malformed parameters, no remote action taken.
            AlreadyEnabled: Caching is already on for the site.
            StepFailed: A step failed; the host was rolled back.
            RollbackPartial: A step failed and the rollback was incomplete.
        """
        result = WorkflowResult(success=False, workflow="enable", site_id=site_id)
        with self._audited("enable", site_id, result.request_id):
            request = _parse(
                EnableRequest,
                ttl_seconds=ttl_seconds,
                memory_budget=memory_budget,
                topology=topology,
                backend_port=backend_port,
            )
            with self._locks.site(site_id):
                site = self._store.get_site(site_id)
                if site.cache.enabled:
                    raise AlreadyEnabled(site_id)
                self._validate_enable(site, request)

                ctx = self._context(site)
                trace = self._execute(build_enable_steps(ctx, request))
                self._store.commit(site_id, request.to_state())

        result = self._finish(result, trace)
        logger.info(
            "Caching enabled for %s (%s, ttl=%ds, memory=%s)",
            site.domain,
            request.topology.value,
            request.ttl_seconds,
            request.memory_budget,
            extra=workflow_context(site_id, "enable"),
        )
        return result

    def disable(self, site_id: str) -> WorkflowResult:
        """Turn caching off for *site_id*.

        The shared daemon is stopped when no other site on the host is left
        enabled. Failing to stop it is reported as a warning only.

        Raises:
            NotEnabled: Caching is off for the site.
            StepFailed: A step failed; the host was rolled back.
        """
        result = WorkflowResult(success=False, workflow="disable", site_id=site_id)
        with self._audited("disable", site_id, result.request_id):
            with self._locks.site(site_id):
                site = self._store.get_site(site_id)
                if not site.cache.enabled:
                    raise NotEnabled(site_id)
                others_enabled = bool(self._store.other_enabled_sites(site_id))

                ctx = self._context(site)
                trace = self._execute(
                    build_disable_steps(ctx, site.cache, others_enabled)
                )
                warnings = self._stop_daemon_if_unused(ctx)
                self._store.commit(
                    site_id, site.cache.model_copy(update={"enabled": False})
                )

        result = self._finish(result, trace, warnings)
        logger.info(
            "Caching disabled for %s",
            site.domain,
            extra=workflow_context(site_id, "disable"),
        )
        return result

    def purge(
        self,
        site_id: str,
        mode: PurgeMode | str = PurgeMode.ALL,
        pattern: str | None = None,
        path: str | None = None,
    ) -> PurgeResult:
        """Invalidate cached objects of *site_id*. Never touches the store.

        Raises:
            ValidationError: Missing pattern or path for the chosen mode.
            NotEnabled: Caching is off for the site.
            StepFailed: Both purge mechanisms failed.
        """
        request_id = uuid4().hex
        with self._audited("purge", site_id, request_id):
            request = _parse(PurgeRequest, mode=mode, pattern=pattern, path=path)
            with self._locks.site(site_id):
                site = self._store.get_site(site_id)
                if not site.cache.enabled:
                    raise NotEnabled(site_id)
                step = build_purge_step(
                    self._context(site), site.cache, request, request_id
                )
                self._execute([step])
            if step.result is None:
                raise OrchestratorError(f"Purge of '{site_id}' produced no result")

        result = step.result
        self._audit.record(
            "purge", site_id, request_id, "ok", performed_steps=[step.name]
        )
        logger.info(
            "Purged %s (%s via %s: %s)",
            site.domain,
            request.mode.value,
            result.mechanism,
            result.target,
            extra=workflow_context(site_id, "purge"),
        )
        return result

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _validate_enable(self, site: Site, request: EnableRequest) -> None:
        cfg = self._config
        errors: list[str] = []
        if request.topology is Topology.DEDICATED_PORT and request.backend_port is not None:
            if not cfg.dynamic_port_min <= request.backend_port <= cfg.dynamic_port_max:
                errors.append(
                    f"backend_port: {request.backend_port} is outside the dynamic "
                    f"port range {cfg.dynamic_port_min}-{cfg.dynamic_port_max}"
                )
        for other in self._store.other_enabled_sites(site.site_id):
            if other.cache.topology is not request.topology:
                errors.append(
                    f"topology: {request.topology.value} conflicts with site "
                    f"'{other.site_id}' enabled as "
                    f"{other.cache.topology.value if other.cache.topology else 'unknown'}"
                    f" on host '{site.host_id}'"
                )
        if errors:
            raise ValidationError(errors)

    def _context(self, site: Site) -> StepContext:
        return StepContext(
            channel=self._channel(site.host_id),
            config=self._config,
            site=site,
            locks=self._locks,
        )

    def _channel(self, host_id: str) -> CommandChannel:
        if self._channel_factory is None:
            inventory = HostInventory.load(self._config.inventory_file)
            self._owned_factory = ChannelFactory(
                inventory, command_timeout=self._config.command_timeout_seconds
            )
            self._channel_factory = self._owned_factory
        return self._channel_factory(host_id)

    def _execute(self, steps: list[ProvisioningStep]) -> ExecutionTrace:
        return StepEngine(self._cancel_event).run(steps)

    def _stop_daemon_if_unused(self, ctx: StepContext) -> list[str]:
        """Stop the shared daemon when no other site on the host uses it.

        Decided under the host lock from the store and from the include
        lines left in the master configuration. Returns warnings.
        """
        cfg = self._config
        site = ctx.site
        channel = ctx.channel
        with self._locks.host(site.host_id):
            others = self._store.other_enabled_sites(site.site_id)
            if others:
                logger.info(
                    "Cache daemon kept running on %s: %d other site(s) enabled",
                    site.host_id,
                    len(others),
                )
                return []
            try:
                master = channel.read_file_if_exists(cfg.master_config_path)
                remaining = vcl.site_includes(master or "")
                if remaining:
                    logger.warning(
                        "Cache daemon kept running on %s: master configuration "
                        "still includes %s",
                        site.host_id,
                        ", ".join(remaining),
                    )
                    return []
                daemon = shlex.quote(cfg.daemon_service)
                channel.execute(f"sudo systemctl stop {daemon}")
            except (CommandFailed, ChannelError) as exc:
                logger.warning("Failed to stop cache daemon on %s: %s", site.host_id, exc)
                return [f"Cache daemon was not stopped: {exc}"]
            logger.info("Cache daemon stopped on %s: no site left enabled", site.host_id)

            if site.cache.topology is Topology.DEDICATED_PORT:
                # The origin can only bind the public ports once the daemon let go.
                try:
                    origin = shlex.quote(cfg.origin_service)
                    channel.execute(f"sudo systemctl reload {origin}")
                except (CommandFailed, ChannelError) as exc:
                    logger.warning("Origin reload after daemon stop failed: %s", exc)
                    return [f"Origin server was not reloaded after daemon stop: {exc}"]
        return []

    def _finish(
        self,
        result: WorkflowResult,
        trace: ExecutionTrace,
        warnings: list[str] | None = None,
    ) -> WorkflowResult:
        result = result.model_copy(
            update={
                "success": True,
                "performed_steps": trace.performed,
                "skipped_steps": trace.skipped,
                "warnings": warnings or [],
            }
        )
        self._audit.record(
            result.workflow,
            result.site_id,
            result.request_id,
            "ok",
            performed_steps=result.performed_steps,
            warnings=result.warnings,
        )
        return result

    @contextmanager
    def _audited(self, workflow: str, site_id: str, request_id: str) -> Iterator[None]:
        """Record failed or rejected workflows in the audit journal."""
        try:
            yield
        except RollbackPartial as exc:
            self._audit.record(workflow, site_id, request_id, "rollback_partial", error=str(exc))
            raise
        except StepFailed as exc:
            logger.error(
                "Workflow %s failed for %s: %s",
                workflow,
                site_id,
                exc,
                extra=workflow_context(site_id, workflow),
            )
            self._audit.record(workflow, site_id, request_id, "failed", error=str(exc))
            raise
        except (IllegalTransition, ValidationError) as exc:
            self._audit.record(workflow, site_id, request_id, "rejected", error=str(exc))
            raise
        except OrchestratorError as exc:
            self._audit.record(workflow, site_id, request_id, "failed", error=str(exc))
            raise

    def close(self) -> None:
        """Close channels opened by the default channel factory."""
        if self._owned_factory is not None:
            self._owned_factory.close_all()

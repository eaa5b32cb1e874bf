"""Step lists for the Enable, Disable and Purge workflows."""

from __future__ import annotations

from policy.daemon import render_params, render_unit
from policy.vcl import render_site_policy

from .config import OrchestratorConfig
from .models import CacheState, EnableRequest, PurgeRequest, Topology
from .step_engine import ProvisioningStep
from .steps import (
    CommandStep,
    IncludeSitePolicyStep,
    InstallDaemonStep,
    PatchOriginStep,
    PrepareMasterConfigStep,
    PurgeCacheStep,
    RecordDaemonStateStep,
    RemoveSitePolicyStep,
    RestoreOriginStep,
    StepContext,
    WriteFileStep,
    WriteSitePolicyStep,
    systemctl_step,
)


def cache_address(config: OrchestratorConfig, topology: Topology | None) -> str:
    """Local address on which the cache daemon accepts HTTP."""
    if topology is Topology.DEDICATED_PORT:
        return f"127.0.0.1:{config.public_port}"
    return config.internal_address


def listen_address(config: OrchestratorConfig, topology: Topology) -> str:
    if topology is Topology.DEDICATED_PORT:
        return f":{config.public_port}"
    return config.internal_address


def render_site_document(ctx: StepContext, request: EnableRequest) -> str:
    config = ctx.config
    if request.topology is Topology.DEDICATED_PORT and request.backend_port is not None:
        backend_port = request.backend_port
    else:
        backend_port = config.public_port
    return render_site_policy(
        ctx.site.domain,
        ctx.site.aliases,
        request.ttl_seconds,
        config.static_asset_extensions,
        backend_port=backend_port,
        static_ttl=config.static_asset_ttl,
    )


def build_enable_steps(ctx: StepContext, request: EnableRequest) -> list[ProvisioningStep]:
    """Ordered steps turning caching on for ``ctx.site``.

    With a dedicated port the origin must release the public ports before
    the daemon restarts onto them, so the two reloads swap places.
    """
    config = ctx.config
    memory_budget = request.memory_budget.upper()
    daemon_args = {
        "listen_address": listen_address(config, request.topology),
        "admin_address": config.admin_address,
        "secret_file": config.daemon_secret_file,
        "memory_budget": memory_budget,
        "default_ttl": config.daemon_default_ttl,
    }
    params = render_params(**daemon_args)
    unit = render_unit(master_config=config.master_config_path, **daemon_args)

    restart_daemon = systemctl_step(ctx, "restart-daemon", "restart", config.daemon_service)
    reload_origin = systemctl_step(ctx, "reload-origin", "reload", config.origin_service)
    steps: list[ProvisioningStep] = [
        RecordDaemonStateStep(ctx, restart_daemon),
        InstallDaemonStep(ctx),
        WriteFileStep(ctx, config.daemon_params_path, params),
        WriteFileStep(
            ctx,
            config.daemon_unit_path,
            unit,
            after_restore="sudo systemctl daemon-reload",
        ),
        systemctl_step(ctx, "daemon-reload-units", "daemon-reload"),
        PrepareMasterConfigStep(ctx),
        WriteSitePolicyStep(ctx, render_site_document(ctx, request)),
        IncludeSitePolicyStep(ctx),
        PatchOriginStep(ctx, request.topology, request.backend_port, reload=reload_origin),
        CommandStep(ctx, "validate-origin", "sudo nginx -t"),
    ]
    if request.topology is Topology.DEDICATED_PORT:
        steps += [reload_origin, restart_daemon]
    else:
        steps += [restart_daemon, reload_origin]
    return steps


def build_disable_steps(
    ctx: StepContext,
    state: CacheState,
    others_enabled: bool,
) -> list[ProvisioningStep]:
    """Ordered steps turning caching off for ``ctx.site``.

    The daemon is reloaded only while other sites still use it; otherwise
    the caller stops it once the steps succeeded.
    """
    config = ctx.config
    topology = state.topology or Topology.SHARED_PORT
    reload_origin = systemctl_step(ctx, "reload-origin", "reload", config.origin_service)
    steps: list[ProvisioningStep] = [
        RemoveSitePolicyStep(ctx),
        RestoreOriginStep(ctx, topology, state.backend_port, reload=reload_origin),
        CommandStep(ctx, "validate-origin", "sudo nginx -t"),
        reload_origin,
    ]
    if others_enabled:
        steps.append(
            systemctl_step(ctx, "reload-daemon", "reload", config.daemon_service)
        )
    return steps


def build_purge_step(
    ctx: StepContext,
    state: CacheState,
    request: PurgeRequest,
    request_id: str,
) -> PurgeCacheStep:
    return PurgeCacheStep(
        ctx, request, cache_address(ctx.config, state.topology), request_id
    )

"""Concrete provisioning steps run by the StepEngine.

Every step is bound to a :class:`StepContext` (channel, config, site, locks)
at construction time. Steps that touch the shared master configuration take
the host lock for their read-modify-write only.
"""

from __future__ import annotations

import logging
import shlex
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from infra.channel import CommandChannel
from infra.exceptions import CommandFailed
from policy import nginx, vcl

from .config import OrchestratorConfig
from .locks import LockRegistry
from .models import PurgeMode, PurgeRequest, PurgeResult, Site, Topology
from .step_engine import ProvisioningStep

logger = logging.getLogger(__name__)

FALLBACK_SCRIPT_PATH = "/tmp/varnish-repo.sh"


@dataclass
class StepContext:
    channel: CommandChannel
    config: OrchestratorConfig
    site: Site
    locks: LockRegistry

    @contextmanager
    def host_lock(self) -> Iterator[None]:
        with self.locks.host(self.site.host_id):
            yield

    @property
    def policy_path(self) -> str:
        return self.config.site_policy_path(self.site.domain)

    @property
    def origin_path(self) -> str:
        return self.config.origin_config_path(self.site.domain)

    @property
    def origin_backup_path(self) -> str:
        return self.config.origin_backup_path(self.site.domain)


# ---------------------------------------------------------------------------
# Generic steps
# ---------------------------------------------------------------------------


class CommandStep(ProvisioningStep):
    """Run one command. Never pre-satisfied, nothing to undo.

    ``attempted`` and ``applied`` let other steps' compensations tell
    whether the command was sent, and whether it succeeded.
    """

    def __init__(
        self,
        ctx: StepContext,
        name: str,
        command: str,
        timeout: float | None = None,
    ) -> None:
        self.ctx = ctx
        self.name = name
        self.command = command
        self.timeout = timeout
        self.attempted = False
        self.applied = False

    def apply(self) -> None:
        self.attempted = True
        self.ctx.channel.execute(self.command, timeout=self.timeout)
        self.applied = True

    def rerun_if_applied(self) -> None:
        """Send the command again if it succeeded earlier in this run."""
        if self.applied:
            logger.info("Re-running %s after rollback: %s", self.name, self.command)
            self.ctx.channel.execute(self.command, timeout=self.timeout)


def systemctl_step(ctx: StepContext, name: str, action: str, service: str = "") -> CommandStep:
    command = f"sudo systemctl {action}"
    if service:
        command += f" {shlex.quote(service)}"
    return CommandStep(ctx, name, command)


class WriteFileStep(ProvisioningStep):
    """Write rendered content to a remote file.

    Compensation restores the captured previous content, or deletes the file
    if this step created it. *after_restore* runs once the restore is done.
    """

    def __init__(
        self,
        ctx: StepContext,
        path: str,
        content: str,
        mode: str = "644",
        after_restore: str | None = None,
    ) -> None:
        self.ctx = ctx
        self.name = f"write-file:{path}"
        self.path = path
        self.content = content
        self.mode = mode
        self.after_restore = after_restore
        self._applied = False
        self._previous: str | None = None

    def probe(self) -> bool:
        return self.ctx.channel.read_file_if_exists(self.path) == self.content

    def apply(self) -> None:
        channel = self.ctx.channel
        self._previous = channel.read_file_if_exists(self.path)
        channel.write_file(self.path, self.content, mode=self.mode)
        self._applied = True

    def compensate(self) -> None:
        if not self._applied:
            return
        channel = self.ctx.channel
        if self._previous is None:
            channel.remove_file(self.path)
        else:
            channel.write_file(self.path, self._previous, mode=self.mode)
        if self.after_restore:
            channel.execute(self.after_restore)


# ---------------------------------------------------------------------------
# Cache daemon
# ---------------------------------------------------------------------------


class RecordDaemonStateStep(ProvisioningStep):
    """Remember whether the shared cache daemon was running before this run.

    Placed first, so its compensation runs after every file is restored.
    Once the run got as far as restarting the daemon, the rollback restarts
    it on the restored configuration if it was serving other sites, or stops
    it again if it was not running before.
    """

    name = "record-daemon-state"

    def __init__(self, ctx: StepContext, restart: CommandStep) -> None:
        self.ctx = ctx
        self.restart = restart
        self.was_active = False

    def apply(self) -> None:
        service = shlex.quote(self.ctx.config.daemon_service)
        try:
            self.ctx.channel.execute(f"sudo systemctl is-active {service}")
        except CommandFailed:
            self.was_active = False
        else:
            self.was_active = True

    def compensate(self) -> None:
        if not self.restart.attempted:
            return
        action = "restart" if self.was_active else "stop"
        service = shlex.quote(self.ctx.config.daemon_service)
        self.ctx.channel.execute(f"sudo systemctl {action} {service}")


class InstallDaemonStep(ProvisioningStep):
    """Install the cache daemon package. Never uninstalled on rollback."""

    name = "install-daemon"

    def __init__(self, ctx: StepContext) -> None:
        self.ctx = ctx

    def probe(self) -> bool:
        try:
            self.ctx.channel.execute("varnishd -V")
        except CommandFailed:
            return False
        return True

    def apply(self) -> None:
        channel = self.ctx.channel
        config = self.ctx.config
        package = shlex.quote(config.package_name)
        install = f"sudo apt-get install -y {package}"
        timeout = config.install_timeout_seconds
        try:
            channel.execute("sudo apt-get update -y", timeout=timeout)
            channel.execute(install, timeout=timeout)
        except CommandFailed as exc:
            logger.warning(
                "Package install failed (%s), trying alternate repository %s",
                exc,
                config.fallback_repo_script_url,
            )
            channel.execute(
                f"curl -fsSL {shlex.quote(config.fallback_repo_script_url)}"
                f" -o {FALLBACK_SCRIPT_PATH}",
                timeout=timeout,
            )
            channel.execute(f"sudo bash {FALLBACK_SCRIPT_PATH}", timeout=timeout)
            channel.execute(install, timeout=timeout)
        channel.execute(f"sudo systemctl enable {shlex.quote(config.daemon_service)}")


class PrepareMasterConfigStep(ProvisioningStep):
    """Replace the distribution's master VCL with the managed skeleton.

    Include lines already present are carried over.
    """

    name = "prepare-master-config"

    def __init__(self, ctx: StepContext) -> None:
        self.ctx = ctx
        self._applied = False
        self._previous: str | None = None

    def probe(self) -> bool:
        text = self.ctx.channel.read_file_if_exists(self.ctx.config.master_config_path)
        return text is not None and vcl.is_managed_master(text)

    def apply(self) -> None:
        channel = self.ctx.channel
        path = self.ctx.config.master_config_path
        with self.ctx.host_lock():
            previous = channel.read_file_if_exists(path)
            if previous is not None and vcl.is_managed_master(previous):
                return
            includes = vcl.site_includes(previous or "")
            channel.write_file(path, vcl.render_master_config(includes))
            self._previous = previous
            self._applied = True

    def compensate(self) -> None:
        if not self._applied:
            return
        channel = self.ctx.channel
        path = self.ctx.config.master_config_path
        with self.ctx.host_lock():
            current = channel.read_file_if_exists(path)
            if current is not None and vcl.site_includes(current):
                # Another site started depending on the skeleton meanwhile.
                return
            if self._previous is None:
                channel.remove_file(path)
            else:
                channel.write_file(path, self._previous)


class WriteSitePolicyStep(ProvisioningStep):
    """Write this site's policy document.

    Compensation always deletes it: the site is not enabled while an Enable
    workflow unwinds, so no policy file of its own may remain.
    """

    name = "write-site-policy"

    def __init__(self, ctx: StepContext, content: str) -> None:
        self.ctx = ctx
        self.content = content

    def probe(self) -> bool:
        return self.ctx.channel.read_file_if_exists(self.ctx.policy_path) == self.content

    def apply(self) -> None:
        self.ctx.channel.make_dirs(self.ctx.config.site_policy_dir)
        self.ctx.channel.write_file(self.ctx.policy_path, self.content)

    def compensate(self) -> None:
        self.ctx.channel.remove_file(self.ctx.policy_path)


class IncludeSitePolicyStep(ProvisioningStep):
    """Ensure the master configuration includes this site's policy once."""

    name = "include-site-policy"

    def __init__(self, ctx: StepContext) -> None:
        self.ctx = ctx

    def probe(self) -> bool:
        text = self.ctx.channel.read_file_if_exists(self.ctx.config.master_config_path)
        return text is not None and vcl.count_includes(text, self.ctx.policy_path) == 1

    def apply(self) -> None:
        channel = self.ctx.channel
        path = self.ctx.config.master_config_path
        with self.ctx.host_lock():
            text = channel.read_file(path)
            updated = vcl.add_include(text, self.ctx.policy_path)
            if updated != text:
                channel.write_file(path, updated)

    def compensate(self) -> None:
        _drop_include(self.ctx)


def _drop_include(ctx: StepContext) -> bool:
    """Remove this site's include line. Returns True if one was removed."""
    channel = ctx.channel
    path = ctx.config.master_config_path
    with ctx.host_lock():
        text = channel.read_file_if_exists(path)
        if text is None or not vcl.count_includes(text, ctx.policy_path):
            return False
        channel.write_file(path, vcl.remove_include(text, ctx.policy_path))
        return True


class RemoveSitePolicyStep(ProvisioningStep):
    """Drop the include line, then delete the per-site policy document."""

    name = "remove-site-policy"

    def __init__(self, ctx: StepContext) -> None:
        self.ctx = ctx
        self._content: str | None = None
        self._had_include = False

    def probe(self) -> bool:
        channel = self.ctx.channel
        master = channel.read_file_if_exists(self.ctx.config.master_config_path)
        included = master is not None and vcl.count_includes(master, self.ctx.policy_path) > 0
        return not included and not channel.file_exists(self.ctx.policy_path)

    def apply(self) -> None:
        self._content = self.ctx.channel.read_file_if_exists(self.ctx.policy_path)
        self._had_include = _drop_include(self.ctx)
        self.ctx.channel.remove_file(self.ctx.policy_path)

    def compensate(self) -> None:
        channel = self.ctx.channel
        if self._content is not None:
            channel.write_file(self.ctx.policy_path, self._content)
        if self._had_include:
            path = self.ctx.config.master_config_path
            with self.ctx.host_lock():
                text = channel.read_file(path)
                channel.write_file(path, vcl.add_include(text, self.ctx.policy_path))


# ---------------------------------------------------------------------------
# Origin server
# ---------------------------------------------------------------------------


def _is_patched(text: str, topology: Topology) -> bool:
    if topology is Topology.DEDICATED_PORT:
        return nginx.has_relocated_listen(text)
    return nginx.has_marker_block(text)


def _unpatch(text: str, topology: Topology, backend_port: int | None, tls_offset: int) -> str:
    if topology is Topology.DEDICATED_PORT:
        if backend_port is None:
            raise ValueError("backend_port is required to revert listen directives")
        return nginx.restore_listen(text, backend_port, tls_offset)
    return nginx.remove_marker_block(text)


class PatchOriginStep(ProvisioningStep):
    """Route the site through the cache daemon.

    Shared port: insert the marker block into ``location /``.
    Dedicated port: move the listen directives to the internal backend port.
    A backup of the unpatched file is written next to it. When *reload* ran
    before the rollback, it runs again once the file is restored.
    """

    name = "patch-origin"

    def __init__(
        self,
        ctx: StepContext,
        topology: Topology,
        backend_port: int | None = None,
        reload: CommandStep | None = None,
    ) -> None:
        self.ctx = ctx
        self.topology = topology
        self.backend_port = backend_port
        self.reload = reload
        self._original: str | None = None
        self._created_backup = False

    def probe(self) -> bool:
        return _is_patched(self.ctx.channel.read_file(self.ctx.origin_path), self.topology)

    def _patch(self, text: str) -> str:
        if self.topology is Topology.DEDICATED_PORT:
            if self.backend_port is None:
                raise ValueError("backend_port is required for dedicated_port topology")
            return nginx.relocate_listen(
                text, self.backend_port, self.ctx.config.tls_port_offset
            )
        return nginx.insert_marker_block(text, self.ctx.config.internal_address)

    def apply(self) -> None:
        channel = self.ctx.channel
        text = channel.read_file(self.ctx.origin_path)
        patched = self._patch(text)
        if not channel.file_exists(self.ctx.origin_backup_path):
            channel.write_file(self.ctx.origin_backup_path, text)
            self._created_backup = True
        self._original = text
        channel.write_file(self.ctx.origin_path, patched)

    def compensate(self) -> None:
        channel = self.ctx.channel
        if self._original is not None:
            channel.write_file(self.ctx.origin_path, self._original)
            if self._created_backup:
                channel.remove_file(self.ctx.origin_backup_path)
        else:
            # Skipped: the file was already patched before this run.
            text = channel.read_file(self.ctx.origin_path)
            restored = _unpatch(
                text, self.topology, self.backend_port, self.ctx.config.tls_port_offset
            )
            if restored != text:
                channel.write_file(self.ctx.origin_path, restored)
        if self.reload is not None:
            self.reload.rerun_if_applied()


class RestoreOriginStep(ProvisioningStep):
    """Undo :class:`PatchOriginStep`.

    The backup is restored verbatim when present, otherwise the marker block
    is stripped or the listen directives are moved back to 80/443. On
    rollback the patched file is written back and *reload* runs again if it
    already succeeded.
    """

    name = "restore-origin"

    def __init__(
        self,
        ctx: StepContext,
        topology: Topology,
        backend_port: int | None = None,
        reload: CommandStep | None = None,
    ) -> None:
        self.ctx = ctx
        self.topology = topology
        self.backend_port = backend_port
        self.reload = reload
        self._current: str | None = None
        self._backup: str | None = None

    def probe(self) -> bool:
        channel = self.ctx.channel
        text = channel.read_file(self.ctx.origin_path)
        return (
            not _is_patched(text, self.topology)
            and not channel.file_exists(self.ctx.origin_backup_path)
        )

    def apply(self) -> None:
        channel = self.ctx.channel
        current = channel.read_file(self.ctx.origin_path)
        backup = channel.read_file_if_exists(self.ctx.origin_backup_path)
        if backup is not None:
            restored = backup
        else:
            restored = _unpatch(
                current, self.topology, self.backend_port, self.ctx.config.tls_port_offset
            )
        self._current = current
        channel.write_file(self.ctx.origin_path, restored)
        if backup is not None:
            self._backup = backup
            channel.remove_file(self.ctx.origin_backup_path)

    def compensate(self) -> None:
        channel = self.ctx.channel
        if self._backup is not None:
            channel.write_file(self.ctx.origin_backup_path, self._backup)
        if self._current is not None:
            channel.write_file(self.ctx.origin_path, self._current)
        if self.reload is not None:
            self.reload.rerun_if_applied()


# ---------------------------------------------------------------------------
# Purge
# ---------------------------------------------------------------------------


class PurgeCacheStep(ProvisioningStep):
    """Invalidate cached objects of one site.

    ``all`` and ``pattern`` ban through the admin interface and fall back to
    an HTTP PURGE carrying ``X-Purge-Regex``. ``single`` purges the path over
    HTTP and falls back to an exact-path ban. Only a failed command triggers
    the fallback; channel errors propagate.
    """

    name = "purge-cache"

    def __init__(
        self,
        ctx: StepContext,
        request: PurgeRequest,
        cache_address: str,
        request_id: str,
    ) -> None:
        self.ctx = ctx
        self.request = request
        self.cache_address = cache_address
        self.request_id = request_id
        self.result: PurgeResult | None = None

    def _admin_ban(self, expression: str) -> str:
        config = self.ctx.config
        command = shlex.join([
            "sudo", "varnishadm",
            "-T", config.admin_address,
            "-S", config.daemon_secret_file,
            f"ban {expression}",
        ])
        return self.ctx.channel.execute(command)

    def _http_purge(self, path: str, regex: str | None = None) -> str:
        argv = [
            "curl", "-sS", "-f", "-X", "PURGE",
            "-H", f"Host: {self.ctx.site.domain}",
        ]
        if regex is not None:
            argv += ["-H", f"{vcl.PURGE_REGEX_HEADER}: {regex}"]
        argv.append(f"http://{self.cache_address}{path}")
        return self.ctx.channel.execute(shlex.join(argv))

    def apply(self) -> None:
        domain = self.ctx.site.domain
        mode = self.request.mode
        host_ban = f"req.http.host == {domain}"

        if mode is PurgeMode.SINGLE:
            path = self.request.path or "/"
            primary = ("http", path, lambda: self._http_purge(path))
            fallback = (
                "admin",
                path,
                lambda: self._admin_ban(f"{host_ban} && req.url == {path}"),
            )
        else:
            regex = self.request.pattern if mode is PurgeMode.PATTERN else ".*"
            expression = host_ban
            if mode is PurgeMode.PATTERN:
                expression += f" && req.url ~ {regex}"
            primary = ("admin", expression, lambda: self._admin_ban(expression))
            fallback = ("http", regex, lambda: self._http_purge("/", regex))

        mechanism, target, run = primary
        try:
            output = run()
        except CommandFailed as exc:
            logger.warning(
                "Purge via %s failed for %s (%s), falling back to %s",
                mechanism,
                domain,
                exc,
                fallback[0],
            )
            mechanism, target, run = fallback
            output = run()

        self.result = PurgeResult(
            site_id=self.ctx.site.site_id,
            mode=mode,
            mechanism=mechanism,
            target=target or "",
            output=output.strip(),
            request_id=self.request_id,
        )

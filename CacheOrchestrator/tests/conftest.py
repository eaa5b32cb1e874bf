"""Shared fixtures for CacheOrchestrator tests.

Remote hosts are simulated by :class:`FakeHost`, an in-memory command channel
that keeps a file system, package and service state, and a command log.
"""

from __future__ import annotations

import re
import shlex
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import pytest

from CacheOrchestrator.config import OrchestratorConfig
from CacheOrchestrator.orchestrator import CacheOrchestrator
from infra.channel import CommandChannel
from infra.exceptions import ChannelError, CommandFailed

HOST_ID = "web-01"

NGINX_SITE = """\
server {
    listen 80;
    listen [::]:80;
    server_name DOMAIN ALIASES;
    root /home/vito/DOMAIN/public;

    index index.html index.php;

    location / {
        try_files $uri $uri/ /index.php?$query_string;
    }

    location ~ \\.php$ {
        fastcgi_pass unix:/var/run/php/php8.2-fpm.sock;
    }
}
"""

NGINX_TLS_SITE = """\
server {
    listen 80;
    listen [::]:80;
    listen 443 ssl;
    listen [::]:443 ssl;
    server_name DOMAIN;

    ssl_certificate /etc/ssl/DOMAIN.crt;
    ssl_certificate_key /etc/ssl/DOMAIN.key;

    location / {
        proxy_pass http://127.0.0.1:3000;
    }
}
"""

DISTRO_DEFAULT_VCL = """\
vcl 4.1;

backend default {
    .host = "127.0.0.1";
    .port = "8080";
}
"""


def nginx_site(domain: str, aliases: str = "", template: str = NGINX_SITE) -> str:
    text = template.replace("DOMAIN", domain)
    return text.replace(" ALIASES", f" {aliases}" if aliases else "")


@dataclass
class _FailureRule:
    pattern: str
    remaining: int
    make: Callable[[str], Exception]


class FakeHost(CommandChannel):
    """In-memory host understanding the commands the orchestrator sends."""

    def __init__(self) -> None:
        super().__init__(default_timeout=5.0)
        self.files: dict[str, str] = {}
        self.installed: set[str] = set()
        self.services: dict[str, str] = {"nginx": "active"}
        self.enabled_units: set[str] = set()
        self.commands: list[str] = []
        self.bans: list[str] = []
        self.purges: list[list[str]] = []
        self.package_available = True
        self.repository_added = False
        self._rules: list[_FailureRule] = []

    # -- Failure injection ----------------------------------------------------

    def fail_on(
        self,
        pattern: str,
        times: int = 1,
        exit_code: int = 1,
        stderr: str = "injected failure",
    ) -> None:
        """Fail the next *times* operations matching regex *pattern*."""
        self._rules.append(
            _FailureRule(
                pattern,
                times,
                lambda cmd: CommandFailed(cmd, exit_code, stderr=stderr),
            )
        )

    def drop_connection_on(self, pattern: str, times: int = 1) -> None:
        self._rules.append(
            _FailureRule(
                pattern, times, lambda cmd: ChannelError(f"connection reset during: {cmd}")
            )
        )

    def _inject(self, command: str) -> None:
        for rule in self._rules:
            if rule.remaining > 0 and re.search(rule.pattern, command):
                rule.remaining -= 1
                raise rule.make(command)

    # -- Queries used by tests ------------------------------------------------

    def ran(self, pattern: str) -> list[str]:
        return [c for c in self.commands if re.search(pattern, c)]

    def is_active(self, service: str) -> bool:
        return self.services.get(service) == "active"

    # -- File helpers (native, no shell round trip) ---------------------------

    def write_file(self, remote_path: str, content: str, mode: str = "644") -> None:
        self._log(f"write {remote_path}")
        self.files[remote_path] = content

    def read_file(self, remote_path: str) -> str:
        self._log(f"read {remote_path}")
        if remote_path not in self.files:
            raise CommandFailed(
                f"sudo cat {remote_path}", 1,
                stderr=f"cat: {remote_path}: No such file or directory",
            )
        return self.files[remote_path]

    def file_exists(self, remote_path: str) -> bool:
        self._log(f"test {remote_path}")
        return remote_path in self.files

    def remove_file(self, remote_path: str) -> None:
        self._log(f"rm {remote_path}")
        self.files.pop(remote_path, None)

    def make_dirs(self, remote_path: str) -> None:
        self._log(f"mkdir {remote_path}")

    def _log(self, command: str) -> None:
        self.commands.append(command)
        self._inject(command)

    # -- Command interpreter ----------------------------------------------------

    def execute_with_input(
        self,
        command: str,
        data: bytes,
        timeout: float | None = None,
    ) -> str:
        self._log(command)
        return ""

    def execute(self, command: str, timeout: float | None = None) -> str:
        self._log(command)
        argv = shlex.split(command)
        if argv and argv[0] == "sudo":
            argv = argv[1:]
        handler = getattr(self, "_cmd_" + argv[0].replace("-", "_"), None)
        if handler is None:
            raise CommandFailed(command, 127, stderr=f"{argv[0]}: command not found")
        return handler(command, argv[1:])

    def _cmd_varnishd(self, command: str, args: list[str]) -> str:
        if "varnish" not in self.installed:
            raise CommandFailed(command, 127, stderr="varnishd: command not found")
        return "varnishd (varnish-7.1.1 revision 7cee1c581bead20e88d101ab3d72afb29f14d690)"

    def _cmd_apt_get(self, command: str, args: list[str]) -> str:
        if args[0] == "install":
            package = args[-1]
            if not (self.package_available or self.repository_added):
                raise CommandFailed(
                    command, 100, stderr=f"E: Unable to locate package {package}"
                )
            self.installed.add(package)
            self.services.setdefault(package, "active")
        return ""

    def _cmd_curl(self, command: str, args: list[str]) -> str:
        if "-o" in args:
            self.files[args[args.index("-o") + 1]] = "#!/bin/bash\n# repository setup\n"
            return ""
        if "PURGE" in args:
            if not self.is_active("varnish"):
                raise CommandFailed(
                    command, 7, stderr="curl: (7) Failed to connect: Connection refused"
                )
            self.purges.append(args)
            return "<title>200 Purged</title>"
        raise CommandFailed(command, 2, stderr="curl: unsupported request")

    def _cmd_bash(self, command: str, args: list[str]) -> str:
        if args[0] not in self.files:
            raise CommandFailed(command, 127, stderr=f"bash: {args[0]}: No such file")
        self.repository_added = True
        return ""

    def _cmd_systemctl(self, command: str, args: list[str]) -> str:
        action, units = args[0], args[1:]
        if action == "daemon-reload":
            return ""
        unit = units[0]
        if unit == "varnish" and "varnish" not in self.installed:
            raise CommandFailed(command, 5, stderr="Unit varnish.service not found.")
        if action == "enable":
            self.enabled_units.add(unit)
        elif action in ("restart", "start"):
            self.services[unit] = "active"
        elif action == "stop":
            self.services[unit] = "inactive"
        elif action == "reload":
            if not self.is_active(unit):
                raise CommandFailed(
                    command, 1,
                    stderr=f"{unit}.service is not active, cannot reload.",
                )
        elif action == "is-active":
            if not self.is_active(unit):
                raise CommandFailed(command, 3, stdout="inactive\n")
            return "active\n"
        return ""

    def _cmd_nginx(self, command: str, args: list[str]) -> str:
        for path, content in list(self.files.items()):
            if path.startswith("/etc/nginx/") and "INVALID_DIRECTIVE" in content:
                raise CommandFailed(
                    command, 1,
                    stderr=f'nginx: [emerg] unknown directive "INVALID_DIRECTIVE" in {path}\n'
                    "nginx: configuration file /etc/nginx/nginx.conf test failed",
                )
        return "nginx: configuration file /etc/nginx/nginx.conf test is successful\n"

    def _cmd_varnishadm(self, command: str, args: list[str]) -> str:
        if not self.is_active("varnish"):
            raise CommandFailed(
                command, 2, stderr="Could not get hold of varnishd, is it running?"
            )
        cli = args[-1]
        if cli.startswith("ban "):
            self.bans.append(cli[len("ban "):])
        return ""


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def config(tmp_path: Path) -> OrchestratorConfig:
    return OrchestratorConfig(
        state_dir=tmp_path / "state",
        locks_dir=tmp_path / "locks",
        inventory_file=tmp_path / "inventory.json",
        lock_timeout_seconds=5.0,
    )


@pytest.fixture()
def host() -> FakeHost:
    """A host with nginx running, three site configs and no Varnish yet."""
    fake = FakeHost()
    fake.files["/etc/nginx/sites-available/example.com"] = nginx_site(
        "example.com", "www.example.com"
    )
    fake.files["/etc/nginx/sites-available/shop.example.org"] = nginx_site(
        "shop.example.org"
    )
    fake.files["/etc/nginx/sites-available/secure.example.net"] = nginx_site(
        "secure.example.net", template=NGINX_TLS_SITE
    )
    return fake


@pytest.fixture()
def orchestrator(config: OrchestratorConfig, host: FakeHost) -> CacheOrchestrator:
    return CacheOrchestrator(config=config, channel_factory=lambda host_id: host)


@pytest.fixture()
def sites(orchestrator: CacheOrchestrator) -> CacheOrchestrator:
    """Orchestrator with three sites registered on the same host."""
    orchestrator.register_site("blog", HOST_ID, "example.com", ["www.example.com"])
    orchestrator.register_site("shop", HOST_ID, "shop.example.org")
    orchestrator.register_site("secure", HOST_ID, "secure.example.net")
    return orchestrator

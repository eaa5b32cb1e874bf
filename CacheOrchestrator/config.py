"""Configuration for the CacheOrchestrator.

Local paths default to ``<project root>/var``. Override via environment variables:
    CACHE_ORCH_STATE_DIR         — desired-state store and audit journal directory
    CACHE_ORCH_LOCKS_DIR         — directory of the per-site/per-host lock files
    CACHE_ORCH_INVENTORY         — host inventory JSON file
    CACHE_ORCH_LOCK_TIMEOUT      — lock acquisition timeout in seconds (default: 30)
    CACHE_ORCH_COMMAND_TIMEOUT   — per remote command timeout in seconds (default: 120)
    CACHE_ORCH_INSTALL_TIMEOUT   — package installation timeout in seconds (default: 900)
    CACHE_ORCH_INTERNAL_PORT     — cache daemon port behind nginx (default: 6081)
    CACHE_ORCH_NGINX_SITES_DIR   — nginx per-site configuration directory
    CACHE_ORCH_FALLBACK_REPO_URL — alternate package repository setup script
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any

from policy.vcl import DEFAULT_STATIC_EXTENSIONS


def _project_root() -> Path:
    """Derive project root: 2 levels up from CacheOrchestrator/config.py."""
    return Path(__file__).resolve().parent.parent


def _default_state_dir() -> Path:
    return _project_root() / "var" / "state"


def _default_locks_dir() -> Path:
    return _project_root() / "var" / "locks"


def _default_inventory_file() -> Path:
    return _project_root() / "var" / "inventory.json"


@dataclass(frozen=True)
class OrchestratorConfig:
    """Immutable configuration for the orchestrator."""

    # Local paths
    state_dir: Path = field(default_factory=_default_state_dir)
    locks_dir: Path = field(default_factory=_default_locks_dir)
    inventory_file: Path = field(default_factory=_default_inventory_file)

    # Timeouts
    lock_timeout_seconds: float = 30.0
    command_timeout_seconds: float = 120.0
    install_timeout_seconds: float = 900.0

    # Cache daemon paths on the remote host
    master_config_path: str = "/etc/varnish/default.vcl"
    site_policy_dir: str = "/etc/varnish/sites"
    daemon_params_path: str = "/etc/varnish/varnish.params"
    daemon_unit_path: str = "/etc/systemd/system/varnish.service"
    daemon_secret_file: str = "/etc/varnish/secret"
    daemon_service: str = "varnish"
    daemon_default_ttl: int = 120
    package_name: str = "varnish"
    fallback_repo_script_url: str = (
        "https://packagecloud.io/install/repositories/varnishcache/varnish60lts/script.deb.sh"
    )

    # Cache daemon ports
    internal_port: int = 6081
    admin_port: int = 6082
    public_port: int = 80
    tls_port_offset: int = 363
    dynamic_port_min: int = 1024
    dynamic_port_max: int = 65172

    # Origin server
    nginx_sites_dir: str = "/etc/nginx/sites-available"
    origin_service: str = "nginx"
    origin_backup_suffix: str = ".varnish-backup"

    # Policy defaults
    static_asset_ttl: str = "1h"
    static_asset_extensions: tuple[str, ...] = DEFAULT_STATIC_EXTENSIONS

    # --- Derived values (properties) ---

    @property
    def state_file(self) -> Path:
        """<state_dir>/sites.json — desired-state store."""
        return self.state_dir / "sites.json"

    @property
    def audit_log_file(self) -> Path:
        """<state_dir>/audit_log.jsonl — workflow audit journal."""
        return self.state_dir / "audit_log.jsonl"

    @property
    def internal_address(self) -> str:
        return f"127.0.0.1:{self.internal_port}"

    @property
    def admin_address(self) -> str:
        return f"127.0.0.1:{self.admin_port}"

    def site_policy_path(self, domain: str) -> str:
        """Stable per-site policy path, also the key of its include line."""
        return str(PurePosixPath(self.site_policy_dir) / f"{domain}.vcl")

    def origin_config_path(self, domain: str) -> str:
        return str(PurePosixPath(self.nginx_sites_dir) / domain)

    def origin_backup_path(self, domain: str) -> str:
        return self.origin_config_path(domain) + self.origin_backup_suffix

    @classmethod
    def from_env(cls) -> OrchestratorConfig:
        """Build config from environment variables with sensible defaults."""
        kwargs: dict[str, Any] = {}
        if v := os.environ.get("CACHE_ORCH_STATE_DIR"):
            kwargs["state_dir"] = Path(v)
        if v := os.environ.get("CACHE_ORCH_LOCKS_DIR"):
            kwargs["locks_dir"] = Path(v)
        if v := os.environ.get("CACHE_ORCH_INVENTORY"):
            kwargs["inventory_file"] = Path(v)
        if v := os.environ.get("CACHE_ORCH_LOCK_TIMEOUT"):
            kwargs["lock_timeout_seconds"] = float(v)
        if v := os.environ.get("CACHE_ORCH_COMMAND_TIMEOUT"):
            kwargs["command_timeout_seconds"] = float(v)
        if v := os.environ.get("CACHE_ORCH_INSTALL_TIMEOUT"):
            kwargs["install_timeout_seconds"] = float(v)
        if v := os.environ.get("CACHE_ORCH_INTERNAL_PORT"):
            kwargs["internal_port"] = int(v)
        if v := os.environ.get("CACHE_ORCH_NGINX_SITES_DIR"):
            kwargs["nginx_sites_dir"] = v
        if v := os.environ.get("CACHE_ORCH_FALLBACK_REPO_URL"):
            kwargs["fallback_repo_script_url"] = v
        return cls(**kwargs)

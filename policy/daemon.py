"""Renderers for the Varnish daemon parameters file and systemd unit."""
from __future__ import annotations

import re

MEMORY_BUDGET_RE = re.compile(r"^[1-9][0-9]*[KMGTkmgt]?$")
_ADDRESS_RE = re.compile(r"^[0-9A-Za-z.\[\]:]*:\d{1,5}$")


def _check(memory_budget: str, *addresses: str) -> None:
    if not MEMORY_BUDGET_RE.match(memory_budget):
        raise ValueError(f"Invalid memory budget: {memory_budget!r}")
    for address in addresses:
        if not _ADDRESS_RE.match(address):
            raise ValueError(f"Invalid listen address: {address!r}")


def render_params(
    *,
    listen_address: str,
    admin_address: str,
    secret_file: str,
    memory_budget: str,
    default_ttl: int,
) -> str:
    """Render ``varnish.params`` (sourced by distribution init scripts)."""
    _check(memory_budget, listen_address, admin_address)
    listen_host, _, listen_port = listen_address.rpartition(":")
    admin_host, _, admin_port = admin_address.rpartition(":")
    return (
        f"VARNISH_LISTEN_ADDRESS={listen_host}\n"
        f"VARNISH_LISTEN_PORT={listen_port}\n"
        f"VARNISH_ADMIN_LISTEN_ADDRESS={admin_host}\n"
        f"VARNISH_ADMIN_LISTEN_PORT={admin_port}\n"
        f"VARNISH_SECRET_FILE={secret_file}\n"
        f'VARNISH_STORAGE="malloc,{memory_budget}"\n'
        f"VARNISH_TTL={default_ttl}\n"
    )


def render_unit(
    *,
    listen_address: str,
    admin_address: str,
    master_config: str,
    secret_file: str,
    memory_budget: str,
    default_ttl: int,
    pid_file: str = "/run/varnish.pid",
) -> str:
    """Render the systemd unit that runs the shared daemon."""
    _check(memory_budget, listen_address, admin_address)
    exec_start = " ".join([
        "/usr/sbin/varnishd",
        "-a", listen_address,
        "-T", admin_address,
        "-S", secret_file,
        "-f", master_config,
        "-s", f"malloc,{memory_budget}",
        "-t", str(default_ttl),
        "-P", pid_file,
    ])
    return f"""[Unit]
Description=Varnish HTTP accelerator
After=network.target nss-lookup.target

[Service]
Type=forking
LimitNOFILE=131072
LimitMEMLOCK=85983232
ExecStart={exec_start}
ExecReload=/usr/sbin/varnishreload
PIDFile={pid_file}

[Install]
WantedBy=multi-user.target
"""

"""Host inventory: how to reach each managed host.

The inventory is a JSON document validated with jsonschema Draft 7::

    {
      "hosts": {
        "web-01": {"hostname": "203.0.113.10", "username": "deploy",
                   "key_filename": "~/.ssh/id_ed25519"},
        "self":   {"local": true}
      }
    }
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from jsonschema import Draft7Validator, ValidationError

INVENTORY_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "HostInventory",
    "type": "object",
    "required": ["hosts"],
    "additionalProperties": False,
    "properties": {
        "hosts": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "hostname": {"type": "string", "minLength": 1},
                    "port": {"type": "integer", "minimum": 1, "maximum": 65535},
                    "username": {"type": "string", "minLength": 1},
                    "key_filename": {"type": "string", "minLength": 1},
                    "local": {"type": "boolean"},
                },
                "anyOf": [
                    {"required": ["hostname"]},
                    {"required": ["local"], "properties": {"local": {"const": True}}},
                ],
            },
        },
    },
}

_validator = Draft7Validator(INVENTORY_SCHEMA)


class InventoryError(Exception):
    """Raised when the inventory is malformed or a host is unknown."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__(f"Inventory invalid: {'; '.join(errors)}")


@dataclass(frozen=True)
class HostEntry:
    """Connection parameters of one host."""

    host_id: str
    hostname: str = ""
    port: int = 22
    username: str = "root"
    key_filename: str | None = None
    local: bool = False


class HostInventory:
    """Lookup table of :class:`HostEntry` by host id."""

    def __init__(self, hosts: dict[str, HostEntry]) -> None:
        self._hosts = dict(hosts)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HostInventory:
        errors: list[str] = []
        err: ValidationError
        for err in sorted(_validator.iter_errors(data), key=lambda e: list(e.path)):
            path = ".".join(str(p) for p in err.absolute_path) or "(root)"
            errors.append(f"{path}: {err.message}")
        if errors:
            raise InventoryError(errors)

        hosts: dict[str, HostEntry] = {}
        for host_id, raw in data["hosts"].items():
            key = raw.get("key_filename")
            hosts[host_id] = HostEntry(
                host_id=host_id,
                hostname=raw.get("hostname", ""),
                port=raw.get("port", 22),
                username=raw.get("username", "root"),
                key_filename=str(Path(key).expanduser()) if key else None,
                local=raw.get("local", False),
            )
        return cls(hosts)

    @classmethod
    def load(cls, path: Path) -> HostInventory:
        """Read and validate the inventory file at *path*."""
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise InventoryError([f"{path}: {exc}"]) from exc
        return cls.from_dict(data)

    def get(self, host_id: str) -> HostEntry:
        try:
            return self._hosts[host_id]
        except KeyError:
            raise InventoryError([f"unknown host '{host_id}'"]) from None

    def __contains__(self, host_id: object) -> bool:
        return host_id in self._hosts

    def host_ids(self) -> list[str]:
        return sorted(self._hosts)

"""JSON Schema validation for CacheOrchestrator data files.

Defines strict schemas for:
- The desired-state store document (as written by StateStore)
- Audit journal entries (as written by AuditJournal)

Uses jsonschema Draft 7 for validation. Raises SchemaValidationError when
data does not conform to the schema.
"""
from __future__ import annotations

from typing import Any

from jsonschema import Draft7Validator, ValidationError

# ---------------------------------------------------------------------------
# Store document schema
# ---------------------------------------------------------------------------

CACHE_STATE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["enabled"],
    "additionalProperties": False,
    "properties": {
        "enabled": {"type": "boolean"},
        "ttl_seconds": {"type": ["integer", "null"], "minimum": 0},
        "memory_budget": {
            "type": ["string", "null"],
            "pattern": "^[1-9][0-9]*[KMGTkmgt]?$",
        },
        "topology": {
            "type": ["string", "null"],
            "enum": ["shared_port", "dedicated_port", None],
        },
        "backend_port": {
            "type": ["integer", "null"],
            "minimum": 1,
            "maximum": 65535,
        },
    },
}

STORE_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "DesiredStateStore",
    "type": "object",
    "required": ["version", "sites"],
    "additionalProperties": False,
    "properties": {
        "version": {"type": "integer", "const": 1},
        "sites": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "required": ["site_id", "host_id", "domain", "aliases", "cache"],
                "additionalProperties": False,
                "properties": {
                    "site_id": {"type": "string", "minLength": 1},
                    "host_id": {"type": "string", "minLength": 1},
                    "domain": {"type": "string", "minLength": 1},
                    "aliases": {"type": "array", "items": {"type": "string"}},
                    "cache": CACHE_STATE_SCHEMA,
                },
            },
        },
    },
}

# ---------------------------------------------------------------------------
# Audit journal entry schema
# ---------------------------------------------------------------------------

AUDIT_ENTRY_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "AuditJournalEntry",
    "type": "object",
    "required": ["timestamp", "workflow", "site_id", "request_id", "status"],
    "additionalProperties": False,
    "properties": {
        "timestamp": {"type": "string", "minLength": 1},
        "workflow": {
            "type": "string",
            "enum": ["enable", "disable", "purge"],
        },
        "site_id": {"type": "string", "minLength": 1},
        "request_id": {"type": "string", "minLength": 1},
        "status": {
            "type": "string",
            "enum": ["ok", "failed", "rollback_partial", "rejected"],
        },
        "performed_steps": {"type": "array", "items": {"type": "string"}},
        "warnings": {"type": "array", "items": {"type": "string"}},
        "error": {"type": "string"},
    },
}

# Pre-compiled validators
_store_validator = Draft7Validator(STORE_SCHEMA)
_audit_validator = Draft7Validator(AUDIT_ENTRY_SCHEMA)


# ---------------------------------------------------------------------------
# Custom exception
# ---------------------------------------------------------------------------


class SchemaValidationError(Exception):
    """Raised when data fails schema validation."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__(f"Validation failed: {'; '.join(errors)}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_store(data: dict[str, Any]) -> None:
    """Validate a store document.

    Raises SchemaValidationError if the data is invalid.
    """
    _validate(data, _store_validator)


def validate_audit_entry(data: dict[str, Any]) -> None:
    """Validate an audit journal entry.

    Raises SchemaValidationError if the data is invalid.
    """
    _validate(data, _audit_validator)


# ---------------------------------------------------------------------------
# Internal
# ---------------------------------------------------------------------------


def _validate(data: dict[str, Any], validator: Draft7Validator) -> None:
    """Run validation and collect all errors."""
    errors: list[str] = []
    err: ValidationError
    for err in sorted(
        validator.iter_errors(data), key=lambda e: [str(p) for p in e.path]
    ):
        path = ".".join(str(p) for p in err.absolute_path) or "(root)"
        errors.append(f"{path}: {err.message}")
    if errors:
        raise SchemaValidationError(errors)

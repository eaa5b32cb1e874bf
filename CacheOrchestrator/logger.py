"""Structured JSON logging for the CacheOrchestrator.

Workflow records carry ``site_id`` and ``workflow`` through ``extra=``;
the JSON formatter emits them next to the message.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any


class _JsonFormatter(logging.Formatter):
    """Emit each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "site_id": getattr(record, "site_id", None),
            "workflow": getattr(record, "workflow", None),
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            entry["error"] = str(record.exc_info[1])
        return json.dumps(entry, ensure_ascii=False)


def workflow_context(site_id: str, workflow: str) -> dict[str, str]:
    """``extra=`` mapping tagging a record with its site and workflow."""
    return {"site_id": site_id, "workflow": workflow}


def configure_logging(level: int = logging.INFO, json_format: bool = False) -> None:
    """Install a single stderr handler on the root logger."""
    handler = logging.StreamHandler(sys.stderr)
    if json_format:
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(name)s] %(levelname)s %(message)s")
        )
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

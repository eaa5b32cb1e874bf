"""Append-only audit journal of workflow outcomes (JSONL, fsync'd)."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .schema_validator import SchemaValidationError, validate_audit_entry

logger = logging.getLogger(__name__)


class AuditJournal:
    """One JSON line per Enable / Disable / Purge outcome."""

    def __init__(self, journal_path: Path) -> None:
        self._journal_path = journal_path

    @property
    def path(self) -> Path:
        return self._journal_path

    def record(
        self,
        workflow: str,
        site_id: str,
        request_id: str,
        status: str,
        performed_steps: list[str] | None = None,
        warnings: list[str] | None = None,
        error: str = "",
    ) -> None:
        """Append one entry. Failures are logged and never raised."""
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "workflow": workflow,
            "site_id": site_id,
            "request_id": request_id,
            "status": status,
        }
        if performed_steps:
            entry["performed_steps"] = list(performed_steps)
        if warnings:
            entry["warnings"] = list(warnings)
        if error:
            entry["error"] = error

        try:
            validate_audit_entry(entry)
            self._append(entry)
        except (SchemaValidationError, OSError) as exc:
            logger.error("Audit write failed for %s/%s: %s", workflow, site_id, exc)
            return

        logger.info(
            "Audit: workflow=%s site=%s status=%s req=%s",
            workflow,
            site_id,
            status,
            request_id,
        )

    def entries(self) -> list[dict[str, Any]]:
        """Read back every entry, skipping lines that do not parse."""
        if not self._journal_path.exists():
            return []
        result: list[dict[str, Any]] = []
        for line in self._journal_path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                result.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping corrupt audit line: %.80s", line)
        return result

    def _append(self, entry: dict[str, Any]) -> None:
        self._journal_path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(entry, ensure_ascii=False) + "\n"
        fd = os.open(
            str(self._journal_path),
            os.O_WRONLY | os.O_CREAT | os.O_APPEND,
        )
        try:
            os.write(fd, line.encode("utf-8"))
            os.fsync(fd)
        finally:
            os.close(fd)

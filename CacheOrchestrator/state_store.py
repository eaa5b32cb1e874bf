"""Desired-State Store — durable record of every site and its cache state.

One JSON document holds all sites. Every mutation rewrites the whole
document atomically (temp file → fsync → rename) under an exclusive file
lock, and refreshes a SHA-256 companion file used by ``verify_integrity``.
Decoding and encoding happen at this boundary only: callers deal with
:class:`Site` / :class:`CacheState` objects.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from .exceptions import IllegalTransition, SiteNotFoundError, StoreError
from .locks import ScopedLock
from .models import CacheState, Site
from .schema_validator import SchemaValidationError, validate_store

logger = logging.getLogger(__name__)

STORE_VERSION = 1


class StateStore:
    """Persistent site registry with crash-safe writes."""

    def __init__(self, state_file: Path, lock_timeout: float = 30.0) -> None:
        self._state_file = state_file
        self._hash_file = state_file.with_name(state_file.name + ".hash")
        self._lock = ScopedLock(
            state_file.with_name(f".{state_file.name}.lock"), timeout=lock_timeout
        )

    @property
    def path(self) -> Path:
        return self._state_file

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, site_id: str) -> CacheState:
        """Return the recorded cache state of *site_id*."""
        return self.get_site(site_id).cache

    def get_site(self, site_id: str) -> Site:
        site = self._load().get(site_id)
        if site is None:
            raise SiteNotFoundError(site_id)
        return site

    def sites(self) -> list[Site]:
        return list(self._load().values())

    def sites_on_host(self, host_id: str) -> list[Site]:
        return [s for s in self._load().values() if s.host_id == host_id]

    def other_enabled_sites(self, site_id: str) -> list[Site]:
        """Enabled sites sharing the host of *site_id*, excluding it."""
        sites = self._load()
        site = sites.get(site_id)
        if site is None:
            raise SiteNotFoundError(site_id)
        return [
            s for s in sites.values()
            if s.host_id == site.host_id
            and s.site_id != site_id
            and s.cache.enabled
        ]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def register_site(self, site: Site) -> Site:
        """Add or update a site record.

        Updating is refused while caching is enabled: the deployed policy
        was rendered for the recorded host names.
        """
        with self._lock:
            sites = self._load()
            existing = sites.get(site.site_id)
            if existing is not None and existing.cache.enabled:
                raise IllegalTransition(
                    site.site_id,
                    f"Cannot update site '{site.site_id}' while caching is enabled",
                )
            if existing is not None:
                site = site.model_copy(update={"cache": existing.cache})
            sites[site.site_id] = site
            self._save(sites)
        logger.info("Site registered: %s (%s on %s)", site.site_id, site.domain, site.host_id)
        return site

    def remove_site(self, site_id: str) -> None:
        """Delete a site record. Refused while caching is enabled."""
        with self._lock:
            sites = self._load()
            site = sites.get(site_id)
            if site is None:
                raise SiteNotFoundError(site_id)
            if site.cache.enabled:
                raise IllegalTransition(
                    site_id,
                    f"Disable caching before removing site '{site_id}'",
                )
            del sites[site_id]
            self._save(sites)
        logger.info("Site removed: %s", site_id)

    def commit(self, site_id: str, state: CacheState) -> None:
        """Durably record *state* for *site_id* before returning."""
        with self._lock:
            sites = self._load()
            site = sites.get(site_id)
            if site is None:
                raise SiteNotFoundError(site_id)
            sites[site_id] = site.model_copy(update={"cache": state})
            self._save(sites)
        logger.info("State committed: %s enabled=%s", site_id, state.enabled)

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def verify_integrity(self) -> list[str]:
        """Check schema, model invariants and the SHA-256 companion file.

        Returns the list of problems found (empty when the store is sound).
        A store that was never written is sound.
        """
        if not self._state_file.exists():
            return []
        errors: list[str] = []
        try:
            content = self._state_file.read_text(encoding="utf-8")
        except OSError as exc:
            return [f"Cannot read {self._state_file}: {exc}"]

        if self._hash_file.exists():
            expected = self._hash_file.read_text(encoding="utf-8").strip()
            actual = _sha256(content)
            if expected != actual:
                errors.append(
                    f"Hash mismatch: expected {expected[:12]}, got {actual[:12]}"
                )
        else:
            errors.append(f"Missing hash file {self._hash_file.name}")

        try:
            self._decode(content)
        except StoreError as exc:
            errors.append(str(exc))
        return errors

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _load(self) -> dict[str, Site]:
        if not self._state_file.exists():
            return {}
        try:
            content = self._state_file.read_text(encoding="utf-8")
        except OSError as exc:
            raise StoreError(f"Cannot read {self._state_file}: {exc}") from exc
        return self._decode(content)

    def _decode(self, content: str) -> dict[str, Site]:
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise StoreError(f"Corrupt store {self._state_file}: {exc}") from exc
        try:
            validate_store(data)
        except SchemaValidationError as exc:
            raise StoreError(f"Invalid store {self._state_file}: {exc}") from exc

        sites: dict[str, Site] = {}
        for key, raw in data["sites"].items():
            try:
                site = Site.model_validate(raw)
            except (PydanticValidationError, ValueError) as exc:
                raise StoreError(f"Invalid site record '{key}': {exc}") from exc
            if site.site_id != key:
                raise StoreError(
                    f"Site record key '{key}' does not match site_id '{site.site_id}'"
                )
            sites[key] = site
        return sites

    def _save(self, sites: dict[str, Site]) -> None:
        data: dict[str, Any] = {
            "version": STORE_VERSION,
            "sites": {
                site_id: site.model_dump(mode="json")
                for site_id, site in sorted(sites.items())
            },
        }
        validate_store(data)
        content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
        _atomic_write(self._state_file, content)
        _atomic_write(self._hash_file, _sha256(content) + "\n")


def _sha256(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _atomic_write(path: Path, content: str) -> None:
    """Write *content* to *path* via temp file, fsync and atomic replace.

    Raises StoreError on failure; *path* keeps its previous content.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = -1
    tmp_path = ""
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(path.parent),
            prefix=f".{path.stem}_",
            suffix=".tmp",
        )
        os.write(fd, content.encode("utf-8"))
        os.fsync(fd)
        os.close(fd)
        fd = -1
        Path(tmp_path).replace(path)
    except OSError as exc:
        if fd >= 0:
            os.close(fd)
        if tmp_path and Path(tmp_path).exists():
            Path(tmp_path).unlink(missing_ok=True)
        raise StoreError(f"Atomic write to {path} failed: {exc}") from exc

"""Tests for ScopedLock and LockRegistry."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from CacheOrchestrator.exceptions import LockTimeoutError
from CacheOrchestrator.locks import LockRegistry, ScopedLock


class TestScopedLock:
    def test_acquire_release(self, tmp_path: Path) -> None:
        lock = ScopedLock(tmp_path / "a.lock", timeout=1.0)
        with lock:
            assert lock.is_acquired
            assert (tmp_path / "a.lock").exists()
        assert not lock.is_acquired
        # The lock file is never unlinked.
        assert (tmp_path / "a.lock").exists()

    def test_reentrant(self, tmp_path: Path) -> None:
        lock = ScopedLock(tmp_path / "a.lock", timeout=1.0)
        with lock:
            with lock:
                assert lock.is_acquired
            assert lock.is_acquired
        assert not lock.is_acquired

    def test_release_when_not_held(self, tmp_path: Path) -> None:
        ScopedLock(tmp_path / "a.lock").release()

    def test_other_thread_times_out(self, tmp_path: Path) -> None:
        lock = ScopedLock(tmp_path / "a.lock", timeout=0.2)
        errors: list[Exception] = []

        def contend() -> None:
            try:
                lock.acquire()
            except LockTimeoutError as exc:
                errors.append(exc)

        with lock:
            worker = threading.Thread(target=contend)
            worker.start()
            worker.join()
        assert len(errors) == 1

    def test_second_handle_on_same_file_times_out(self, tmp_path: Path) -> None:
        first = ScopedLock(tmp_path / "a.lock", timeout=0.2)
        second = ScopedLock(tmp_path / "a.lock", timeout=0.2)
        with first:
            with pytest.raises(LockTimeoutError):
                second.acquire()
        with second:
            assert second.is_acquired


class TestLockRegistry:
    def test_same_key_same_lock(self, tmp_path: Path) -> None:
        registry = LockRegistry(tmp_path)
        with registry.site("blog") as a:
            with registry.site("blog") as b:
                assert a is b

    def test_site_and_host_scopes_are_distinct(self, tmp_path: Path) -> None:
        registry = LockRegistry(tmp_path)
        with registry.site("web-01") as site_lock, registry.host("web-01") as host_lock:
            assert site_lock is not host_lock
            assert site_lock.path.name == "site-web-01.lock"
            assert host_lock.path.name == "host-web-01.lock"

    def test_unsafe_characters_sanitized(self, tmp_path: Path) -> None:
        registry = LockRegistry(tmp_path)
        with registry.site("../etc/passwd") as lock:
            assert lock.path.parent == tmp_path
            assert lock.path.name == "site-.._etc_passwd.lock"

    def test_different_sites_run_concurrently(self, tmp_path: Path) -> None:
        registry = LockRegistry(tmp_path, timeout=0.5)
        entered = threading.Event()
        release = threading.Event()

        def hold_shop() -> None:
            with registry.site("shop"):
                entered.set()
                release.wait(2.0)

        worker = threading.Thread(target=hold_shop)
        worker.start()
        try:
            assert entered.wait(2.0)
            with registry.site("blog") as lock:
                assert lock.is_acquired
        finally:
            release.set()
            worker.join()

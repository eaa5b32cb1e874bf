"""Workflows running at the same time against one host."""

from __future__ import annotations

import threading
from collections.abc import Callable

from CacheOrchestrator.exceptions import AlreadyEnabled
from CacheOrchestrator.models import WorkflowResult
from CacheOrchestrator.orchestrator import CacheOrchestrator
from policy import nginx, vcl

from CacheOrchestrator.tests.conftest import FakeHost

MASTER = "/etc/varnish/default.vcl"
BLOG_POLICY = "/etc/varnish/sites/example.com.vcl"
SHOP_POLICY = "/etc/varnish/sites/shop.example.org.vcl"


def run_together(*calls: Callable[[], object]) -> list[object]:
    """Start every call at once; return each result or raised exception."""
    barrier = threading.Barrier(len(calls))
    outcomes: list[object] = [None] * len(calls)

    def worker(index: int, call: Callable[[], object]) -> None:
        barrier.wait()
        try:
            outcomes[index] = call()
        except Exception as exc:
            outcomes[index] = exc

    threads = [
        threading.Thread(target=worker, args=(i, call)) for i, call in enumerate(calls)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
        assert not t.is_alive()
    return outcomes


class TestConcurrentEnable:
    def test_two_sites_keep_both_include_lines(
        self, sites: CacheOrchestrator, host: FakeHost
    ) -> None:
        outcomes = run_together(
            lambda: sites.enable("blog", ttl_seconds=300, memory_budget="256M"),
            lambda: sites.enable("shop", ttl_seconds=60, memory_budget="256M"),
        )

        assert all(isinstance(o, WorkflowResult) and o.success for o in outcomes), outcomes
        assert sorted(vcl.site_includes(host.files[MASTER])) == [BLOG_POLICY, SHOP_POLICY]
        assert vcl.count_includes(host.files[MASTER], BLOG_POLICY) == 1
        assert vcl.count_includes(host.files[MASTER], SHOP_POLICY) == 1
        assert sites.store.get("blog").enabled is True
        assert sites.store.get("shop").enabled is True
        assert sites.verify() == []

    def test_same_site_enabled_exactly_once(
        self, sites: CacheOrchestrator, host: FakeHost
    ) -> None:
        outcomes = run_together(
            lambda: sites.enable("blog", ttl_seconds=300, memory_budget="256M"),
            lambda: sites.enable("blog", ttl_seconds=300, memory_budget="256M"),
        )

        results = [o for o in outcomes if isinstance(o, WorkflowResult)]
        rejected = [o for o in outcomes if isinstance(o, AlreadyEnabled)]
        assert len(results) == 1 and results[0].success, outcomes
        assert len(rejected) == 1, outcomes
        assert vcl.count_includes(host.files[MASTER], BLOG_POLICY) == 1
        assert host.files["/etc/nginx/sites-available/example.com"].count(
            nginx.MARKER_START
        ) == 1

"""Entry point for running the CacheOrchestrator as a module.

Usage:
    python -m CacheOrchestrator register-site blog --host web-01 --domain example.com --aliases www.example.com
    python -m CacheOrchestrator enable blog --ttl 300 --memory 256M
    python -m CacheOrchestrator enable shop --ttl 60 --memory 1G --topology dedicated_port --backend-port 8080
    python -m CacheOrchestrator purge blog --mode single --path /index.html
    python -m CacheOrchestrator disable blog
    python -m CacheOrchestrator status blog
    python -m CacheOrchestrator verify
"""
from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence

from pydantic import BaseModel

from CacheOrchestrator.config import OrchestratorConfig
from CacheOrchestrator.exceptions import OrchestratorError, RollbackPartial
from CacheOrchestrator.logger import configure_logging
from CacheOrchestrator.models import PurgeMode, Topology
from CacheOrchestrator.orchestrator import CacheOrchestrator
from infra.exceptions import ChannelError
from infra.inventory import InventoryError

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m CacheOrchestrator",
        description="CacheOrchestrator — per-site Varnish caching in front of nginx",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON lines",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("register-site", help="Add or update a site record")
    p.add_argument("site_id")
    p.add_argument("--host", required=True, help="Host id from the inventory")
    p.add_argument("--domain", required=True)
    p.add_argument("--aliases", default="", help="Comma separated aliases")

    p = sub.add_parser("enable", help="Enable caching for a site")
    p.add_argument("site_id")
    p.add_argument("--ttl", type=int, required=True, help="Default TTL in seconds")
    p.add_argument("--memory", required=True, help="Cache memory budget, e.g. 256M")
    p.add_argument(
        "--topology",
        default=Topology.SHARED_PORT.value,
        choices=[t.value for t in Topology],
    )
    p.add_argument("--backend-port", type=int, default=None)

    p = sub.add_parser("disable", help="Disable caching for a site")
    p.add_argument("site_id")

    p = sub.add_parser("purge", help="Purge cached content of a site")
    p.add_argument("site_id")
    p.add_argument(
        "--mode",
        default=PurgeMode.ALL.value,
        choices=[m.value for m in PurgeMode],
    )
    p.add_argument("--pattern", default=None, help="URL regex for --mode pattern")
    p.add_argument("--path", default=None, help="URL path for --mode single")

    p = sub.add_parser("status", help="Show the recorded state of a site")
    p.add_argument("site_id")

    sub.add_parser("verify", help="Verify integrity of the desired-state store")
    return parser


def _print(model: BaseModel) -> None:
    print(model.model_dump_json(indent=2))


def _run(orch: CacheOrchestrator, args: argparse.Namespace) -> int:
    if args.command == "register-site":
        _print(orch.register_site(args.site_id, args.host, args.domain, args.aliases))
    elif args.command == "enable":
        _print(orch.enable(
            args.site_id,
            ttl_seconds=args.ttl,
            memory_budget=args.memory,
            topology=args.topology,
            backend_port=args.backend_port,
        ))
    elif args.command == "disable":
        result = orch.disable(args.site_id)
        for warning in result.warnings:
            logger.warning("  warning: %s", warning)
        _print(result)
    elif args.command == "purge":
        _print(orch.purge(
            args.site_id, mode=args.mode, pattern=args.pattern, path=args.path
        ))
    elif args.command == "status":
        _print(orch.status(args.site_id))
    elif args.command == "verify":
        errors = orch.verify()
        if errors:
            logger.warning("Store validation found %d error(s)", len(errors))
            for err in errors:
                logger.warning("  - %s", err)
            return 1
        logger.info("Store validation passed")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging(getattr(logging, args.log_level), json_format=args.json_logs)

    orch = CacheOrchestrator(config=OrchestratorConfig.from_env())
    try:
        return _run(orch, args)
    except RollbackPartial as exc:
        logger.critical("%s", exc)
        for failure in exc.failures:
            logger.critical("  manual attention needed: %s", failure)
        return 1
    except (OrchestratorError, ChannelError, InventoryError) as exc:
        logger.error("%s", exc)
        return 1
    finally:
        orch.close()


if __name__ == "__main__":
    sys.exit(main())

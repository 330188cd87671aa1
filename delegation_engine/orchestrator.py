"""
Delegation engine — process entrypoint.

Central coordination entrypoint that:
1. Opens the permission store
2. Loads the auto-revoke rule set
3. Wires the lifecycle manager, rule engine and market snapshot provider
4. Runs the auto-revoke scheduler until interrupted
"""

from __future__ import annotations

import asyncio
import logging
import sys

import structlog

from delegation_engine.autorevoke.engine import AutoRevokeEngine
from delegation_engine.autorevoke.rules import load_rules_file
from delegation_engine.autorevoke.scheduler import AutoRevokeScheduler
from delegation_engine.config import DelegationSettings, settings
from delegation_engine.integrations.events import LoggingEventSink
from delegation_engine.integrations.market_data import (
    HttpSnapshotProvider,
    MarketSnapshotProvider,
)
from delegation_engine.permissions.lifecycle import PermissionLifecycleManager
from delegation_engine.store.base import PermissionStore
from delegation_engine.store.sql import SqlPermissionStore

logger = logging.getLogger(__name__)


def configure_logging(config: DelegationSettings = settings) -> None:
    """Configure structured logging."""
    logging.basicConfig(
        level=logging.getLevelName(config.log_level),
        format="%(message)s",
        stream=sys.stdout,
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if config.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_engine(
    config: DelegationSettings, store: PermissionStore
) -> AutoRevokeEngine:
    manager = PermissionLifecycleManager(store, sink=LoggingEventSink())
    rules = load_rules_file(config.rules_file) if config.rules_file else None
    return AutoRevokeEngine(
        manager,
        rules=rules,
        restrict_factor=config.restrict_factor,
        escalation_threshold=config.escalation_threshold,
        max_workers=config.evaluation_workers,
    )


def build_provider(config: DelegationSettings) -> MarketSnapshotProvider:
    if not config.market_snapshot_url:
        raise SystemExit("MARKET_SNAPSHOT_URL is not configured")
    return HttpSnapshotProvider(
        config.market_snapshot_url,
        api_key=config.market_snapshot_api_key,
        timeout=config.snapshot_timeout_seconds,
    )


async def main(config: DelegationSettings = settings) -> None:
    """Main orchestrator loop."""
    configure_logging(config)
    log = structlog.get_logger()

    log.info(
        "delegation_engine.orchestrator.starting",
        scan_interval_seconds=config.scan_interval_seconds,
        evaluation_workers=config.evaluation_workers,
    )

    # Phase 1: Store
    store = SqlPermissionStore(config.resolved_database_url)
    store.initialize()
    log.info("delegation_engine.orchestrator.store_ready")

    # Phase 2: Rules & engine
    engine = build_engine(config, store)
    log.info(
        "delegation_engine.orchestrator.rules_loaded",
        rules=[rule.id for rule in engine.list_rules()],
        source=config.rules_file or "defaults",
    )

    # Phase 3: Scheduler
    provider = build_provider(config)
    scheduler = AutoRevokeScheduler(
        engine,
        provider,
        interval_seconds=config.scan_interval_seconds,
        snapshot_timeout=config.snapshot_timeout_seconds,
    )
    await scheduler.start()
    log.info("delegation_engine.orchestrator.running")

    try:
        while scheduler.is_running:
            await asyncio.sleep(60)
            broken = [pid for pid, ok, _, _ in store.verify_chains() if not ok]
            if broken:
                log.critical(
                    "delegation_engine.orchestrator.integrity_failure",
                    permissions=broken,
                )
    except asyncio.CancelledError:
        log.info("delegation_engine.orchestrator.shutdown")
        raise
    finally:
        await scheduler.stop()
        await provider.close()
        store.dispose()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
    except Exception as e:
        structlog.get_logger().exception("delegation_engine.orchestrator.fatal_error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    run()

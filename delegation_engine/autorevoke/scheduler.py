"""
Auto-Revoke Scheduler — periodic and manual evaluation passes.

Every `interval_seconds` the scheduler pulls a fresh market snapshot from the
provider and hands it to the rule engine. The engine is synchronous and runs
on a worker thread so the event loop stays responsive. A snapshot that cannot
be fetched in `snapshot_timeout` seconds skips the tick; a failing tick is
logged and the loop carries on.

`trigger(market)` runs the same pass on demand with a caller-supplied
snapshot (a webhook, an operator). Manual and periodic passes may overlap;
the engine's per-permission locks keep them from double-acting.

`stop()` is graceful: in-flight passes run to completion before it returns,
and once stopped every scheduled or manual tick is reported as skipped until
the scheduler is started again.
"""

from __future__ import annotations

import asyncio
import collections
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

import structlog

from delegation_engine.autorevoke.engine import AutoRevokeEngine, summarize_events
from delegation_engine.integrations.market_data import MarketSnapshotProvider
from delegation_engine.permissions.errors import EvaluationError, SnapshotUnavailable
from delegation_engine.permissions.schema import AutoRevokeEvent, MarketCondition, utcnow

DEFAULT_INTERVAL_SECONDS = 300  # 5 minutes
DEFAULT_SNAPSHOT_TIMEOUT = 10.0
DEFAULT_HISTORY_SIZE = 100


class TickStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"  # some permissions failed
    SKIPPED = "skipped"  # no market snapshot, or scheduler stopped
    FAILED = "failed"


class TickSource(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


@dataclass
class TickReport:
    source: TickSource
    status: TickStatus
    started_at: datetime
    finished_at: datetime
    market: MarketCondition | None = None
    events: list[AutoRevokeEvent] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    error: str | None = None

    @property
    def counts(self) -> dict[str, int]:
        return summarize_events(self.events)


class AutoRevokeScheduler:
    def __init__(
        self,
        engine: AutoRevokeEngine,
        provider: MarketSnapshotProvider,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        snapshot_timeout: float = DEFAULT_SNAPSHOT_TIMEOUT,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        self.engine = engine
        self.provider = provider
        self.interval_seconds = interval_seconds
        self.snapshot_timeout = snapshot_timeout
        self.history: collections.deque[TickReport] = collections.deque(maxlen=history_size)
        self._task: asyncio.Task | None = None
        self._stopping: asyncio.Event | None = None
        self._in_flight: set[asyncio.Future] = set()
        self._closed = False
        self._log = structlog.get_logger()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._closed = False
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name="autorevoke-scheduler")
        self._log.info(
            "delegation_engine.scheduler.started",
            interval_seconds=self.interval_seconds,
            snapshot_timeout=self.snapshot_timeout,
        )

    async def stop(self) -> None:
        """Stop the periodic loop and wait for in-flight passes to finish."""
        self._closed = True
        if self._stopping is not None:
            self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        self._log.info("delegation_engine.scheduler.stopped", ticks=len(self.history))

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                self._log.exception("delegation_engine.scheduler.loop_error", error=str(exc))
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    # ════════════════════════════════════════════════════════════════
    # Passes
    # ════════════════════════════════════════════════════════════════

    async def _fetch_snapshot(self) -> MarketCondition:
        try:
            return await asyncio.wait_for(self.provider.current(), timeout=self.snapshot_timeout)
        except SnapshotUnavailable:
            raise
        except asyncio.TimeoutError as exc:
            raise SnapshotUnavailable(
                f"snapshot fetch exceeded {self.snapshot_timeout}s"
            ) from exc
        except Exception as exc:
            raise SnapshotUnavailable(f"snapshot fetch failed: {exc}") from exc

    async def run_once(self) -> TickReport:
        """One scheduled tick: fetch a snapshot, then evaluate."""
        started_at = utcnow()
        if self._closed:
            return self._reject(TickSource.SCHEDULED, started_at)
        try:
            market = await self._fetch_snapshot()
        except SnapshotUnavailable as exc:
            report = TickReport(
                source=TickSource.SCHEDULED,
                status=TickStatus.SKIPPED,
                started_at=started_at,
                finished_at=utcnow(),
                error=str(exc),
            )
            self.history.append(report)
            self._log.warning("delegation_engine.scheduler.tick_skipped", reason=str(exc))
            return report
        return await self._run(market, TickSource.SCHEDULED, started_at)

    async def trigger(self, market: MarketCondition) -> TickReport:
        """Run a manual pass with a caller-supplied snapshot."""
        if self._closed:
            return self._reject(TickSource.MANUAL, utcnow())
        self._log.info(
            "delegation_engine.scheduler.manual_trigger",
            volatility=market.volatility,
            trend=market.trend.value,
        )
        return await self._run(market, TickSource.MANUAL, utcnow())

    def _reject(self, source: TickSource, started_at: datetime) -> TickReport:
        report = TickReport(
            source=source,
            status=TickStatus.SKIPPED,
            started_at=started_at,
            finished_at=utcnow(),
            error="scheduler stopped",
        )
        self.history.append(report)
        self._log.warning("delegation_engine.scheduler.tick_rejected", source=source.value)
        return report

    async def _run(
        self, market: MarketCondition, source: TickSource, started_at: datetime
    ) -> TickReport:
        future = asyncio.ensure_future(asyncio.to_thread(self.engine.evaluate, market))
        self._in_flight.add(future)
        try:
            events = await future
            report = TickReport(
                source=source,
                status=TickStatus.COMPLETED,
                started_at=started_at,
                finished_at=utcnow(),
                market=market,
                events=events,
            )
        except EvaluationError as exc:
            report = TickReport(
                source=source,
                status=TickStatus.PARTIAL,
                started_at=started_at,
                finished_at=utcnow(),
                market=market,
                events=exc.events,
                failures={pid: str(err) for pid, err in exc.failures.items()},
                error=str(exc),
            )
            self._log.error(
                "delegation_engine.scheduler.tick_partial",
                source=source.value,
                failed_permissions=sorted(exc.failures),
            )
        except Exception as exc:
            report = TickReport(
                source=source,
                status=TickStatus.FAILED,
                started_at=started_at,
                finished_at=utcnow(),
                market=market,
                error=str(exc),
            )
            self._log.exception(
                "delegation_engine.scheduler.tick_failed",
                source=source.value,
                error=str(exc),
            )
        finally:
            self._in_flight.discard(future)

        self.history.append(report)
        self._log.info(
            "delegation_engine.scheduler.tick_completed",
            source=source.value,
            status=report.status.value,
            events=len(report.events),
            **report.counts,
        )
        return report

"""
Trade Monitor

Perpetual background job that drives every open trade through exit
evaluation:
- open or fail entries whose confirmation timed out
- reconcile exits whose confirmation timed out
- fetch price, evaluate, persist the high-water mark
- close automatically when an exit condition is met

One trade failing never stops the rest of the cycle. Polling is the only
retry mechanism: a trade whose exit failed is simply evaluated again next
cycle.
"""
import asyncio
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Optional

from loguru import logger
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.config import MonitorConfig
from config.sentry import capture_exception
from src.core.enums import TradeStatus
from src.core.exceptions import TradeCloseError
from src.database.crud import get_trade, list_open_trades, list_pending_entries
from src.services.trade_service import TradeService
from src.utils.time_utils import utcnow


@dataclass
class CycleReport:
    """Summary of one monitor cycle"""

    started_at: datetime
    checked: int = 0
    closed: int = 0
    errors: int = 0
    pending: int = 0
    entries_opened: int = 0
    entries_failed: int = 0
    skipped: bool = False
    interrupted: bool = False
    duration_sec: float = 0.0
    failed_trade_ids: List[int] = field(default_factory=list)


class TradeMonitorScheduler:
    """
    APScheduler job for open trade monitoring

    Cycles never overlap: APScheduler runs at most one instance of the job,
    an asyncio lock guards manual triggers, and an optional Redis lock
    guards against other worker processes.
    """

    JOB_ID = "trade_monitor"

    def __init__(
        self,
        trade_service: TradeService,
        session_maker: async_sessionmaker[AsyncSession],
        config: Optional[MonitorConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        scheduler_factory: Callable[[], Any] = AsyncIOScheduler,
        redis_client=None,
        resources: Optional[list] = None,
    ):
        self.trade_service = trade_service
        self.session_maker = session_maker
        self.config = config or MonitorConfig()
        self.clock = clock
        self.scheduler_factory = scheduler_factory
        self.scheduler = None
        self._redis = redis_client
        self._lock_token: Optional[str] = None
        # Objects with an async close() (HTTP clients), released on stop
        self.resources = resources or []

        self._running = False
        self._cycle_lock = asyncio.Lock()
        self._stop_requested = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self.last_report: Optional[CycleReport] = None
        self.cycles_run = 0

    # ===========================
    # LIFECYCLE
    # ===========================

    def start(self) -> None:
        """Start the interval job (first run immediately)"""
        if self._running:
            logger.warning("Trade monitor already running")
            return

        self._stop_requested.clear()
        self.scheduler = self.scheduler_factory()
        self.scheduler.add_job(
            self._job_cycle,
            IntervalTrigger(seconds=self.config.interval_sec),
            id=self.JOB_ID,
            name="Trade Monitor",
            max_instances=1,
            coalesce=True,
            next_run_time=utcnow(),
            replace_existing=True,
        )
        self.scheduler.start()
        self._running = True

        logger.info(
            f"Trade monitor started: every {self.config.interval_sec}s, "
            f"order {self.config.order}"
        )

    async def stop(self, grace_sec: Optional[float] = None) -> None:
        """
        Stop scheduling, let the running cycle finish its current trade,
        then release shared resources
        """
        grace = self.config.shutdown_grace_sec if grace_sec is None else grace_sec

        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        self._running = False
        self._stop_requested.set()

        if not self._idle.is_set():
            logger.info(f"Waiting up to {grace}s for the running monitor cycle")
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("Monitor cycle did not finish within the grace period")

        for resource in self.resources:
            try:
                await resource.close()
            except Exception as e:
                logger.warning(f"Failed to close {type(resource).__name__}: {e}")

        if self._redis is not None:
            try:
                await self._redis.aclose()
            except Exception as e:
                logger.warning(f"Failed to close Redis client: {e}")
            self._redis = None

        logger.info("Trade monitor stopped")

    async def _job_cycle(self) -> None:
        try:
            await self.run_cycle()
        except Exception as e:
            logger.exception(f"Trade monitor cycle crashed: {e}")

    async def trigger_cycle_now(self) -> CycleReport:
        """Run a cycle immediately (skipped if one is already running)"""
        return await self.run_cycle()

    def get_status(self) -> dict:
        next_run = None
        if self.scheduler is not None:
            job = self.scheduler.get_job(self.JOB_ID)
            if job is not None and job.next_run_time:
                next_run = job.next_run_time.isoformat()

        report = self.last_report
        return {
            "running": self._running,
            "cycle_in_progress": not self._idle.is_set(),
            "interval_sec": self.config.interval_sec,
            "order": self.config.order,
            "cycles_run": self.cycles_run,
            "next_run_time": next_run,
            "last_cycle": None if report is None else {
                "started_at": report.started_at.isoformat(),
                "checked": report.checked,
                "closed": report.closed,
                "errors": report.errors,
                "entries_opened": report.entries_opened,
                "skipped": report.skipped,
                "duration_sec": report.duration_sec,
            },
        }

    # ===========================
    # DISTRIBUTED LOCK
    # ===========================

    async def _acquire_lock(self) -> bool:
        """Redis SET NX EX; without Redis the local lock is enough"""
        if self._redis is None:
            return True
        try:
            self._lock_token = secrets.token_hex(8)
            result = await self._redis.set(
                self.config.lock_key,
                self._lock_token,
                nx=True,
                ex=self.config.lock_ttl_sec,
            )
            return bool(result)
        except Exception as e:
            logger.warning(f"Redis lock failed, proceeding without lock: {e}")
            self._lock_token = None
            return True

    async def _release_lock(self) -> None:
        if self._redis is None or self._lock_token is None:
            return
        try:
            current = await self._redis.get(self.config.lock_key)
            if isinstance(current, bytes):
                current = current.decode()
            if current == self._lock_token:
                await self._redis.delete(self.config.lock_key)
        except Exception as e:
            logger.warning(f"Redis lock release failed: {e}")
        finally:
            self._lock_token = None

    # ===========================
    # CYCLE
    # ===========================

    async def run_cycle(self) -> CycleReport:
        """
        Evaluate every open trade once

        Returns:
            CycleReport (skipped=True when another cycle holds the lock)
        """
        report = CycleReport(started_at=self.clock())

        if self._cycle_lock.locked():
            logger.debug("Monitor cycle already running, skipping trigger")
            report.skipped = True
            return report

        async with self._cycle_lock:
            if not await self._acquire_lock():
                logger.debug("Monitor lock held by another worker, skipping cycle")
                report.skipped = True
                return report

            self._idle.clear()
            loop = asyncio.get_running_loop()
            started = loop.time()
            try:
                await self._run_trades(report)
            finally:
                report.duration_sec = round(loop.time() - started, 3)
                self._idle.set()
                await self._release_lock()

        self.cycles_run += 1
        self.last_report = report

        if report.checked or report.errors or report.pending:
            logger.info(
                f"Monitor cycle: {report.checked} checked, {report.closed} closed, "
                f"{report.entries_opened} entries confirmed, {report.entries_failed} entries failed, "
                f"{report.pending} pending, {report.errors} errors ({report.duration_sec}s)"
            )
        return report

    async def _run_pending_entries(self, report: CycleReport) -> None:
        async with self.session_maker() as session:
            trades = await list_pending_entries(session)
            trade_ids = [t.id for t in trades]

        for trade_id in trade_ids:
            if self._stop_requested.is_set():
                report.interrupted = True
                return
            try:
                outcome = await self.trade_service.reconcile_pending_entry(trade_id)
            except Exception as e:
                report.errors += 1
                report.failed_trade_ids.append(trade_id)
                logger.error(f"Error reconciling pending entry of trade {trade_id}: {e}")
                capture_exception(e, trade_id=trade_id)
                continue

            if outcome == "opened":
                report.entries_opened += 1
            elif outcome == "failed":
                report.entries_failed += 1
            elif outcome == "pending":
                report.pending += 1

    async def _run_trades(self, report: CycleReport) -> None:
        await self._run_pending_entries(report)
        if report.interrupted:
            logger.info("Stop requested, ending monitor cycle early")
            return

        async with self.session_maker() as session:
            trades = await list_open_trades(session, order=self.config.order)
            trade_ids = [t.id for t in trades]

        for trade_id in trade_ids:
            if self._stop_requested.is_set():
                logger.info("Stop requested, ending monitor cycle early")
                report.interrupted = True
                break

            try:
                outcome = await self._process_trade(trade_id)
            except TradeCloseError as e:
                # Already audited; the trade stays open for the next cycle
                report.errors += 1
                report.failed_trade_ids.append(trade_id)
                logger.error(f"Auto-close failed for trade {trade_id}: {e}")
                continue
            except Exception as e:
                report.errors += 1
                report.failed_trade_ids.append(trade_id)
                logger.error(f"Error monitoring trade {trade_id}: {e}")
                capture_exception(e, trade_id=trade_id)
                continue

            report.checked += 1
            if outcome == "closed":
                report.closed += 1
            elif outcome == "pending":
                report.pending += 1

    async def _process_trade(self, trade_id: int) -> str:
        """
        Monitor one trade

        Returns:
            closed | pending | held | busy | gone
        """
        async with self.session_maker() as session:
            trade = await get_trade(session, trade_id)
        if trade is None or trade.status != TradeStatus.OPEN.value:
            return "gone"

        if self.trade_service.close_in_progress(trade, now=self.clock()):
            logger.debug(f"Trade {trade_id} is being closed by another worker")
            return "busy"

        if trade.pending_exit_tx_hash:
            result = await self.trade_service.reconcile_pending_exit(trade_id)
            if result == "closed":
                return "closed"
            if result == "pending":
                return "pending"
            # cleared: the exit never landed, evaluate again below

        price = await self.trade_service.get_current_price(trade.token_address)
        decision = self.trade_service.evaluate(trade, price, now=self.clock())
        await self.trade_service.record_evaluation(trade_id, decision.high_water_mark)

        if not decision.should_exit:
            return "held"

        logger.info(
            f"Trade {trade_id} exit triggered: {decision.reason.value} "
            f"(price ${decision.current_price}, P/L {decision.pl_pct:.2f}%)"
        )
        await self.trade_service.close_trade_automatically(trade_id, decision)
        return "closed"

"""Per-job watcher that turns push and poll deliveries into exactly one outcome.

Push notifications are fast but unreliable, so a poll loop always runs next
to them. Whichever path sees the terminal record first wins; the resolved
flag is set before the first await on the resolution path, so a concurrent
delivery from the other path always finds it already set.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from config import MIN_FETCH_GAP_SEC, POLL_INTERVAL_SEC, PUSH_CONNECT_TIMEOUT_SEC
from schemas.records import JobRecord
from services.errors import (
    CoordinatorError,
    InvalidResult,
    JobFailed,
    NotificationChannelDegraded,
    ReclaimedJob,
)
from services.job_store import JobStore
from services.notification_bus import (
    CHANNEL_CLOSED,
    CHANNEL_ERROR,
    CHANNEL_SUBSCRIBED,
    NotificationBus,
    Subscription,
    invoke_callback,
)
from services.settlement_ledger import SettlementResult
from utils.metrics import incr
from utils.stage_logging import log_stage
from utils.status_machine import (
    OUTCOME_COMPLETED,
    OUTCOME_FAILED,
    OUTCOME_INVALID,
    classify_terminal,
    is_terminal,
)

logger = logging.getLogger("api.observer")

OnComplete = Callable[[JobRecord, Optional[SettlementResult]], Any]
OnError = Callable[[CoordinatorError], Any]
OnStatusChange = Callable[[JobRecord], Any]
SettleHook = Callable[[JobRecord], Awaitable[Optional[SettlementResult]]]


class ObserverState(str, Enum):
    IDLE = "idle"
    WATCHING = "watching"
    RESOLVED = "resolved"
    DISPOSED = "disposed"


class LifecycleObserver:
    def __init__(
        self,
        job_id: str,
        store: JobStore,
        *,
        on_complete: Optional[OnComplete] = None,
        on_error: Optional[OnError] = None,
        on_status_change: Optional[OnStatusChange] = None,
        settle: Optional[SettleHook] = None,
        bus: Optional[NotificationBus] = None,
        push_enabled: bool = True,
        poll_interval_sec: float = POLL_INTERVAL_SEC,
        min_fetch_gap_sec: float = MIN_FETCH_GAP_SEC,
        push_connect_timeout_sec: float = PUSH_CONNECT_TIMEOUT_SEC,
    ):
        self.job_id = job_id
        self._store = store
        self._bus = bus
        self._on_complete = on_complete
        self._on_error = on_error
        self._on_status_change = on_status_change
        self._settle = settle
        self._push_enabled = push_enabled and bus is not None
        self.poll_interval_sec = poll_interval_sec
        self.min_fetch_gap_sec = min_fetch_gap_sec
        self.push_connect_timeout_sec = push_connect_timeout_sec

        self._state = ObserverState.IDLE
        self._resolved = False
        self._disposed = False
        self._push_connected = False
        self._push_degraded = False
        self._last_seen: Optional[JobRecord] = None
        self._last_fetch_at: Optional[float] = None

        self._poll_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._subscription: Optional[Subscription] = None

        self.record: Optional[JobRecord] = None
        self.settlement: Optional[SettlementResult] = None
        self.error: Optional[CoordinatorError] = None
        self.done = asyncio.Event()

    @property
    def state(self) -> ObserverState:
        return self._state

    @property
    def resolved(self) -> bool:
        return self._resolved

    @property
    def finished(self) -> bool:
        return self._resolved or self._disposed

    @property
    def push_degraded(self) -> bool:
        return self._push_degraded

    async def start(self) -> "LifecycleObserver":
        if self._state != ObserverState.IDLE:
            return self
        self._state = ObserverState.WATCHING
        log_stage(job_id=self.job_id, stage="OBSERVE", event="STARTED", push=self._push_enabled)

        try:
            record = await self._fetch()
        except Exception as exc:
            logger.warning("observer_initial_read_failed job_id=%s error=%s", self.job_id, exc)
        else:
            await self._deliver(record, source="initial")
        if self.finished:
            return self

        self._poll_task = asyncio.create_task(self._poll_loop())
        if self._push_enabled:
            await self._open_push()
        return self

    async def wait(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self.done.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._state = ObserverState.DISPOSED
        self._stop_tasks()
        await self._close_push()
        self.done.set()
        log_stage(job_id=self.job_id, stage="OBSERVE", event="DISPOSED")

    async def _fetch(self) -> Optional[JobRecord]:
        self._last_fetch_at = asyncio.get_running_loop().time()
        return await self._store.get_job(self.job_id)

    async def _poll_loop(self) -> None:
        while not self.finished:
            await asyncio.sleep(self.poll_interval_sec)
            if self.finished:
                break
            now = asyncio.get_running_loop().time()
            if self._last_fetch_at is not None and now - self._last_fetch_at < self.min_fetch_gap_sec:
                incr("observer_poll_throttled_total")
                continue
            try:
                record = await self._fetch()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("observer_poll_read_failed job_id=%s error=%s", self.job_id, exc)
                continue
            await self._deliver(record, source="poll")

    async def _open_push(self) -> None:
        self._watchdog_task = asyncio.create_task(self._push_watchdog())
        try:
            self._subscription = await self._bus.subscribe(
                self.job_id, self._on_push_change, self._on_push_state
            )
        except Exception as exc:
            self._degrade(f"subscribe_failed: {exc}")
            return
        if self.finished:
            await self._close_push()

    async def _close_push(self) -> None:
        sub, self._subscription = self._subscription, None
        if sub is None or self._bus is None:
            return
        try:
            await self._bus.unsubscribe(sub)
        except Exception as exc:
            logger.info("observer_unsubscribe_failed job_id=%s error=%s", self.job_id, exc)

    async def _push_watchdog(self) -> None:
        await asyncio.sleep(self.push_connect_timeout_sec)
        if not self._push_connected and not self.finished:
            self._degrade("connect_timeout")

    async def _on_push_change(self, record: Optional[JobRecord]) -> None:
        await self._deliver(record, source="push")

    async def _on_push_state(self, state: str, exc: Optional[BaseException] = None) -> None:
        if state == CHANNEL_SUBSCRIBED:
            self._push_connected = True
            if self._watchdog_task is not None and self._watchdog_task is not asyncio.current_task():
                self._watchdog_task.cancel()
            log_stage(job_id=self.job_id, stage="PUSH", event="CONNECTED")
        elif state in (CHANNEL_ERROR, CHANNEL_CLOSED):
            self._push_connected = False
            self._degrade(f"{state.lower()}: {exc}" if exc else state.lower())

    def _degrade(self, reason: str) -> None:
        if self.finished or self._push_degraded:
            return
        self._push_degraded = True
        degraded = NotificationChannelDegraded(f"Push channel degraded ({reason}); polling continues", job_id=self.job_id)
        incr("observer_push_degraded_total")
        log_stage(
            job_id=self.job_id,
            stage="PUSH",
            event="DEGRADED",
            error_code=degraded.error_code,
            reason=degraded.error_message,
        )

    async def _deliver(self, record: Optional[JobRecord], *, source: str) -> None:
        if self.finished:
            return
        if record is None:
            await self._resolve(None, source=source)
            return

        last = self._last_seen
        if last is not None:
            if record.updated_at == last.updated_at and record.status == last.status:
                incr("observer_duplicate_total", source=source)
                return
            if record.updated_at < last.updated_at:
                incr("observer_stale_total", source=source)
                return

        if is_terminal(record.status):
            await self._resolve(record, source=source)
            return

        self._last_seen = record
        if last is not None:
            await self._safe_callback(self._on_status_change, record)

    async def _resolve(self, record: Optional[JobRecord], *, source: str) -> None:
        if self.finished:
            return
        # Guard first; everything below may await.
        self._resolved = True
        self._state = ObserverState.RESOLVED
        self.record = record
        self._stop_tasks()
        await self._close_push()

        outcome = classify_terminal(record.status, record.result) if record is not None else None
        incr("observer_resolved_total", source=source, outcome=outcome or "reclaimed")

        if record is None:
            self.error = ReclaimedJob("Analysis was deleted before it finished", job_id=self.job_id)
        elif outcome == OUTCOME_INVALID:
            self.error = InvalidResult("Analysis completed without a usable result", job_id=self.job_id)
        elif outcome == OUTCOME_FAILED:
            self.error = JobFailed(record.error or "Analysis failed", job_id=self.job_id)
        elif outcome == OUTCOME_COMPLETED and self._settle is not None:
            try:
                self.settlement = await self._settle(record)
            except Exception:
                logger.exception("observer_settlement_failed job_id=%s", self.job_id)

        log_stage(
            job_id=self.job_id,
            stage="OBSERVE",
            event="RESOLVED",
            source=source,
            outcome=outcome or "reclaimed",
            error_code=self.error.error_code if self.error else None,
            settlement=self.settlement.outcome.value if self.settlement else None,
        )

        if self._disposed:
            self.done.set()
            return
        if self.error is not None:
            await self._safe_callback(self._on_error, self.error)
        else:
            await self._safe_callback(self._on_complete, record, self.settlement)
        self.done.set()

    async def _safe_callback(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None or self._disposed:
            return
        try:
            await invoke_callback(callback, *args)
        except Exception:
            logger.exception("observer_callback_failed job_id=%s", self.job_id)

    def _stop_tasks(self) -> None:
        current = asyncio.current_task()
        for task in (self._poll_task, self._watchdog_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

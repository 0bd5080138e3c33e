"""Single-writer aggregator that folds burn events and refreshes into a metrics snapshot."""

import asyncio
import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal

from deepburn_watcher.core.time_utils import utc_now
from deepburn_watcher.core.types import BurnEvent, MetricsSnapshot, RefreshUpdate

BURN_RATE_WINDOW = timedelta(hours=24)
_QUEUE_POLL_TIMEOUT_S = 1.0

SnapshotListener = Callable[[MetricsSnapshot], None]
AggregatorInput = BurnEvent | RefreshUpdate

logger = logging.getLogger(__name__)


class MetricsAggregator:
    """Owns the MetricsSnapshot; every mutation happens under one lock.

    Producers on the event loop hand inputs to ``submit``; a single consumer
    task (``run``) applies them in arrival order. ``on_burn_event`` and
    ``on_refresh`` may also be called directly, from any thread.
    """

    def __init__(
        self,
        history_limit: int = 100,
        queue_size: int = 1000,
        window: timedelta = BURN_RATE_WINDOW,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._snapshot = MetricsSnapshot(history_limit=max(1, history_limit))
        self._window = window
        self._clock = clock
        self._lock = threading.Lock()
        self._queue: asyncio.Queue[AggregatorInput] = asyncio.Queue(maxsize=max(1, queue_size))
        self._listeners: list[SnapshotListener] = []

    @property
    def history_limit(self) -> int:
        return self._snapshot.history_limit

    def add_listener(self, listener: SnapshotListener) -> None:
        """Register a read-only consumer notified with a copy after each mutation."""

        self._listeners.append(listener)

    def snapshot(self) -> MetricsSnapshot:
        """Return an independent copy of the current metrics."""

        with self._lock:
            return self._snapshot.copy()

    def on_burn_event(self, event: BurnEvent) -> MetricsSnapshot:
        with self._lock:
            snapshot = self._snapshot
            snapshot.event_history.appendleft(event)
            snapshot.total_burned += event.amount
            snapshot.last_burn = event
            snapshot.burn_rate_window = self._window_sum(snapshot, self._clock())
            view = snapshot.copy()

        self._notify(view)
        return view

    def on_refresh(
        self,
        current_supply: Decimal,
        treasury_balance: Decimal,
        circulating_supply: Decimal,
    ) -> MetricsSnapshot:
        with self._lock:
            snapshot = self._snapshot
            snapshot.current_supply = current_supply
            snapshot.treasury_balance = treasury_balance
            snapshot.circulating_supply = circulating_supply
            snapshot.refreshed_at = self._clock()
            view = snapshot.copy()

        self._notify(view)
        return view

    def apply(self, item: AggregatorInput) -> MetricsSnapshot:
        if isinstance(item, BurnEvent):
            return self.on_burn_event(item)
        return self.on_refresh(
            current_supply=item.current_supply,
            treasury_balance=item.treasury_balance,
            circulating_supply=item.circulating_supply,
        )

    async def submit(self, item: AggregatorInput) -> None:
        """Queue an input for the consumer task, waiting while the queue is full."""

        await self._queue.put(item)

    def pending(self) -> int:
        return self._queue.qsize()

    def drain(self) -> int:
        """Apply everything currently queued; returns the number of inputs applied."""

        applied = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return applied
            if self._apply_queued(item):
                applied += 1

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Consume queued inputs until shutdown is requested."""

        while not shutdown_event.is_set():
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=_QUEUE_POLL_TIMEOUT_S)
            except asyncio.TimeoutError:
                continue
            self._apply_queued(item)

    def _apply_queued(self, item: AggregatorInput) -> bool:
        try:
            view = self.apply(item)
        except Exception:  # noqa: BLE001
            logger.exception("aggregator_apply_failed", extra={"input": repr(item)})
            return False
        finally:
            self._queue.task_done()

        if isinstance(item, BurnEvent):
            logger.info(
                "burn_detected",
                extra={
                    "transaction_id": item.transaction_id,
                    "amount": item.amount,
                    "source_topic": item.source_topic,
                    "inferred": item.inferred,
                    "total_burned": view.total_burned,
                    "burn_rate_24h": view.burn_rate_window,
                },
            )
        return True

    def _window_sum(self, snapshot: MetricsSnapshot, now: datetime) -> Decimal:
        total = Decimal(0)
        for event in snapshot.event_history:
            if now - event.observed_at < self._window:
                total += event.amount
        return total

    def _notify(self, view: MetricsSnapshot) -> None:
        for listener in self._listeners:
            try:
                listener(view)
            except Exception:  # noqa: BLE001
                logger.exception("metrics_listener_failed", extra={"listener": repr(listener)})

"""Per-topic ledger event subscriptions with health tracking and self-healing retries."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import replace

from deepburn_watcher.core.errors import SubscriptionUnavailable
from deepburn_watcher.core.types import BurnEvent, RawEvent, SubscriptionHandle, SubscriptionStatus
from deepburn_watcher.rpc.protocol import LedgerRpc, Subscription

_DEFAULT_INITIAL_BACKOFF_S = 1.0
_DEFAULT_MAX_BACKOFF_S = 30.0

Normalizer = Callable[[RawEvent, str], BurnEvent | None]
EventSink = Callable[[BurnEvent], Awaitable[None]]
FallbackSignal = Callable[[SubscriptionUnavailable], Awaitable[None]]

logger = logging.getLogger(__name__)


class SubscriptionManager:
    """Keeps one subscription per topic alive and forwards normalized burns to a sink.

    Topics connect and fail independently. A failed or dropped topic is retried
    forever with exponential backoff. When no topic is active after the first
    round of attempts, ``on_fallback`` is awaited once; it is never revoked.
    """

    def __init__(
        self,
        rpc: LedgerRpc,
        normalizer: Normalizer,
        sink: EventSink,
        on_fallback: FallbackSignal,
        initial_backoff_s: float = _DEFAULT_INITIAL_BACKOFF_S,
        max_backoff_s: float = _DEFAULT_MAX_BACKOFF_S,
    ) -> None:
        self._rpc = rpc
        self._normalizer = normalizer
        self._sink = sink
        self._on_fallback = on_fallback
        self._initial_backoff_s = max(0.0, initial_backoff_s)
        self._max_backoff_s = max(self._initial_backoff_s, max_backoff_s)
        self._handles: dict[str, SubscriptionHandle] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._retry_tasks: dict[str, asyncio.Task[None]] = {}
        self._started = False
        self._stopped = False
        self._fallback_signaled = False

    @property
    def fallback_signaled(self) -> bool:
        return self._fallback_signaled

    def handles(self) -> dict[str, SubscriptionHandle]:
        """Return copies of the per-topic health records."""

        return {topic: replace(handle) for topic, handle in self._handles.items()}

    def active_topics(self) -> tuple[str, ...]:
        return tuple(
            topic
            for topic, handle in self._handles.items()
            if handle.status is SubscriptionStatus.ACTIVE
        )

    async def start(self, topics: Iterable[str]) -> None:
        if self._started:
            raise RuntimeError("subscription manager already started")
        self._started = True

        ordered = list(dict.fromkeys(topics))
        for topic in ordered:
            self._handles[topic] = SubscriptionHandle(topic=topic)

        results = await asyncio.gather(*(self._open(topic) for topic in ordered))
        for topic, opened in zip(ordered, results):
            if not opened:
                self._schedule_retry(topic)

        logger.info(
            "subscriptions_started",
            extra={"topics": ordered, "active": list(self.active_topics())},
        )

        if not self.active_topics() and not self._stopped:
            await self._signal_fallback(ordered)

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True

        retry_tasks = list(self._retry_tasks.values())
        self._retry_tasks.clear()
        for task in retry_tasks:
            task.cancel()
        if retry_tasks:
            await asyncio.gather(*retry_tasks, return_exceptions=True)

        subscriptions = list(self._subscriptions.items())
        self._subscriptions.clear()
        for topic, subscription in subscriptions:
            try:
                await subscription.close()
            except Exception as exc:  # noqa: BLE001
                logger.warning("subscription_close_failed", extra={"topic": topic, "error": str(exc)})

        logger.info("subscriptions_stopped", extra={"closed": len(subscriptions)})

    async def _signal_fallback(self, topics: list[str]) -> None:
        if self._fallback_signaled:
            return
        self._fallback_signaled = True
        reason = SubscriptionUnavailable(f"no live subscription among {len(topics)} topics")
        logger.warning("subscriptions_unavailable", extra={"topics": topics, "error": str(reason)})
        await self._on_fallback(reason)

    async def _open(self, topic: str) -> bool:
        handle = self._handles[topic]
        handle.attempts += 1

        async def on_event(raw: RawEvent) -> None:
            await self._deliver(topic, raw)

        async def on_closed(error: BaseException | None) -> None:
            await self._handle_closed(topic, error)

        try:
            subscription = await self._rpc.subscribe(topic, on_event=on_event, on_closed=on_closed)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            handle.status = SubscriptionStatus.FAILED
            handle.last_error = str(exc)
            logger.warning(
                "subscription_failed",
                extra={"topic": topic, "attempt": handle.attempts, "error": str(exc)},
            )
            return False

        if self._stopped:
            await subscription.close()
            return False

        self._subscriptions[topic] = subscription
        handle.status = SubscriptionStatus.ACTIVE
        handle.last_error = None
        logger.info("subscription_active", extra={"topic": topic, "attempt": handle.attempts})
        return True

    async def _deliver(self, topic: str, raw: RawEvent) -> None:
        event = self._normalizer(raw, topic)
        if event is None:
            logger.debug("subscription_event_ignored", extra={"topic": topic, "event_type": raw.event_type})
            return
        await self._sink(event)

    async def _handle_closed(self, topic: str, error: BaseException | None) -> None:
        if self._stopped:
            return
        self._subscriptions.pop(topic, None)
        handle = self._handles[topic]
        handle.status = SubscriptionStatus.FAILED
        handle.last_error = str(error) if error is not None else "subscription closed by peer"
        logger.warning("subscription_dropped", extra={"topic": topic, "error": handle.last_error})
        self._schedule_retry(topic)

    def _schedule_retry(self, topic: str) -> None:
        if self._stopped:
            return
        existing = self._retry_tasks.get(topic)
        if existing is not None and not existing.done():
            return
        self._retry_tasks[topic] = asyncio.create_task(self._retry(topic), name=f"subscription-retry:{topic}")

    async def _retry(self, topic: str) -> None:
        handle = self._handles[topic]
        backoff_s = self._initial_backoff_s
        while not self._stopped:
            handle.status = SubscriptionStatus.RETRYING
            logger.info("subscription_retry_scheduled", extra={"topic": topic, "retry_in_s": backoff_s})
            await asyncio.sleep(backoff_s)
            if self._stopped:
                return
            if await self._open(topic):
                self._retry_tasks.pop(topic, None)
                return
            backoff_s = min(backoff_s * 2, self._max_backoff_s)

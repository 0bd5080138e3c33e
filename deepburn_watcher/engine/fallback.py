"""Degraded-mode burn detection from treasury balance drops."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from decimal import Decimal

from deepburn_watcher.core.time_utils import to_epoch_ms, utc_now
from deepburn_watcher.core.types import BALANCE_DIFF_TOPIC, BurnEvent

logger = logging.getLogger(__name__)


class FallbackPoller:
    """Samples the treasury balance and reports each decrease as an inferred burn.

    Inflows landing in the same interval as a burn hide it; only net
    decreases are reported.
    """

    def __init__(
        self,
        fetch_balance: Callable[[], Awaitable[Decimal]],
        sink: Callable[[BurnEvent], Awaitable[None]],
        interval_s: float,
        previous_balance: Decimal | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._fetch_balance = fetch_balance
        self._sink = sink
        self.interval_s = interval_s
        self.previous_balance = previous_balance
        self._clock = clock

    async def poll_once(self) -> BurnEvent | None:
        try:
            current = await self._fetch_balance()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "fallback_poll_failed",
                extra={"error": str(exc), "previous_balance": self.previous_balance},
            )
            return None

        previous = self.previous_balance
        self.previous_balance = current
        if previous is None:
            return None

        delta = previous - current
        if delta <= 0:
            return None

        observed_at = self._clock()
        event = BurnEvent(
            transaction_id=f"{BALANCE_DIFF_TOPIC}-{to_epoch_ms(observed_at)}",
            amount=delta,
            observed_at=observed_at,
            source_topic=BALANCE_DIFF_TOPIC,
        )
        logger.info(
            "fallback_burn_inferred",
            extra={"amount": delta, "previous_balance": previous, "current_balance": current},
        )
        await self._sink(event)
        return event

    async def run(self, shutdown_event: asyncio.Event) -> None:
        logger.info(
            "fallback_started",
            extra={"interval_s": self.interval_s, "previous_balance": self.previous_balance},
        )
        while not shutdown_event.is_set():
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass
            if shutdown_event.is_set():
                break
            await self.poll_once()
        logger.info("fallback_stopped")

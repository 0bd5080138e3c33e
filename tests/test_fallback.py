"""Fallback poller tests for balance-diff burn inference."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from deepburn_watcher.core.errors import TransientRpcError
from deepburn_watcher.core.types import BALANCE_DIFF_TOPIC, BurnEvent
from deepburn_watcher.engine.fallback import FallbackPoller

_NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class _Balances:
    def __init__(self, *values: Decimal | Exception) -> None:
        self._values = list(values)

    async def __call__(self) -> Decimal:
        value = self._values.pop(0)
        if isinstance(value, Exception):
            raise value
        return value


def _poller(balances: _Balances, sink: list[BurnEvent], previous: Decimal | None) -> FallbackPoller:
    async def collect(event: BurnEvent) -> None:
        sink.append(event)

    return FallbackPoller(
        fetch_balance=balances,
        sink=collect,
        interval_s=30.0,
        previous_balance=previous,
        clock=lambda: _NOW,
    )


@pytest.mark.asyncio
async def test_balance_decrease_emits_inferred_burn() -> None:
    """A drop from 1000 to 900 is reported as a 100 token burn."""

    emitted: list[BurnEvent] = []
    poller = _poller(_Balances(Decimal(900)), emitted, previous=Decimal(1000))

    event = await poller.poll_once()

    assert event is not None
    assert emitted == [event]
    assert event.amount == Decimal(100)
    assert event.source_topic == BALANCE_DIFF_TOPIC
    assert event.inferred
    assert event.transaction_id.startswith("balance-diff-")
    assert event.observed_at == _NOW
    assert poller.previous_balance == Decimal(900)


@pytest.mark.asyncio
@pytest.mark.parametrize("current", [Decimal(1000), Decimal(1100)])
async def test_flat_or_rising_balance_emits_nothing(current: Decimal) -> None:
    """No event is emitted when the balance is unchanged or increased."""

    emitted: list[BurnEvent] = []
    poller = _poller(_Balances(current), emitted, previous=Decimal(1000))

    assert await poller.poll_once() is None
    assert emitted == []
    assert poller.previous_balance == current


@pytest.mark.asyncio
async def test_first_sample_only_seeds_previous_balance() -> None:
    """Without a known previous balance the first poll only records the sample."""

    emitted: list[BurnEvent] = []
    poller = _poller(_Balances(Decimal(500), Decimal(450)), emitted, previous=None)

    assert await poller.poll_once() is None
    event = await poller.poll_once()

    assert event is not None
    assert event.amount == Decimal(50)


@pytest.mark.asyncio
async def test_failed_poll_keeps_previous_balance() -> None:
    """A fetch error is logged and the previous balance survives for the next cycle."""

    emitted: list[BurnEvent] = []
    poller = _poller(
        _Balances(TransientRpcError("timeout"), Decimal(990)),
        emitted,
        previous=Decimal(1000),
    )

    assert await poller.poll_once() is None
    assert poller.previous_balance == Decimal(1000)

    event = await poller.poll_once()
    assert event is not None
    assert event.amount == Decimal(10)

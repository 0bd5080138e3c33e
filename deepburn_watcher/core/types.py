"""Shared types passed between the watcher engine, its ledger client and its views."""

from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from deepburn_watcher.core.time_utils import to_epoch_ms

BALANCE_DIFF_TOPIC = "balance-diff"

_ZERO = Decimal(0)


@dataclass(frozen=True, slots=True)
class BurnEvent:
    """Canonical burn observation, amount already scaled to display units."""

    transaction_id: str
    amount: Decimal
    observed_at: datetime
    source_topic: str

    @property
    def inferred(self) -> bool:
        """True when the burn was derived from a treasury balance drop."""

        return self.source_topic == BALANCE_DIFF_TOPIC

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "amount": str(self.amount),
            "observed_at": self.observed_at.isoformat(),
            "observed_at_ms": to_epoch_ms(self.observed_at),
            "source_topic": self.source_topic,
            "inferred": self.inferred,
        }


@dataclass(frozen=True, slots=True)
class RawEvent:
    """Feed envelope as delivered by the ledger; payload stays opaque."""

    payload: Mapping[str, Any] | None
    event_type: str | None = None
    transaction_id: str | None = None
    timestamp_ms: Any = None


@dataclass(frozen=True, slots=True)
class RefreshUpdate:
    """Absolute quantities fetched by one refresh cycle."""

    current_supply: Decimal
    treasury_balance: Decimal
    circulating_supply: Decimal


@dataclass(frozen=True, slots=True)
class TokenMetadata:
    """Coin metadata relevant to supply tracking."""

    decimals: int
    supply_hint: int | None = None
    symbol: str | None = None


@dataclass(frozen=True, slots=True)
class CoinPage:
    """One page of raw coin balances; next_cursor is None on the last page."""

    balances: tuple[Any, ...]
    next_cursor: str | None = None


class SubscriptionStatus(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    FAILED = "failed"
    RETRYING = "retrying"


@dataclass(slots=True)
class SubscriptionHandle:
    """Health record for one monitored topic."""

    topic: str
    status: SubscriptionStatus = SubscriptionStatus.CONNECTING
    last_error: str | None = None
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "status": self.status.value,
            "last_error": self.last_error,
            "attempts": self.attempts,
        }


@dataclass(slots=True)
class MetricsSnapshot:
    """Mutable supply and burn metrics owned by the aggregator."""

    history_limit: int
    current_supply: Decimal = _ZERO
    circulating_supply: Decimal = _ZERO
    treasury_balance: Decimal = _ZERO
    total_burned: Decimal = _ZERO
    burn_rate_window: Decimal = _ZERO
    event_history: deque[BurnEvent] = field(default_factory=deque)
    last_burn: BurnEvent | None = None
    refreshed_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.event_history.maxlen != self.history_limit:
            self.event_history = deque(self.event_history, maxlen=self.history_limit)

    @property
    def burn_percentage(self) -> Decimal:
        """Share of the estimated original supply burned this session."""

        if self.current_supply <= 0:
            return _ZERO
        return self.total_burned / (self.current_supply + self.total_burned) * 100

    def copy(self) -> "MetricsSnapshot":
        return MetricsSnapshot(
            history_limit=self.history_limit,
            current_supply=self.current_supply,
            circulating_supply=self.circulating_supply,
            treasury_balance=self.treasury_balance,
            total_burned=self.total_burned,
            burn_rate_window=self.burn_rate_window,
            event_history=deque(self.event_history, maxlen=self.history_limit),
            last_burn=self.last_burn,
            refreshed_at=self.refreshed_at,
        )

    def to_dict(self, history: int | None = None) -> dict[str, Any]:
        events = list(self.event_history)
        if history is not None:
            events = events[: max(0, history)]
        return {
            "current_supply": str(self.current_supply),
            "circulating_supply": str(self.circulating_supply),
            "treasury_balance": str(self.treasury_balance),
            "total_burned": str(self.total_burned),
            "burn_rate_24h": str(self.burn_rate_window),
            "burn_percentage": str(round(self.burn_percentage, 2)),
            "last_burn": self.last_burn.to_dict() if self.last_burn is not None else None,
            "event_count": len(self.event_history),
            "events": [event.to_dict() for event in events],
            "refreshed_at": self.refreshed_at.isoformat() if self.refreshed_at is not None else None,
        }

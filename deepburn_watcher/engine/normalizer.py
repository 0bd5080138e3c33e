"""Turns raw ledger burn events into canonical BurnEvent records."""

from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal
from typing import Any

from deepburn_watcher.core.errors import MalformedPayload
from deepburn_watcher.core.time_utils import from_epoch_ms, utc_now
from deepburn_watcher.core.types import BurnEvent, RawEvent

# Checked in order; the first field present decides the amount.
AMOUNT_FIELDS = ("amount", "value", "burned_amount")

_ZERO = Decimal(0)


def scale_raw_amount(value: Any, decimals: int) -> Decimal:
    """Convert a raw integer token quantity into display units."""

    if isinstance(value, bool) or value is None:
        raise MalformedPayload(f"unsupported amount {value!r}")
    if isinstance(value, Mapping) and "value" in value:
        value = value["value"]
    try:
        raw = Decimal(str(value).strip())
        if not raw.is_finite():
            raise MalformedPayload(f"non-finite amount {value!r}")
        return raw.scaleb(-decimals)
    except (ArithmeticError, ValueError) as exc:
        # InvalidOperation for garbage, Overflow for out-of-range exponents.
        raise MalformedPayload(f"unparseable amount {value!r}") from exc


def _extract_amount(payload: Mapping[str, Any], decimals: int) -> Decimal:
    for name in AMOUNT_FIELDS:
        value = payload.get(name)
        if value is None:
            continue
        try:
            amount = scale_raw_amount(value, decimals)
        except MalformedPayload:
            return _ZERO
        return amount if amount > 0 else _ZERO
    return _ZERO


def _observed_at(timestamp_ms: Any) -> datetime:
    if timestamp_ms is None or isinstance(timestamp_ms, bool):
        return utc_now()
    try:
        return from_epoch_ms(int(timestamp_ms))
    except (TypeError, ValueError, OverflowError, OSError):
        return utc_now()


def normalize_burn_event(raw: RawEvent, source_topic: str, decimals: int) -> BurnEvent | None:
    """Build a BurnEvent from a raw feed event, or None when it is not a burn.

    Missing or malformed amounts yield a zero-amount event instead of a
    rejection. Only an envelope that declares a different event type than the
    topic it arrived on is refused.
    """

    if raw.event_type and raw.event_type != source_topic:
        return None

    payload = raw.payload if isinstance(raw.payload, Mapping) else {}
    return BurnEvent(
        transaction_id=str(raw.transaction_id or ""),
        amount=_extract_amount(payload, decimals),
        observed_at=_observed_at(raw.timestamp_ms),
        source_topic=source_topic,
    )


class EventNormalizer:
    """Normalizer bound to the token's fixed decimals."""

    def __init__(self, decimals: int) -> None:
        self.decimals = decimals

    def __call__(self, raw: RawEvent, source_topic: str) -> BurnEvent | None:
        return normalize_burn_event(raw, source_topic, self.decimals)

"""Periodic re-fetch of absolute supply, treasury and circulating quantities."""

import asyncio
import logging
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from deepburn_watcher.core.config import MIN_REFRESH_INTERVAL_S
from deepburn_watcher.core.errors import InvalidShapeError, MalformedPayload
from deepburn_watcher.core.types import RefreshUpdate
from deepburn_watcher.engine.aggregator import MetricsAggregator
from deepburn_watcher.engine.normalizer import scale_raw_amount
from deepburn_watcher.rpc.protocol import LedgerRpc

# Checked in order on the treasury object; the first field present wins.
TREASURY_BALANCE_FIELDS = ("deep_supply", "balance", "total_supply")

logger = logging.getLogger(__name__)


class LedgerStateReader:
    """Reads the token's absolute quantities through the ledger collaborator."""

    def __init__(
        self,
        rpc: LedgerRpc,
        token_type: str,
        treasury_id: str,
        decimals: int,
        initial_supply: int,
    ) -> None:
        self._rpc = rpc
        self.token_type = token_type
        self.treasury_id = treasury_id
        self.decimals = decimals
        self.initial_supply = Decimal(initial_supply)

    async def fetch_total_supply(self, total_burned: Decimal = Decimal(0)) -> Decimal:
        """Ledger supply when exposed, otherwise the initial supply minus burns seen so far."""

        metadata = await self._rpc.fetch_token_metadata(self.token_type)
        if metadata.supply_hint is not None:
            return Decimal(metadata.supply_hint).scaleb(-self.decimals)
        return max(Decimal(0), self.initial_supply - total_burned)

    async def fetch_treasury_balance(self) -> Decimal:
        fields = await self._rpc.fetch_object_fields(self.treasury_id)
        return self._treasury_balance(fields)

    def _treasury_balance(self, fields: Mapping[str, Any]) -> Decimal:
        for name in TREASURY_BALANCE_FIELDS:
            value = fields.get(name)
            if value is None:
                continue
            try:
                return scale_raw_amount(value, self.decimals)
            except MalformedPayload as exc:
                raise InvalidShapeError(f"treasury field {name} is not a quantity: {exc}") from exc
        raise InvalidShapeError(f"treasury {self.treasury_id} exposes none of {TREASURY_BALANCE_FIELDS}")

    async def fetch_circulating_supply(self) -> Decimal:
        """Sum every coin balance, following pagination to the last page."""

        total = Decimal(0)
        cursor: str | None = None
        pages = 0
        while True:
            page = await self._rpc.fetch_all_coin_balances(self.token_type, cursor)
            pages += 1
            for balance in page.balances:
                try:
                    total += scale_raw_amount(balance, self.decimals)
                except MalformedPayload as exc:
                    raise InvalidShapeError(f"coin balance is not a quantity: {exc}") from exc
            if page.next_cursor is None or page.next_cursor == cursor:
                break
            cursor = page.next_cursor

        logger.debug("circulating_supply_summed", extra={"pages": pages, "total": total})
        return total


class RefreshScheduler:
    """Pushes fresh absolute quantities to the aggregator on a fixed cadence."""

    def __init__(
        self,
        reader: LedgerStateReader,
        aggregator: MetricsAggregator,
        interval_s: float,
    ) -> None:
        self._reader = reader
        self._aggregator = aggregator
        self.interval_s = max(MIN_REFRESH_INTERVAL_S, interval_s)

    async def refresh_once(self) -> RefreshUpdate:
        """Fetch all three quantities; a failed one keeps its previous value."""

        previous = self._aggregator.snapshot()
        supply, treasury, circulating = await asyncio.gather(
            self._reader.fetch_total_supply(previous.total_burned),
            self._reader.fetch_treasury_balance(),
            self._reader.fetch_circulating_supply(),
            return_exceptions=True,
        )
        return RefreshUpdate(
            current_supply=self._keep_previous("current_supply", supply, previous.current_supply),
            treasury_balance=self._keep_previous("treasury_balance", treasury, previous.treasury_balance),
            circulating_supply=self._keep_previous(
                "circulating_supply", circulating, previous.circulating_supply
            ),
        )

    @staticmethod
    def _keep_previous(name: str, result: Decimal | BaseException, previous: Decimal) -> Decimal:
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            logger.warning(
                "refresh_field_failed",
                extra={"field": name, "error": str(result), "kept_value": previous},
            )
            return previous
        return result

    async def tick(self) -> None:
        update = await self.refresh_once()
        await self._aggregator.submit(update)

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Refresh every interval until shutdown is requested."""

        while not shutdown_event.is_set():
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass
            if shutdown_event.is_set():
                break

            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                logger.exception("refresh_failed")

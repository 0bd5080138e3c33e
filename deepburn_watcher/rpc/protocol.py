"""Narrow ledger capabilities consumed by the watcher engine."""

from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol

from deepburn_watcher.core.types import CoinPage, RawEvent, TokenMetadata

EventCallback = Callable[[RawEvent], Awaitable[None]]
ClosedCallback = Callable[[BaseException | None], Awaitable[None]]


class Subscription(Protocol):
    """Open event feed; closing it more than once is harmless."""

    async def close(self) -> None: ...


class LedgerRpc(Protocol):
    async def fetch_token_metadata(self, token_type: str) -> TokenMetadata: ...

    async def fetch_object_fields(self, object_id: str) -> Mapping[str, Any]: ...

    async def fetch_all_coin_balances(self, coin_type: str, cursor: str | None = None) -> CoinPage: ...

    async def subscribe(
        self,
        topic: str,
        on_event: EventCallback,
        on_closed: ClosedCallback,
    ) -> Subscription: ...

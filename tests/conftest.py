"""Shared fakes standing in for the Sui ledger collaborator."""

from collections.abc import Mapping
from typing import Any

import pytest

from deepburn_watcher.core.config import Settings
from deepburn_watcher.core.errors import RpcError, SubscriptionError
from deepburn_watcher.core.types import CoinPage, RawEvent, TokenMetadata
from deepburn_watcher.rpc.protocol import ClosedCallback, EventCallback


class FakeSubscription:
    """In-memory subscription whose events are pushed by the test."""

    def __init__(self, topic: str, on_event: EventCallback, on_closed: ClosedCallback) -> None:
        self.topic = topic
        self.on_event = on_event
        self.on_closed = on_closed
        self.close_calls = 0

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    async def emit(self, raw: RawEvent) -> None:
        await self.on_event(raw)

    async def drop(self, error: BaseException | None = None) -> None:
        await self.on_closed(error)

    async def close(self) -> None:
        self.close_calls += 1


class FakeLedger:
    """Scriptable LedgerRpc implementation."""

    def __init__(self) -> None:
        self.metadata = TokenMetadata(decimals=6)
        self.metadata_error: RpcError | None = None
        self.object_fields: Mapping[str, Any] = {"deep_supply": "500000000000000"}
        self.object_error: RpcError | None = None
        self.coin_pages: dict[str | None, CoinPage] = {None: CoinPage(balances=("2000000",))}
        self.coin_error: RpcError | None = None
        self.failing_topics: set[str] = set()
        self.failures_before_success: dict[str, int] = {}
        self.subscriptions: dict[str, FakeSubscription] = {}
        self.subscribe_calls: list[str] = []
        self.object_calls = 0

    async def fetch_token_metadata(self, token_type: str) -> TokenMetadata:
        if self.metadata_error is not None:
            raise self.metadata_error
        return self.metadata

    async def fetch_object_fields(self, object_id: str) -> Mapping[str, Any]:
        self.object_calls += 1
        if self.object_error is not None:
            raise self.object_error
        return self.object_fields

    async def fetch_all_coin_balances(self, coin_type: str, cursor: str | None = None) -> CoinPage:
        if self.coin_error is not None:
            raise self.coin_error
        return self.coin_pages[cursor]

    async def subscribe(
        self,
        topic: str,
        on_event: EventCallback,
        on_closed: ClosedCallback,
    ) -> FakeSubscription:
        self.subscribe_calls.append(topic)
        if topic in self.failing_topics:
            raise SubscriptionError(f"{topic} unavailable")
        remaining = self.failures_before_success.get(topic, 0)
        if remaining > 0:
            self.failures_before_success[topic] = remaining - 1
            raise SubscriptionError(f"{topic} not ready")

        subscription = FakeSubscription(topic, on_event, on_closed)
        self.subscriptions[topic] = subscription
        return subscription


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        BURN_EVENT_TOPICS="0xpkg::treasury::BurnEvent,0xdeep::deep::BurnEvent",
        SUBSCRIBE_INITIAL_BACKOFF_S=0.01,
        SUBSCRIBE_MAX_BACKOFF_S=0.01,
        INITIAL_SUPPLY=1_000_000_000,
    )

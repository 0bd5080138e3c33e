"""Sui client tests against a mocked HTTP transport and a fake websocket."""

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from deepburn_watcher.core.errors import (
    InvalidShapeError,
    NotFoundError,
    RpcError,
    TransientRpcError,
)
from deepburn_watcher.core.types import RawEvent
from deepburn_watcher.rpc.client import SuiEventSubscription, SuiRpcClient

Handler = Callable[[str, list[Any]], httpx.Response]


def _result(result: Any) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result})


def _client(handler: Handler, max_retries: int = 3) -> tuple[SuiRpcClient, list[str]]:
    calls: list[str] = []

    def dispatch(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        calls.append(body["method"])
        return handler(body["method"], body["params"])

    client = SuiRpcClient(
        rpc_url="https://rpc.test",
        ws_url="wss://rpc.test",
        max_retries=max_retries,
        retry_backoff_s=0.0,
        transport=httpx.MockTransport(dispatch),
    )
    return client, calls


@pytest.mark.asyncio
async def test_unregistered_token_raises_not_found() -> None:
    """Null coin metadata means the token is not registered."""

    client, _ = _client(lambda method, params: _result(None))

    with pytest.raises(NotFoundError):
        await client.fetch_token_metadata("0xdeep::deep::DEEP")
    await client.aclose()


@pytest.mark.asyncio
async def test_metadata_includes_total_supply_hint() -> None:
    """Decimals come from coin metadata and the supply hint from getTotalSupply."""

    def handler(method: str, params: list[Any]) -> httpx.Response:
        if method == "suix_getCoinMetadata":
            return _result({"decimals": 6, "symbol": "DEEP"})
        return _result({"value": "10000000000000000"})

    client, calls = _client(handler)

    metadata = await client.fetch_token_metadata("0xdeep::deep::DEEP")

    assert metadata.decimals == 6
    assert metadata.symbol == "DEEP"
    assert metadata.supply_hint == 10_000_000_000_000_000
    assert calls == ["suix_getCoinMetadata", "suix_getTotalSupply"]
    await client.aclose()


@pytest.mark.asyncio
async def test_missing_total_supply_leaves_hint_empty() -> None:
    """A failing getTotalSupply does not fail the metadata fetch."""

    def handler(method: str, params: list[Any]) -> httpx.Response:
        if method == "suix_getCoinMetadata":
            return _result({"decimals": 6})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32601}})

    client, _ = _client(handler)

    metadata = await client.fetch_token_metadata("0xdeep::deep::DEEP")

    assert metadata.supply_hint is None
    await client.aclose()


@pytest.mark.asyncio
async def test_object_fields_are_returned_for_move_objects() -> None:
    """sui_getObject content fields are exposed as a mapping."""

    client, _ = _client(
        lambda method, params: _result(
            {"data": {"content": {"dataType": "moveObject", "fields": {"deep_supply": "5"}}}}
        )
    )

    assert await client.fetch_object_fields("0xtreasury") == {"deep_supply": "5"}
    await client.aclose()


@pytest.mark.asyncio
async def test_missing_object_raises_not_found() -> None:
    """A notExists object error maps to NotFoundError."""

    client, _ = _client(lambda method, params: _result({"error": {"code": "notExists"}}))

    with pytest.raises(NotFoundError):
        await client.fetch_object_fields("0xtreasury")
    await client.aclose()


@pytest.mark.asyncio
async def test_package_object_is_invalid_shape() -> None:
    """Content that is not a Move object is rejected."""

    client, _ = _client(lambda method, params: _result({"data": {"content": {"dataType": "package"}}}))

    with pytest.raises(InvalidShapeError):
        await client.fetch_object_fields("0xtreasury")
    await client.aclose()


@pytest.mark.asyncio
async def test_coin_pages_expose_next_cursor() -> None:
    """nextCursor is only reported while hasNextPage is true."""

    def handler(method: str, params: list[Any]) -> httpx.Response:
        cursor = params[1]
        if cursor is None:
            return _result({"data": [{"balance": "10"}], "nextCursor": "c1", "hasNextPage": True})
        return _result({"data": [{"balance": "20"}], "nextCursor": "c2", "hasNextPage": False})

    client, _ = _client(handler)

    first = await client.fetch_all_coin_balances("0xdeep::deep::DEEP")
    last = await client.fetch_all_coin_balances("0xdeep::deep::DEEP", first.next_cursor)

    assert first.balances == ("10",)
    assert first.next_cursor == "c1"
    assert last.balances == ("20",)
    assert last.next_cursor is None
    await client.aclose()


@pytest.mark.asyncio
async def test_rejected_coin_listing_is_reported_once(caplog: pytest.LogCaptureFixture) -> None:
    """A node that refuses a coin-type listing is warned about once, then only raises."""

    def handler(method: str, params: list[Any]) -> httpx.Response:
        error = {"code": -32602, "message": "Invalid params: expected SuiAddress"}
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": error})

    client, calls = _client(handler)

    with caplog.at_level("WARNING", logger="deepburn_watcher.rpc.client"):
        for _ in range(2):
            with pytest.raises(RpcError):
                await client.fetch_all_coin_balances("0xdeep::deep::DEEP")

    assert calls == ["suix_getAllCoins", "suix_getAllCoins"]
    assert [record.message for record in caplog.records] == ["coin_listing_unsupported"]
    await client.aclose()


@pytest.mark.asyncio
async def test_server_errors_are_retried() -> None:
    """HTTP 503 and 429 are retried before a successful answer."""

    responses = [httpx.Response(503, text="busy"), httpx.Response(429, text="slow down"), _result(None)]
    client, calls = _client(lambda method, params: responses.pop(0))

    with pytest.raises(NotFoundError):
        await client.fetch_token_metadata("0xdeep::deep::DEEP")
    assert len(calls) == 3
    await client.aclose()


@pytest.mark.asyncio
async def test_exhausted_retries_raise_transient_error() -> None:
    """Persistent 5xx answers end in TransientRpcError."""

    client, calls = _client(lambda method, params: httpx.Response(500, text="down"), max_retries=2)

    with pytest.raises(TransientRpcError):
        await client.call("sui_getObject", ["0x1", {}])
    assert len(calls) == 2
    await client.aclose()


@pytest.mark.asyncio
async def test_client_errors_are_not_retried() -> None:
    """A 4xx other than 429 fails immediately."""

    client, calls = _client(lambda method, params: httpx.Response(400, text="bad request"))

    with pytest.raises(RpcError):
        await client.call("sui_getObject", ["0x1", {}])
    assert len(calls) == 1
    await client.aclose()


class _FakeWebSocket:
    def __init__(self, messages: list[str]) -> None:
        self._messages = list(messages)
        self.sent: list[str] = []
        self.closed = False

    def __aiter__(self) -> "_FakeWebSocket":
        return self

    async def __anext__(self) -> str:
        if not self._messages:
            raise StopAsyncIteration
        return self._messages.pop(0)

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def close(self) -> None:
        self.closed = True


def _notification(event: dict[str, Any]) -> str:
    return json.dumps(
        {"jsonrpc": "2.0", "method": "suix_subscribeEvent", "params": {"subscription": 7, "result": event}}
    )


@pytest.mark.asyncio
async def test_subscription_delivers_events_then_reports_close() -> None:
    """Notifications become RawEvents; the socket ending is reported as a drop."""

    received: list[RawEvent] = []
    closed: list[BaseException | None] = []

    async def on_event(raw: RawEvent) -> None:
        received.append(raw)

    async def on_closed(error: BaseException | None) -> None:
        closed.append(error)

    ws = _FakeWebSocket(
        [
            "not json",
            _notification(
                {
                    "id": {"txDigest": "0xdigest", "eventSeq": "0"},
                    "type": "0xpkg::treasury::BurnEvent",
                    "parsedJson": {"amount": "1000000"},
                    "timestampMs": "1700000000000",
                }
            ),
        ]
    )
    subscription = SuiEventSubscription(ws, "0xpkg::treasury::BurnEvent", 7, on_event, on_closed)

    await subscription._read_loop()

    assert received == [
        RawEvent(
            payload={"amount": "1000000"},
            event_type="0xpkg::treasury::BurnEvent",
            transaction_id="0xdigest",
            timestamp_ms="1700000000000",
        )
    ]
    assert closed == [None]


@pytest.mark.asyncio
async def test_closed_subscription_does_not_report_drop() -> None:
    """Closing a subscription unsubscribes once and suppresses on_closed."""

    closed: list[BaseException | None] = []

    async def on_event(raw: RawEvent) -> None:
        return None

    async def on_closed(error: BaseException | None) -> None:
        closed.append(error)

    ws = _FakeWebSocket([])
    subscription = SuiEventSubscription(ws, "0xpkg::treasury::BurnEvent", 7, on_event, on_closed)

    await subscription.close()
    await subscription.close()
    await subscription._read_loop()

    assert ws.closed
    assert len(ws.sent) == 1
    assert json.loads(ws.sent[0])["method"] == "suix_unsubscribeEvent"
    assert closed == []

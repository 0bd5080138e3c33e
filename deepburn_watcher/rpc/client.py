"""Sui fullnode client: JSON-RPC over HTTP and event subscriptions over websockets."""

import asyncio
import inspect
import itertools
import json
import logging
from collections.abc import Mapping
from typing import Any

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from deepburn_watcher.core.errors import (
    InvalidShapeError,
    NotFoundError,
    RpcError,
    SubscriptionError,
    TransientRpcError,
)
from deepburn_watcher.core.types import CoinPage, RawEvent, TokenMetadata
from deepburn_watcher.rpc.protocol import ClosedCallback, EventCallback

_RETRY_INITIAL_BACKOFF_S = 0.5
_RETRY_MAX_BACKOFF_S = 8.0
_COIN_PAGE_LIMIT = 50
_WS_PING_INTERVAL_S = 30
_SUBSCRIBE_METHOD = "suix_subscribeEvent"
_UNSUBSCRIBE_METHOD = "suix_unsubscribeEvent"

logger = logging.getLogger(__name__)


def _websocket_connect_kwargs() -> dict[str, Any]:
    kwargs: dict[str, Any] = {"ping_interval": _WS_PING_INTERVAL_S}
    if "proxy" in inspect.signature(websockets.connect).parameters:
        kwargs["proxy"] = None
    return kwargs


def _raw_event_from_notification(message: Mapping[str, Any]) -> RawEvent | None:
    if message.get("method") != _SUBSCRIBE_METHOD:
        return None
    params = message.get("params")
    if not isinstance(params, Mapping):
        return None
    event = params.get("result")
    if not isinstance(event, Mapping):
        return None

    event_id = event.get("id")
    tx_digest = event_id.get("txDigest") if isinstance(event_id, Mapping) else None
    parsed = event.get("parsedJson")
    return RawEvent(
        payload=parsed if isinstance(parsed, Mapping) else None,
        event_type=event.get("type"),
        transaction_id=tx_digest,
        timestamp_ms=event.get("timestampMs"),
    )


class SuiEventSubscription:
    """One websocket carrying one Move event type subscription."""

    def __init__(
        self,
        ws: Any,
        topic: str,
        subscription_id: Any,
        on_event: EventCallback,
        on_closed: ClosedCallback,
    ) -> None:
        self.topic = topic
        self.subscription_id = subscription_id
        self._ws = ws
        self._on_event = on_event
        self._on_closed = on_closed
        self._closing = False
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._read_loop(), name=f"subscription:{self.topic}")

    async def _read_loop(self) -> None:
        error: BaseException | None = None
        try:
            async for message in self._ws:
                await self._handle_message(message)
        except ConnectionClosed as exc:
            error = exc
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            error = exc

        if not self._closing:
            await self._on_closed(error)

    async def _handle_message(self, message: str | bytes) -> None:
        try:
            decoded = json.loads(message)
        except json.JSONDecodeError:
            logger.warning("subscription_invalid_json_message", extra={"topic": self.topic})
            return
        if not isinstance(decoded, Mapping):
            return

        raw = _raw_event_from_notification(decoded)
        if raw is None:
            return

        try:
            await self._on_event(raw)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception(
                "subscription_callback_failed",
                extra={"topic": self.topic, "transaction_id": raw.transaction_id},
            )

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True

        try:
            await self._ws.send(
                json.dumps(
                    {
                        "jsonrpc": "2.0",
                        "id": 2,
                        "method": _UNSUBSCRIBE_METHOD,
                        "params": [self.subscription_id],
                    },
                    separators=(",", ":"),
                )
            )
        except (ConnectionClosed, OSError):
            pass
        await self._ws.close()

        task = self._task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


class SuiRpcClient:
    """Ledger collaborator backed by a Sui fullnode."""

    def __init__(
        self,
        rpc_url: str,
        ws_url: str,
        timeout_s: float = 10.0,
        max_retries: int = 3,
        retry_backoff_s: float = _RETRY_INITIAL_BACKOFF_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.ws_url = ws_url
        self._timeout_s = timeout_s
        self._max_retries = max(1, max_retries)
        self._retry_backoff_s = retry_backoff_s
        self._ids = itertools.count(1)
        self._coin_listing_warned = False
        self._http = httpx.AsyncClient(
            timeout=timeout_s,
            headers={"Content-Type": "application/json", "User-Agent": "deepburn-watcher"},
            transport=transport,
        )

    async def __aenter__(self) -> "SuiRpcClient":
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def call(self, method: str, params: list[Any]) -> Any:
        """JSON-RPC POST retried on transport errors, HTTP 429 and 5xx."""

        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        backoff_s = self._retry_backoff_s
        last_error: Exception | None = None

        for attempt in range(1, self._max_retries + 1):
            try:
                response = await self._http.post(self.rpc_url, json=payload)
            except httpx.TransportError as exc:
                last_error = exc
            else:
                status = response.status_code
                if status == 429 or status >= 500:
                    last_error = TransientRpcError(f"{method} HTTP {status}: {response.text[:200]}")
                elif status != 200:
                    raise RpcError(f"{method} HTTP {status}: {response.text[:200]}")
                else:
                    return self._unwrap(method, response)

            if attempt < self._max_retries:
                logger.warning(
                    "rpc_retry",
                    extra={
                        "method": method,
                        "attempt": attempt,
                        "max_retries": self._max_retries,
                        "error": str(last_error),
                        "retry_in_s": backoff_s,
                    },
                )
                await asyncio.sleep(backoff_s)
                backoff_s = min(backoff_s * 2, _RETRY_MAX_BACKOFF_S)

        raise TransientRpcError(f"{method} failed after {self._max_retries} attempts: {last_error}") from last_error

    @staticmethod
    def _unwrap(method: str, response: httpx.Response) -> Any:
        try:
            body = response.json()
        except ValueError as exc:
            raise InvalidShapeError(f"{method} returned invalid JSON") from exc
        if not isinstance(body, Mapping):
            raise InvalidShapeError(f"{method} returned {type(body).__name__}, expected an object")
        if body.get("error") is not None:
            raise RpcError(f"{method} error: {body['error']}")
        return body.get("result")

    async def fetch_token_metadata(self, token_type: str) -> TokenMetadata:
        result = await self.call("suix_getCoinMetadata", [token_type])
        if result is None:
            raise NotFoundError(f"coin metadata not found for {token_type}")
        if not isinstance(result, Mapping):
            raise InvalidShapeError("coin metadata is not an object")
        try:
            decimals = int(result["decimals"])
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidShapeError("coin metadata has no usable decimals") from exc

        return TokenMetadata(
            decimals=decimals,
            supply_hint=await self._fetch_total_supply(token_type),
            symbol=result.get("symbol"),
        )

    async def _fetch_total_supply(self, token_type: str) -> int | None:
        try:
            result = await self.call("suix_getTotalSupply", [token_type])
        except RpcError as exc:
            logger.info("rpc_total_supply_unavailable", extra={"coin_type": token_type, "error": str(exc)})
            return None
        if not isinstance(result, Mapping):
            return None
        try:
            return int(result["value"])
        except (KeyError, TypeError, ValueError):
            return None

    async def fetch_object_fields(self, object_id: str) -> Mapping[str, Any]:
        result = await self.call("sui_getObject", [object_id, {"showContent": True}])
        if not isinstance(result, Mapping):
            raise InvalidShapeError(f"object {object_id} response is not an object")

        error = result.get("error")
        if isinstance(error, Mapping):
            if error.get("code") in ("notExists", "deleted"):
                raise NotFoundError(f"object {object_id} does not exist")
            raise InvalidShapeError(f"object {object_id} error: {error}")

        data = result.get("data")
        content = data.get("content") if isinstance(data, Mapping) else None
        if not isinstance(content, Mapping) or content.get("dataType") != "moveObject":
            raise InvalidShapeError(f"object {object_id} is not a Move object")

        fields = content.get("fields")
        if not isinstance(fields, Mapping):
            raise InvalidShapeError(f"object {object_id} has no fields")
        return fields

    async def fetch_all_coin_balances(self, coin_type: str, cursor: str | None = None) -> CoinPage:
        """One page of coin balances for the token type.

        Stock fullnodes key suix_getAllCoins by owner address and reject a coin
        type there. Only indexers that accept a type can serve this; elsewhere
        the call fails and circulating supply keeps its previous value.
        """

        try:
            result = await self.call("suix_getAllCoins", [coin_type, cursor, _COIN_PAGE_LIMIT])
        except TransientRpcError:
            raise
        except RpcError as exc:
            if not self._coin_listing_warned:
                self._coin_listing_warned = True
                logger.warning(
                    "coin_listing_unsupported",
                    extra={"rpc_url": self.rpc_url, "coin_type": coin_type, "error": str(exc)},
                )
            raise
        if not isinstance(result, Mapping) or not isinstance(result.get("data"), list):
            raise InvalidShapeError(f"coin listing for {coin_type} is malformed")

        balances = tuple(
            entry.get("balance") for entry in result["data"] if isinstance(entry, Mapping)
        )
        next_cursor = result.get("nextCursor") if result.get("hasNextPage") else None
        return CoinPage(balances=balances, next_cursor=next_cursor)

    async def subscribe(
        self,
        topic: str,
        on_event: EventCallback,
        on_closed: ClosedCallback,
    ) -> SuiEventSubscription:
        try:
            ws = await websockets.connect(self.ws_url, **_websocket_connect_kwargs())
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise SubscriptionError(f"cannot connect to {self.ws_url}: {exc}") from exc

        request = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": _SUBSCRIBE_METHOD,
            "params": [{"MoveEventType": topic}],
        }
        try:
            await ws.send(json.dumps(request, separators=(",", ":")))
            response = json.loads(await asyncio.wait_for(ws.recv(), timeout=self._timeout_s))
        except (OSError, asyncio.TimeoutError, WebSocketException, ValueError) as exc:
            await ws.close()
            raise SubscriptionError(f"subscribe to {topic} failed: {exc}") from exc

        if not isinstance(response, Mapping) or response.get("error") is not None or "result" not in response:
            await ws.close()
            detail = response.get("error") if isinstance(response, Mapping) else response
            raise SubscriptionError(f"subscribe to {topic} rejected: {detail}")

        subscription = SuiEventSubscription(
            ws=ws,
            topic=topic,
            subscription_id=response["result"],
            on_event=on_event,
            on_closed=on_closed,
        )
        subscription.start()
        return subscription

"""Wires the subscription, fallback, refresh and aggregation components together."""

import asyncio
import contextlib
import logging
from collections.abc import Coroutine, Iterator
from typing import Any

import uvicorn

from deepburn_watcher.core.config import Settings
from deepburn_watcher.core.errors import RpcError, StartupError, SubscriptionUnavailable
from deepburn_watcher.core.types import MetricsSnapshot
from deepburn_watcher.engine.aggregator import MetricsAggregator
from deepburn_watcher.engine.fallback import FallbackPoller
from deepburn_watcher.engine.normalizer import EventNormalizer
from deepburn_watcher.engine.refresh import LedgerStateReader, RefreshScheduler
from deepburn_watcher.engine.subscriptions import SubscriptionManager
from deepburn_watcher.rpc.protocol import LedgerRpc
from deepburn_watcher.services.api.main import create_app

_STOP_TIMEOUT_S = 5.0

logger = logging.getLogger(__name__)


class _EmbeddedServer(uvicorn.Server):
    """Uvicorn server that leaves signal handling to the watcher process."""

    def install_signal_handlers(self) -> None:
        return

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def _log_snapshot(view: MetricsSnapshot) -> None:
    logger.debug("metrics_updated", extra={"metrics": view.to_dict(history=0)})


class BurnWatcher:
    """Owns the monitoring pipeline for one token and treasury pair."""

    def __init__(self, settings: Settings, rpc: LedgerRpc) -> None:
        self.settings = settings
        self._rpc = rpc
        self.aggregator = MetricsAggregator(
            history_limit=settings.history_limit(),
            queue_size=settings.EVENT_QUEUE_SIZE,
        )
        self.aggregator.add_listener(_log_snapshot)
        self.reader = LedgerStateReader(
            rpc=rpc,
            token_type=settings.token_type(),
            treasury_id=settings.DEEP_TREASURY_ID,
            decimals=settings.TOKEN_DECIMALS,
            initial_supply=settings.INITIAL_SUPPLY,
        )
        self.refresher = RefreshScheduler(
            reader=self.reader,
            aggregator=self.aggregator,
            interval_s=settings.refresh_interval_s(),
        )
        self.subscriptions = SubscriptionManager(
            rpc=rpc,
            normalizer=EventNormalizer(settings.TOKEN_DECIMALS),
            sink=self.aggregator.submit,
            on_fallback=self._activate_fallback,
            initial_backoff_s=settings.SUBSCRIBE_INITIAL_BACKOFF_S,
            max_backoff_s=settings.SUBSCRIBE_MAX_BACKOFF_S,
        )
        self.fallback: FallbackPoller | None = None
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._server: _EmbeddedServer | None = None
        self._started = False
        self._stopped = False

    async def start(self) -> None:
        """Seed the snapshot, then bring up subscriptions and timers.

        Any failure here tears down whatever was opened and surfaces as
        StartupError.
        """

        if self._started:
            raise RuntimeError("watcher already started")
        self._started = True

        try:
            await self._verify_token()
            self.aggregator.apply(await self.refresher.refresh_once())
            self._spawn(self.aggregator.run(self._stop_event), "aggregator")
            await self.subscriptions.start(self.settings.burn_topics())
            self._spawn(self.refresher.run(self._stop_event), "refresh")
            if self.settings.API_ENABLED:
                self._start_api()
        except Exception as exc:
            await self.stop()
            if isinstance(exc, StartupError):
                raise
            raise StartupError(f"watcher startup failed: {exc}") from exc

        snapshot = self.aggregator.snapshot()
        logger.info(
            "watcher_started",
            extra={
                "active_topics": list(self.subscriptions.active_topics()),
                "fallback_active": self.fallback is not None,
                "current_supply": snapshot.current_supply,
                "treasury_balance": snapshot.treasury_balance,
                "circulating_supply": snapshot.circulating_supply,
            },
        )

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._stop_event.set()

        await self.subscriptions.stop()
        if self._server is not None:
            self._server.should_exit = True

        tasks = list(self._tasks)
        self._tasks.clear()
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=_STOP_TIMEOUT_S)
            for task in pending:
                task.cancel()
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for task, result in zip(tasks, results):
                if isinstance(result, Exception):
                    logger.error(
                        "watcher_task_failed",
                        extra={"task": task.get_name(), "error": str(result)},
                    )

        applied = self.aggregator.drain()
        snapshot = self.aggregator.snapshot()
        logger.info(
            "watcher_stopped",
            extra={
                "drained_inputs": applied,
                "total_burned": snapshot.total_burned,
                "burn_events": len(snapshot.event_history),
            },
        )

    async def _verify_token(self) -> None:
        token_type = self.settings.token_type()
        try:
            metadata = await self._rpc.fetch_token_metadata(token_type)
        except RpcError as exc:
            raise StartupError(f"cannot load metadata for {token_type}: {exc}") from exc

        if metadata.decimals != self.settings.TOKEN_DECIMALS:
            logger.warning(
                "token_decimals_mismatch",
                extra={"configured": self.settings.TOKEN_DECIMALS, "ledger": metadata.decimals},
            )

    async def _activate_fallback(self, reason: SubscriptionUnavailable) -> None:
        if self.fallback is not None:
            return
        self.fallback = FallbackPoller(
            fetch_balance=self.reader.fetch_treasury_balance,
            sink=self.aggregator.submit,
            interval_s=self.settings.fallback_interval_s(),
            previous_balance=self.aggregator.snapshot().treasury_balance,
        )
        logger.warning("fallback_activated", extra={"reason": str(reason)})
        self._spawn(self.fallback.run(self._stop_event), "fallback")

    def _start_api(self) -> None:
        app = create_app(self.aggregator, settings=self.settings, handles=self.subscriptions.handles)
        config = uvicorn.Config(app, host=self.settings.HOST, port=self.settings.PORT, log_config=None)
        self._server = _EmbeddedServer(config)
        self._spawn(self._server.serve(), "api")

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        self._tasks.append(asyncio.create_task(coro, name=name))

"""Burn watcher process: monitors DEEP burns until interrupted."""

import asyncio
import logging
import signal

from deepburn_watcher.core.config import get_settings
from deepburn_watcher.core.errors import StartupError
from deepburn_watcher.core.logging import configure_logging
from deepburn_watcher.engine.watcher import BurnWatcher
from deepburn_watcher.rpc.client import SuiRpcClient

EXIT_OK = 0
EXIT_INVALID_CONFIG = 1
EXIT_STARTUP_FAILED = 2


def _request_shutdown(
    shutdown_event: asyncio.Event, logger: logging.Logger, signal_name: str
) -> None:
    if shutdown_event.is_set():
        return
    logger.info("watcher_shutdown_signal", extra={"signal": signal_name})
    shutdown_event.set()


def _install_signal_handlers(shutdown_event: asyncio.Event, logger: logging.Logger) -> None:
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(
                sig,
                _request_shutdown,
                shutdown_event,
                logger,
                sig.name,
            )
        except NotImplementedError:
            signal_name = sig.name
            signal.signal(
                sig,
                lambda *_, signal_name=signal_name: _request_shutdown(
                    shutdown_event, logger, signal_name
                ),
            )


async def _run() -> int:
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    logger = logging.getLogger(__name__)
    shutdown_event = asyncio.Event()

    if settings.TOKEN_DECIMALS < 0:
        logger.error("watcher_invalid_decimals", extra={"decimals": settings.TOKEN_DECIMALS})
        return EXIT_INVALID_CONFIG
    for warning in settings.config_warnings():
        logger.warning("watcher_config_corrected", extra={"error": str(warning)})

    _install_signal_handlers(shutdown_event, logger)
    logger.info(
        "watcher_startup",
        extra={
            "token_type": settings.token_type(),
            "treasury_id": settings.DEEP_TREASURY_ID,
            "topics": list(settings.burn_topics()),
            "refresh_interval_s": settings.refresh_interval_s(),
            "fallback_interval_s": settings.fallback_interval_s(),
            "rpc_url": settings.SUI_RPC_URL,
            "ws_url": settings.SUI_WS_URL,
        },
    )

    async with SuiRpcClient(
        rpc_url=settings.SUI_RPC_URL,
        ws_url=settings.SUI_WS_URL,
        timeout_s=settings.RPC_TIMEOUT_S,
        max_retries=settings.RPC_MAX_RETRIES,
    ) as rpc:
        watcher = BurnWatcher(settings, rpc)
        try:
            await watcher.start()
        except StartupError as exc:
            logger.error("watcher_startup_failed", extra={"error": str(exc)})
            return EXIT_STARTUP_FAILED

        try:
            await shutdown_event.wait()
        finally:
            await watcher.stop()

    logger.info("watcher_shutdown")
    return EXIT_OK


def main() -> int:
    """Run the watcher process until interrupted."""

    try:
        return asyncio.run(_run())
    except KeyboardInterrupt:
        return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())

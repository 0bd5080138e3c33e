"""Read-only FastAPI view over the live burn metrics."""

from collections.abc import Callable

from fastapi import FastAPI, Query

from deepburn_watcher.core.config import Settings, get_settings
from deepburn_watcher.core.types import SubscriptionHandle
from deepburn_watcher.engine.aggregator import MetricsAggregator

HandlesProvider = Callable[[], dict[str, SubscriptionHandle]]


def create_app(
    aggregator: MetricsAggregator,
    settings: Settings | None = None,
    handles: HandlesProvider | None = None,
) -> FastAPI:
    """Build the HTTP view; it only ever reads snapshot copies."""

    settings = settings or get_settings()
    app = FastAPI(title=settings.APP_NAME, version=settings.VERSION)

    @app.get("/health")
    def health() -> dict[str, str]:
        """Return process liveness status."""

        return {"status": "ok"}

    @app.get("/version")
    def version() -> dict[str, str]:
        """Return application metadata from shared settings."""

        return {
            "name": settings.APP_NAME,
            "version": settings.VERSION,
            "env": settings.ENV,
            "token_type": settings.token_type(),
        }

    @app.get("/metrics")
    def metrics(history: int = Query(default=10, ge=0)) -> dict:
        """Return the latest metrics with the most recent burns first."""

        return aggregator.snapshot().to_dict(history=history)

    @app.get("/subscriptions")
    def subscriptions() -> list[dict]:
        if handles is None:
            return []
        return [handle.to_dict() for handle in handles().values()]

    return app

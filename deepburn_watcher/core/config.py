"""Environment-driven settings for the burn watcher process."""

from functools import lru_cache
from typing import Callable

from pydantic_settings import BaseSettings, SettingsConfigDict

from deepburn_watcher.core.errors import ConfigurationError

MIN_REFRESH_INTERVAL_S = 5.0

_BURN_EVENT_SUFFIXES = (
    ("package", "treasury::BurnEvent"),
    ("package", "treasury::DeepBurnEvent"),
    ("token", "deep::BurnEvent"),
)


class Settings(BaseSettings):
    """Watcher settings loaded from environment variables or a local .env file."""

    APP_NAME: str = "DeepBurn Watcher"
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"
    VERSION: str = "1.0.0"
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    API_ENABLED: bool = False
    SUI_RPC_URL: str = "https://fullnode.mainnet.sui.io:443"
    SUI_WS_URL: str = "wss://fullnode.mainnet.sui.io:443"
    RPC_TIMEOUT_S: float = 10.0
    RPC_MAX_RETRIES: int = 3
    DEEPBOOK_PACKAGE_ID: str = "0x2c8d603bc51326b8c13cef9dd07031a408a48dddb541963357661df5d3204809"
    DEEP_TREASURY_ID: str = "0x032abf8948dda67a271bcc18e776dbbcfb0d58c8d288a700ff0d5521e57a1ffe"
    DEEP_TOKEN_ADDRESS: str = "0xdeeb7a4662eec9f2f3def03fb937a663dddaa2e215b8078a284d026b7946c270"
    TOKEN_DECIMALS: int = 6
    INITIAL_SUPPLY: int = 1_000_000_000
    BURN_EVENT_TOPICS: str = ""
    REFRESH_INTERVAL_S: float = 15.0
    FALLBACK_INTERVAL_S: float = 30.0
    HISTORY_LIMIT: int = 100
    EVENT_QUEUE_SIZE: int = 1000
    SUBSCRIBE_INITIAL_BACKOFF_S: float = 1.0
    SUBSCRIBE_MAX_BACKOFF_S: float = 30.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def token_type(self) -> str:
        """Return the fully qualified coin type of the monitored token."""

        return f"{self.DEEP_TOKEN_ADDRESS}::deep::DEEP"

    def burn_topics(self) -> tuple[str, ...]:
        """Return the Move event types to subscribe to, defaulting to the known burn events."""

        topics = self._split_csv(self.BURN_EVENT_TOPICS, transform=str)
        if topics:
            return topics

        prefixes = {"package": self.DEEPBOOK_PACKAGE_ID, "token": self.DEEP_TOKEN_ADDRESS}
        return tuple(f"{prefixes[owner]}::{suffix}" for owner, suffix in _BURN_EVENT_SUFFIXES)

    def refresh_interval_s(self) -> float:
        """Return the refresh cadence with the minimum floor applied."""

        return max(MIN_REFRESH_INTERVAL_S, self.REFRESH_INTERVAL_S)

    def fallback_interval_s(self) -> float:
        """Return the fallback polling cadence, kept strictly longer than the refresh cadence."""

        refresh = self.refresh_interval_s()
        if self.FALLBACK_INTERVAL_S > refresh:
            return self.FALLBACK_INTERVAL_S
        return refresh * 2

    def history_limit(self) -> int:
        return max(1, self.HISTORY_LIMIT)

    def config_warnings(self) -> list[ConfigurationError]:
        """Describe every setting that was corrected instead of rejected."""

        warnings: list[ConfigurationError] = []
        if self.REFRESH_INTERVAL_S < MIN_REFRESH_INTERVAL_S:
            warnings.append(
                ConfigurationError(
                    f"REFRESH_INTERVAL_S={self.REFRESH_INTERVAL_S} is below the "
                    f"{MIN_REFRESH_INTERVAL_S}s floor; using the floor"
                )
            )
        if self.FALLBACK_INTERVAL_S <= self.refresh_interval_s():
            warnings.append(
                ConfigurationError(
                    f"FALLBACK_INTERVAL_S={self.FALLBACK_INTERVAL_S} must exceed the refresh "
                    f"interval; using {self.fallback_interval_s()}s"
                )
            )
        if self.HISTORY_LIMIT < 1:
            warnings.append(ConfigurationError(f"HISTORY_LIMIT={self.HISTORY_LIMIT} is below 1; using 1"))
        return warnings

    @staticmethod
    def _split_csv(value: str, transform: Callable[[str], str]) -> tuple[str, ...]:
        """Split comma-separated values while removing empty entries and duplicates."""

        items: list[str] = []
        seen: set[str] = set()

        for raw in value.split(","):
            item = transform(raw.strip())
            if not item or item in seen:
                continue
            seen.add(item)
            items.append(item)

        return tuple(items)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings to avoid repeated environment parsing."""

    return Settings()

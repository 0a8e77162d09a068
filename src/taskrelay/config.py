"""Runtime configuration for the task engine, HTTP surface and client."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from taskrelay.errors import ConfigurationError


@dataclass(slots=True)
class EngineSettings:
    """Claim, lease and retry policy."""

    max_claim: int = 5
    stale_after_seconds: int = 300
    max_retries: int = 3


@dataclass(slots=True)
class StreamSettings:
    """Push channel cadence."""

    poll_interval_seconds: float = 1.0
    keepalive_interval_seconds: float = 15.0


@dataclass(slots=True)
class TriggerSettings:
    """Sweep and kick authorization."""

    cron_secret: str = ""
    trusted_trigger_header: str = "x-vercel-cron"
    app_url: str = ""


@dataclass(slots=True)
class AuthSettings:
    """Bearer token to user id mapping."""

    api_tokens: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ClientSettings:
    """Client consumer polling and reconnect policy."""

    poll_interval_seconds: float = 1.5
    reconnect_base_seconds: float = 1.0
    reconnect_max_seconds: float = 10.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".taskrelay.db")
    busy_timeout_ms: int = 5000
    log_level: str = "INFO"
    engine: EngineSettings = field(default_factory=EngineSettings)
    stream: StreamSettings = field(default_factory=StreamSettings)
    trigger: TriggerSettings = field(default_factory=TriggerSettings)
    auth: AuthSettings = field(default_factory=AuthSettings)
    client: ClientSettings = field(default_factory=ClientSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with local development defaults."""

        return cls(
            db_path=db_path or Path(os.getenv("TASKRELAY_DB_PATH", ".taskrelay.db")),
            busy_timeout_ms=_env_int("TASKRELAY_BUSY_TIMEOUT_MS", 5000),
            log_level=os.getenv("TASKRELAY_LOG_LEVEL", "INFO").upper(),
            engine=EngineSettings(
                max_claim=_env_int("TASKRELAY_MAX_CLAIM", 5),
                stale_after_seconds=_env_int("TASKRELAY_STALE_AFTER_SECONDS", 300),
                max_retries=_env_int("TASKRELAY_MAX_RETRIES", 3),
            ),
            stream=StreamSettings(
                poll_interval_seconds=_env_float("TASKRELAY_STREAM_POLL_INTERVAL_SECONDS", 1.0),
                keepalive_interval_seconds=_env_float(
                    "TASKRELAY_STREAM_KEEPALIVE_INTERVAL_SECONDS",
                    15.0,
                ),
            ),
            trigger=TriggerSettings(
                cron_secret=os.getenv("TASKRELAY_CRON_SECRET", "").strip(),
                trusted_trigger_header=os.getenv(
                    "TASKRELAY_TRUSTED_TRIGGER_HEADER",
                    "x-vercel-cron",
                )
                .strip()
                .lower(),
                app_url=os.getenv("TASKRELAY_APP_URL", "").strip().rstrip("/"),
            ),
            auth=AuthSettings(api_tokens=_collect_api_tokens()),
            client=ClientSettings(
                poll_interval_seconds=_env_float("TASKRELAY_CLIENT_POLL_INTERVAL_SECONDS", 1.5),
                reconnect_base_seconds=_env_float(
                    "TASKRELAY_CLIENT_RECONNECT_BASE_SECONDS",
                    1.0,
                ),
                reconnect_max_seconds=_env_float(
                    "TASKRELAY_CLIENT_RECONNECT_MAX_SECONDS",
                    10.0,
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range knobs."""

        if self.engine.max_claim <= 0:
            raise ConfigurationError("TASKRELAY_MAX_CLAIM must be > 0.")
        if self.engine.stale_after_seconds <= 0:
            raise ConfigurationError("TASKRELAY_STALE_AFTER_SECONDS must be > 0.")
        if self.engine.max_retries < 0:
            raise ConfigurationError("TASKRELAY_MAX_RETRIES must be >= 0.")
        if self.stream.poll_interval_seconds <= 0:
            raise ConfigurationError("TASKRELAY_STREAM_POLL_INTERVAL_SECONDS must be > 0.")
        if self.stream.keepalive_interval_seconds <= 0:
            raise ConfigurationError("TASKRELAY_STREAM_KEEPALIVE_INTERVAL_SECONDS must be > 0.")
        if self.client.reconnect_base_seconds <= 0:
            raise ConfigurationError("TASKRELAY_CLIENT_RECONNECT_BASE_SECONDS must be > 0.")
        if self.client.reconnect_max_seconds < self.client.reconnect_base_seconds:
            raise ConfigurationError(
                "TASKRELAY_CLIENT_RECONNECT_MAX_SECONDS must be >= the reconnect base.",
            )
        if self.trigger.app_url:
            _validate_app_url(self.trigger.app_url)
            if not self.trigger.cron_secret:
                raise ConfigurationError(
                    "TASKRELAY_APP_URL requires TASKRELAY_CRON_SECRET for HTTP kicks.",
                )


def _collect_api_tokens() -> dict[str, str]:
    raw = os.getenv("TASKRELAY_API_TOKENS", "").strip()
    if not raw:
        return {}

    tokens: dict[str, str] = {}
    for part in raw.split(","):
        entry = part.strip()
        if not entry:
            continue
        if ":" not in entry:
            raise ConfigurationError(
                f"Invalid TASKRELAY_API_TOKENS entry: {entry!r}. Expected '<token>:<user_id>'.",
            )
        token, user_id = entry.split(":", 1)
        token = token.strip()
        user_id = user_id.strip()
        if not token or not user_id:
            raise ConfigurationError(
                f"Invalid TASKRELAY_API_TOKENS entry: {entry!r}. Empty token or user id.",
            )
        tokens[token] = user_id
    return tokens


def _validate_app_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ConfigurationError(
            f"Invalid TASKRELAY_APP_URL: {value!r}. Expected an absolute http(s) URL.",
        )


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ConfigurationError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ConfigurationError(f"Invalid number value for {name}: {value!r}") from error

from __future__ import annotations

"""Environment-driven settings for the reconciliation engine."""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    settlement_window_seconds: float = 10.0
    ledger_max_entries: int = 512
    tombstone_limit: int = 256
    subscribe_retry_base: float = 0.25
    subscribe_retry_max: float = 5.0
    subscribe_max_attempts: int = 5
    producer_url: Optional[str] = None
    producer_connect_timeout: float = 3.0
    producer_read_timeout: float = 60.0
    history_token_budget: int = 2000
    redis_url: Optional[str] = None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def load_settings(*, use_dotenv: bool = True) -> Settings:
    """Build settings from ``CANVASCHAT_*`` variables (optionally reading ``.env`` first)."""

    if use_dotenv:
        load_dotenv()
    return Settings(
        settlement_window_seconds=_env_float("CANVASCHAT_SETTLEMENT_WINDOW", 10.0),
        ledger_max_entries=_env_int("CANVASCHAT_LEDGER_MAX_ENTRIES", 512),
        tombstone_limit=_env_int("CANVASCHAT_TOMBSTONE_LIMIT", 256),
        subscribe_retry_base=_env_float("CANVASCHAT_SUBSCRIBE_RETRY_BASE", 0.25),
        subscribe_retry_max=_env_float("CANVASCHAT_SUBSCRIBE_RETRY_MAX", 5.0),
        subscribe_max_attempts=_env_int("CANVASCHAT_SUBSCRIBE_MAX_ATTEMPTS", 5),
        producer_url=os.getenv("CANVASCHAT_PRODUCER_URL") or None,
        producer_connect_timeout=_env_float("CANVASCHAT_PRODUCER_CONNECT_TIMEOUT", 3.0),
        producer_read_timeout=_env_float("CANVASCHAT_PRODUCER_READ_TIMEOUT", 60.0),
        history_token_budget=_env_int("CANVASCHAT_HISTORY_TOKEN_BUDGET", 2000),
        redis_url=os.getenv("REDIS_URL") or None,
    )


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is not None:
        return _settings
    _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (useful for tests)."""

    global _settings
    _settings = None

import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
src_str = str(ROOT / "src")
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from canvaschat.config import Settings, reset_settings  # noqa: E402
from canvaschat.domain.message_models import Message, ScopeType, SenderRole  # noqa: E402

T0 = datetime(2024, 1, 1, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_message(
    message_id: str,
    content: str = "hello",
    *,
    seconds: float = 0,
    role: SenderRole = SenderRole.USER,
    scope_type: ScopeType = ScopeType.NONE,
    scope_id=None,
) -> Message:
    return Message(
        id=message_id,
        content=content,
        sender_role=role,
        scope_type=scope_type,
        scope_id=scope_id,
        created_at=T0 + timedelta(seconds=seconds),
    )


@pytest.fixture(autouse=True)
def _isolate_runtime(monkeypatch):
    """Keep env-driven singletons from leaking between tests."""
    from canvaschat.api.routers import conversation
    from canvaschat.infrastructure import events, message_store
    from canvaschat.services.telemetry_sink import clear_events

    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("CANVASCHAT_PRODUCER_URL", raising=False)
    monkeypatch.setattr(events, "_publisher", None, raising=False)
    monkeypatch.setattr(message_store, "_store", None, raising=False)
    monkeypatch.setattr(conversation, "_runtime", None, raising=False)
    reset_settings()
    clear_events()
    yield
    reset_settings()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        settlement_window_seconds=10.0,
        ledger_max_entries=64,
        tombstone_limit=4,
        subscribe_retry_base=0.25,
        subscribe_retry_max=1.0,
        subscribe_max_attempts=4,
    )

import asyncio

import requests
from prometheus_client import REGISTRY

from canvaschat import config
from canvaschat.core.state_machine import (
    DirectiveState,
    StreamStatus,
    SubscriptionStatus,
    directive_advanced,
    is_valid_stream_transition,
    is_valid_subscription_transition,
    next_stream_status,
)
from canvaschat.errors import CanvasChatError, DurabilityFailure, TransientIOError, translate_error
from canvaschat.observability.metrics import observe_reconciler, sanitize_path
from canvaschat.services.telemetry_sink import TelemetryEvent, clear_events, list_recent_events, record_event


def test_settings_defaults(monkeypatch):
    for name in (
        "CANVASCHAT_SETTLEMENT_WINDOW",
        "CANVASCHAT_LEDGER_MAX_ENTRIES",
        "CANVASCHAT_TOMBSTONE_LIMIT",
        "CANVASCHAT_SUBSCRIBE_MAX_ATTEMPTS",
        "CANVASCHAT_PRODUCER_CONNECT_TIMEOUT",
        "CANVASCHAT_PRODUCER_READ_TIMEOUT",
        "CANVASCHAT_HISTORY_TOKEN_BUDGET",
    ):
        monkeypatch.delenv(name, raising=False)
    settings = config.load_settings(use_dotenv=False)
    assert settings.settlement_window_seconds == 10.0
    assert settings.ledger_max_entries == 512
    assert settings.tombstone_limit == 256
    assert settings.subscribe_max_attempts == 5
    assert (settings.producer_connect_timeout, settings.producer_read_timeout) == (3.0, 60.0)
    assert settings.history_token_budget == 2000
    assert settings.redis_url is None


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("CANVASCHAT_SETTLEMENT_WINDOW", "2.5")
    monkeypatch.setenv("CANVASCHAT_LEDGER_MAX_ENTRIES", "not-a-number")
    monkeypatch.setenv("CANVASCHAT_TOMBSTONE_LIMIT", "-3")
    monkeypatch.setenv("CANVASCHAT_PRODUCER_URL", "http://assistant.local/chat")
    monkeypatch.setenv("CANVASCHAT_PRODUCER_READ_TIMEOUT", "15")
    monkeypatch.setenv("CANVASCHAT_HISTORY_TOKEN_BUDGET", "0")
    settings = config.load_settings(use_dotenv=False)
    assert settings.settlement_window_seconds == 2.5
    assert settings.ledger_max_entries == 512
    assert settings.tombstone_limit == 256
    assert settings.producer_url == "http://assistant.local/chat"
    assert settings.producer_read_timeout == 15.0
    assert settings.history_token_budget == 2000


def test_get_settings_is_cached_until_reset(monkeypatch):
    monkeypatch.setattr(config, "load_dotenv", lambda *a, **k: False)
    first = config.get_settings()
    assert config.get_settings() is first
    config.reset_settings()
    assert config.get_settings() is not first


def test_translate_error_taxonomy():
    assert isinstance(translate_error(ConnectionError("reset")), TransientIOError)
    assert isinstance(translate_error(asyncio.TimeoutError()), TransientIOError)
    assert isinstance(translate_error(requests.exceptions.ReadTimeout("slow")), TransientIOError)
    failure = DurabilityFailure("temp-1")
    assert translate_error(failure) is failure
    other = translate_error(ValueError("bad"))
    assert type(other) is CanvasChatError
    assert str(other) == "bad"


def test_directive_order_and_malformed_jump():
    assert directive_advanced(DirectiveState.NONE, DirectiveState.OPENING)
    assert directive_advanced(DirectiveState.OPENING, DirectiveState.MALFORMED)
    assert not directive_advanced(DirectiveState.PAYLOAD_COMPLETE, DirectiveState.OPENING)
    assert not directive_advanced(DirectiveState.MALFORMED, DirectiveState.CLOSED)
    assert not directive_advanced(DirectiveState.CLOSED, DirectiveState.MALFORMED)
    assert DirectiveState.CLOSED.terminal and DirectiveState.MALFORMED.terminal


def test_stream_and_subscription_transitions():
    assert next_stream_status(StreamStatus.OPEN) == StreamStatus.FINALIZING
    assert next_stream_status(StreamStatus.CLOSED) is None
    assert is_valid_stream_transition(StreamStatus.OPEN, StreamStatus.ABORTED)
    assert not is_valid_stream_transition(StreamStatus.CLOSED, StreamStatus.OPEN)
    assert not is_valid_stream_transition(StreamStatus.OPEN, StreamStatus.CLOSED)
    assert is_valid_subscription_transition(SubscriptionStatus.SUBSCRIBED, SubscriptionStatus.UNSUBSCRIBED)
    assert not is_valid_subscription_transition(SubscriptionStatus.UNSUBSCRIBED, SubscriptionStatus.SUBSCRIBED)


def test_sanitize_path_collapses_ids():
    assert sanitize_path("") == "/"
    assert sanitize_path("/health") == "/health"
    assert sanitize_path("/conversation/messages/abc123?x=1") == "/conversation/messages"


def test_observe_reconciler_counts_outcomes():
    labels = {"event": "unit_test", "outcome": "applied"}
    before = REGISTRY.get_sample_value("canvaschat_reconciler_events_total", labels) or 0.0
    observe_reconciler("unit_test", "applied")
    assert REGISTRY.get_sample_value("canvaschat_reconciler_events_total", labels) == before + 1


def test_telemetry_buffer_is_bounded_and_clearable():
    clear_events()
    for i in range(205):
        record_event(TelemetryEvent(name=f"e{i}"))
    recent = list_recent_events(limit=500)
    assert len(recent) == 200
    assert recent[-1].name == "e204"
    assert list_recent_events(limit=0) == []
    clear_events()
    assert list_recent_events() == []

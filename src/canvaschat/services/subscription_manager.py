from __future__ import annotations

"""One push-feed subscription per scope key, re-established with bounded backoff."""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from ..config import Settings, get_settings
from ..core.state_machine import SubscriptionStatus, is_valid_subscription_transition
from ..domain.message_models import PushEvent, ScopeKey
from ..errors import TransientIOError, translate_error
from ..infrastructure.events import PushFeed, Subscription
from ..observability.metrics import ACTIVE_SUBSCRIPTIONS
from .reconciler import IdentityReconciler
from .telemetry_sink import TelemetryEvent, record_event

LOG = logging.getLogger("canvaschat.subscriptions")

Sleeper = Callable[[float], Awaitable[None]]


@dataclass
class _ScopeState:
    status: SubscriptionStatus = SubscriptionStatus.UNSUBSCRIBED
    generation: int = 0
    subscription: Optional[Subscription] = None
    task: Optional["asyncio.Task[None]"] = None
    sleeping: bool = False
    attempts: int = 0


class ContextSubscriptionManager:
    """Keeps at most one live subscription per ``ScopeKey`` and routes events to the reconciler.

    Every establish attempt carries a generation number. Releasing or switching a scope
    bumps the generation, so a subscribe call that resolves afterwards is closed on the
    spot instead of being installed. A live subscription that reports a transient loss
    is torn down and re-established through the same backoff loop.
    """

    def __init__(
        self,
        feed: PushFeed,
        reconciler: IdentityReconciler,
        *,
        settings: Optional[Settings] = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        settings = settings or get_settings()
        self._feed = feed
        self._reconciler = reconciler
        self._sleep = sleep
        self._base_delay = settings.subscribe_retry_base
        self._max_delay = settings.subscribe_retry_max
        self._max_attempts = settings.subscribe_max_attempts
        self._states: Dict[ScopeKey, _ScopeState] = {}
        self._generations = itertools.count(1)
        self._current: Optional[ScopeKey] = None

    @property
    def current_scope(self) -> Optional[ScopeKey]:
        return self._current

    def status(self, scope: ScopeKey) -> SubscriptionStatus:
        state = self._states.get(scope)
        return state.status if state else SubscriptionStatus.UNSUBSCRIBED

    def attempts(self, scope: ScopeKey) -> int:
        state = self._states.get(scope)
        return state.attempts if state else 0

    def live_scopes(self) -> List[ScopeKey]:
        return [scope for scope, state in self._states.items() if state.status == SubscriptionStatus.SUBSCRIBED]

    def backoff_delay(self, attempt: int) -> float:
        return min(self._max_delay, self._base_delay * (2 ** max(0, attempt - 1)))

    # ---- state helpers ---------------------------------------------------
    def _set_status(self, scope: ScopeKey, state: _ScopeState, target: SubscriptionStatus) -> None:
        if state.status == target:
            return
        if not is_valid_subscription_transition(state.status, target):
            LOG.warning(
                "subscription_transition_invalid",
                extra={"scope": scope.channel_suffix, "from": state.status.value, "to": target.value},
            )
            return
        LOG.debug("subscription_%s", target.value, extra={"scope": scope.channel_suffix})
        state.status = target

    def _is_current(self, scope: ScopeKey, generation: int) -> bool:
        state = self._states.get(scope)
        return state is not None and state.generation == generation

    def _handler_for(self, scope: ScopeKey, generation: int) -> Callable[[PushEvent], None]:
        def handle(event: PushEvent) -> None:
            if not self._is_current(scope, generation):
                LOG.debug("push_event_stale", extra={"scope": scope.channel_suffix, "message_id": event.record.id})
                return
            try:
                self._reconciler.apply_push_event(event.op, event.record)
            except Exception:
                LOG.exception("push_event_failed", extra={"scope": scope.channel_suffix, "message_id": event.record.id})

        return handle

    def _on_lost_for(self, scope: ScopeKey, generation: int) -> Callable[[Exception], None]:
        def lost(exc: Exception) -> None:
            if not self._is_current(scope, generation):
                return
            state = self._states[scope]
            err = translate_error(exc)
            subscription, state.subscription = state.subscription, None
            if subscription is not None:
                ACTIVE_SUBSCRIPTIONS.dec()
            # New generation so late events from the dead subscription are dropped
            state.generation = next(self._generations)
            self._set_status(scope, state, SubscriptionStatus.UNSUBSCRIBED)
            if not isinstance(err, TransientIOError):
                self._give_up(scope, state, state.attempts, err)
                state.task = asyncio.create_task(self._recover(scope, state.generation, subscription, resubscribe=False))
                return
            LOG.warning("subscription_lost", extra={"scope": scope.channel_suffix, "err": str(err)})
            state.attempts = 0
            self._set_status(scope, state, SubscriptionStatus.SUBSCRIBING)
            state.task = asyncio.create_task(self._recover(scope, state.generation, subscription))

        return lost

    async def _recover(
        self,
        scope: ScopeKey,
        generation: int,
        dead: Optional[Subscription],
        *,
        resubscribe: bool = True,
    ) -> None:
        if dead is not None:
            await self._close_quietly(scope, dead)
        if resubscribe and self._is_current(scope, generation):
            await self._establish(scope, generation)

    # ---- establish loop --------------------------------------------------
    async def _establish(self, scope: ScopeKey, generation: int) -> None:
        state = self._states[scope]
        attempt = 0
        while True:
            attempt += 1
            state.attempts = attempt
            try:
                subscription = await self._feed.subscribe(
                    scope, self._handler_for(scope, generation), self._on_lost_for(scope, generation)
                )
            except Exception as exc:
                err = translate_error(exc)
                if not self._is_current(scope, generation):
                    return
                if not isinstance(err, TransientIOError) or attempt >= self._max_attempts:
                    self._give_up(scope, state, attempt, err)
                    return
                delay = self.backoff_delay(attempt)
                LOG.warning(
                    "subscribe_retry",
                    extra={"scope": scope.channel_suffix, "attempt": attempt, "delay": delay, "err": str(err)},
                )
                state.sleeping = True
                try:
                    await self._sleep(delay)
                finally:
                    state.sleeping = False
                if not self._is_current(scope, generation):
                    return
                continue

            if not self._is_current(scope, generation):
                LOG.info("subscription_superseded", extra={"scope": scope.channel_suffix})
                await self._close_quietly(scope, subscription)
                return
            state.subscription = subscription
            self._set_status(scope, state, SubscriptionStatus.SUBSCRIBED)
            ACTIVE_SUBSCRIPTIONS.inc()
            LOG.info("subscription_established", extra={"scope": scope.channel_suffix, "attempts": attempt})
            return

    def _give_up(self, scope: ScopeKey, state: _ScopeState, attempt: int, err: Exception) -> None:
        self._set_status(scope, state, SubscriptionStatus.UNSUBSCRIBED)
        LOG.error(
            "subscribe_failed",
            extra={"scope": scope.channel_suffix, "attempts": attempt, "err": str(err)},
        )
        record_event(
            TelemetryEvent(
                name="subscription_failed",
                properties={"scope": scope.channel_suffix, "attempts": attempt, "error": str(err)},
            )
        )

    async def _close_quietly(self, scope: ScopeKey, subscription: Subscription) -> None:
        try:
            await subscription.close()
        except Exception as exc:
            LOG.warning("subscription_close_failed", extra={"scope": scope.channel_suffix, "err": str(translate_error(exc))})

    # ---- public API ------------------------------------------------------
    async def ensure(self, scope: ScopeKey) -> SubscriptionStatus:
        """Start establishing ``scope`` unless it is already subscribing or subscribed."""
        state = self._states.setdefault(scope, _ScopeState())
        if state.status != SubscriptionStatus.UNSUBSCRIBED:
            return state.status
        state.generation = next(self._generations)
        state.attempts = 0
        self._set_status(scope, state, SubscriptionStatus.SUBSCRIBING)
        state.task = asyncio.create_task(self._establish(scope, state.generation))
        return state.status

    async def release(self, scope: ScopeKey) -> None:
        state = self._states.get(scope)
        if state is None:
            return
        state.generation = next(self._generations)
        task, state.task = state.task, None
        if task is not None and not task.done() and state.sleeping:
            task.cancel()
        subscription, state.subscription = state.subscription, None
        self._set_status(scope, state, SubscriptionStatus.UNSUBSCRIBED)
        if self._current == scope:
            self._current = None
        if subscription is not None:
            ACTIVE_SUBSCRIPTIONS.dec()
            await self._close_quietly(scope, subscription)
            LOG.info("subscription_released", extra={"scope": scope.channel_suffix})

    async def switch(self, scope: ScopeKey) -> SubscriptionStatus:
        """Make ``scope`` the active one, tearing down the previous scope first."""
        previous = self._current
        if previous is not None and previous != scope:
            await self.release(previous)
        self._current = scope
        return await self.ensure(scope)

    async def wait_ready(self, scope: ScopeKey, timeout: Optional[float] = None) -> bool:
        state = self._states.get(scope)
        if state is None:
            return False
        if state.task is not None and not state.task.done():
            await asyncio.wait({state.task}, timeout=timeout)
        return state.status == SubscriptionStatus.SUBSCRIBED

    async def close(self) -> None:
        for scope in list(self._states):
            await self.release(scope)
        self._current = None

from __future__ import annotations

"""Identity reconciliation for one conversation view.

Three racing sources write into the canonical list: optimistic local inserts,
stream placeholders that are later finalized, and the push feed which echoes every
durable write back. Each event is idempotent, and the settlement ledger makes every
arrival order converge to the same list.
"""

import itertools
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from ..config import Settings, get_settings
from ..domain.message_models import Message, MessageDraft, ScopeKey
from ..errors import IdentityConflictError
from ..observability.metrics import observe_reconciler
from .telemetry_sink import TelemetryEvent, record_event

LOG = logging.getLogger("canvaschat.reconciler")

Listener = Callable[[List[Message]], None]


@dataclass(frozen=True)
class ReconciliationRecord:
    key: Optional[str]
    message_id: Optional[str]
    expires_at: float
    kind: str = "settled"

    def references(self, identifier: str) -> bool:
        return identifier in (self.key, self.message_id)


class ReconciliationLedger:
    """Settled ``(key, message_id)`` pairs with an expiry, plus abort tombstones.

    Settled and deleted records expire after the settlement window. Aborted session
    ids never expire; they are only evicted oldest-first past ``tombstone_limit``.
    """

    def __init__(
        self,
        window_seconds: float,
        *,
        max_entries: int = 512,
        tombstone_limit: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window = window_seconds
        self._max_entries = max_entries
        self._tombstone_limit = tombstone_limit
        self._clock = clock
        self._records: "OrderedDict[Tuple[str, Optional[str], Optional[str]], ReconciliationRecord]" = OrderedDict()
        self._aborted: "OrderedDict[str, None]" = OrderedDict()

    def __len__(self) -> int:
        self.purge()
        return len(self._records)

    def purge(self) -> int:
        now = self._clock()
        expired = [k for k, rec in self._records.items() if rec.expires_at <= now]
        for k in expired:
            del self._records[k]
        return len(expired)

    def _add(self, kind: str, key: Optional[str], message_id: Optional[str]) -> ReconciliationRecord:
        self.purge()
        record = ReconciliationRecord(
            key=key,
            message_id=message_id,
            expires_at=self._clock() + self._window,
            kind=kind,
        )
        slot = (kind, key, message_id)
        self._records.pop(slot, None)
        self._records[slot] = record
        while len(self._records) > self._max_entries:
            self._records.popitem(last=False)
        return record

    def settle(self, key: str, message_id: str) -> ReconciliationRecord:
        return self._add("settled", key, message_id)

    def tombstone(self, message_id: str) -> ReconciliationRecord:
        return self._add("deleted", None, message_id)

    def clear_tombstone(self, message_id: str) -> None:
        self._records.pop(("deleted", None, message_id), None)

    def is_settled(self, identifier: str) -> bool:
        self.purge()
        return any(rec.kind == "settled" and rec.references(identifier) for rec in self._records.values())

    def is_pair_settled(self, key: str, message_id: str) -> bool:
        self.purge()
        return ("settled", key, message_id) in self._records

    def settled_message_for(self, key: str) -> Optional[str]:
        self.purge()
        for rec in self._records.values():
            if rec.kind == "settled" and rec.key == key:
                return rec.message_id
        return None

    def is_deleted(self, message_id: str) -> bool:
        self.purge()
        return ("deleted", None, message_id) in self._records

    def mark_aborted(self, *identifiers: Optional[str]) -> None:
        for identifier in identifiers:
            if not identifier:
                continue
            self._aborted.pop(identifier, None)
            self._aborted[identifier] = None
        while len(self._aborted) > self._tombstone_limit:
            self._aborted.popitem(last=False)

    def is_aborted(self, identifier: str) -> bool:
        return identifier in self._aborted


@dataclass
class _Entry:
    key: str
    message: Message
    seq: int
    durable: bool
    aliases: Set[str] = field(default_factory=set)
    # durable id known, record built locally; the store echo is authoritative
    provisional: bool = False

    def sort_key(self) -> Tuple[int, float, int]:
        # Pending entries have no store-assigned timestamp yet; they trail in arrival order
        if not self.durable:
            return (1, 0.0, self.seq)
        return (0, self.message.created_at.timestamp(), self.seq)


class IdentityReconciler:
    """Single owner of the canonical message list and the settlement ledger."""

    def __init__(
        self,
        *,
        scope: Optional[ScopeKey] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = settings or get_settings()
        self._scope = scope
        self._entries: List[_Entry] = []
        self._index: Dict[str, _Entry] = {}
        self._seq = itertools.count()
        self._ledger = ReconciliationLedger(
            settings.settlement_window_seconds,
            max_entries=settings.ledger_max_entries,
            tombstone_limit=settings.tombstone_limit,
            clock=clock,
        )
        self._listeners: List[Listener] = []
        # push updates that arrived before the record they patch
        self._early_updates: "OrderedDict[str, Message]" = OrderedDict()
        self._early_update_limit = settings.tombstone_limit

    # ---- read side -------------------------------------------------------
    @property
    def scope(self) -> Optional[ScopeKey]:
        return self._scope

    @property
    def ledger(self) -> ReconciliationLedger:
        return self._ledger

    @property
    def messages(self) -> List[Message]:
        return [entry.message for entry in self._entries]

    def get(self, message_id: str) -> Optional[Message]:
        entry = self._index.get(message_id)
        return entry.message if entry else None

    def is_pending(self, message_id: str) -> bool:
        entry = self._index.get(message_id)
        return entry is not None and not entry.durable

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._index

    def __len__(self) -> int:
        return len(self._entries)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ---- internal mutation ----------------------------------------------
    def _in_scope(self, message: Message) -> bool:
        return self._scope is None or self._scope.matches(message)

    def _sort(self) -> None:
        self._entries.sort(key=_Entry.sort_key)

    def _insert(self, key: str, message: Message, *, durable: bool, provisional: bool = False) -> _Entry:
        entry = _Entry(key=key, message=message, seq=next(self._seq), durable=durable, provisional=provisional)
        self._entries.append(entry)
        self._index[key] = entry
        if durable:
            self._sort()
        return entry

    def _replace(self, entry: _Entry, message: Message, *, durable: bool, provisional: bool = False) -> None:
        if message.id != entry.key:
            entry.aliases.add(entry.key)
            entry.key = message.id
            self._index[message.id] = entry
        entry.message = message
        entry.durable = durable
        entry.provisional = provisional
        self._sort()

    def _stash_update(self, record: Message) -> None:
        self._early_updates.pop(record.id, None)
        self._early_updates[record.id] = record
        while len(self._early_updates) > self._early_update_limit:
            self._early_updates.popitem(last=False)

    def _latest(self, record: Message) -> Message:
        """The freshest store version known for ``record.id``."""
        return self._early_updates.pop(record.id, record)

    def _remove(self, entry: _Entry) -> None:
        self._entries.remove(entry)
        for identifier in {entry.key, *entry.aliases}:
            if self._index.get(identifier) is entry:
                del self._index[identifier]

    def _emit(self) -> None:
        ids = [entry.key for entry in self._entries]
        if len(ids) != len(set(ids)):
            dupes = sorted({i for i in ids if ids.count(i) > 1})
            self._conflict(IdentityConflictError(",".join(dupes), "duplicate entries in canonical list"))
        snapshot = self.messages
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                LOG.exception("reconciler_listener_failed")

    def _outcome(self, event: str, outcome: str, **extra: object) -> bool:
        observe_reconciler(event, outcome)
        LOG.debug("reconcile_%s_%s", event, outcome, extra={"reconcile_event": event, **extra})
        changed = outcome == "applied"
        if changed:
            self._emit()
        return changed

    def _conflict(self, err: IdentityConflictError) -> None:
        # Never propagated: the newer event is dropped and the condition recorded
        LOG.error("identity_conflict", extra={"message_id": err.message_id, "detail": err.detail})
        record_event(
            TelemetryEvent(
                name="identity_conflict",
                properties={"message_id": err.message_id, "detail": err.detail},
            )
        )

    def _refresh_provisional(self, event: str, entry: _Entry, record: Message) -> bool:
        if entry.message == record:
            entry.provisional = False
            return self._outcome(event, "noop", message_id=record.id)
        self._replace(entry, record, durable=True)
        return self._outcome(event, "applied", message_id=record.id)

    def _settle_durable(self, event: str, key: str, final: Message, *, provisional: bool = False) -> bool:
        """Shared path for durable confirmation and stream finalization."""
        if self._ledger.is_aborted(key):
            return self._outcome(event, "discarded", key=key, message_id=final.id)
        if self._ledger.is_deleted(final.id):
            # The store already deleted this id; drop the pending entry instead of resurrecting it
            self._ledger.settle(key, final.id)
            entry = self._index.get(key)
            if entry is not None and not entry.durable:
                self._remove(entry)
                self._emit()
            return self._outcome(event, "discarded", key=key, message_id=final.id)
        if self._ledger.is_pair_settled(key, final.id):
            return self._outcome(event, "noop", key=key, message_id=final.id)

        prior = self._ledger.settled_message_for(key)
        if prior is not None and prior != final.id:
            self._conflict(IdentityConflictError(final.id, f"{key} already settled as {prior}"))
            return self._outcome(event, "conflict", key=key, message_id=final.id)

        entry = self._index.get(key)
        existing = self._index.get(final.id)
        if entry is not None and entry.durable and entry.key != final.id:
            self._conflict(IdentityConflictError(final.id, f"{key} already resolved to {entry.key}"))
            return self._outcome(event, "conflict", key=key, message_id=final.id)

        self._ledger.settle(key, final.id)
        latest = self._latest(final)
        if latest is not final:
            final, provisional = latest, False
        if existing is not None and existing is not entry:
            # Another event established the durable id first; it keeps the slot
            if entry is not None:
                self._remove(entry)
                existing.aliases.add(key)
                self._index[key] = existing
                return self._outcome(event, "applied", key=key, message_id=final.id)
            return self._outcome(event, "noop", key=key, message_id=final.id)

        if entry is not None:
            if entry.durable and entry.message == final:
                return self._outcome(event, "noop", key=key, message_id=final.id)
            self._replace(entry, final, durable=True, provisional=provisional)
        else:
            self._insert(final.id, final, durable=True, provisional=provisional)
            self._index[key] = self._index[final.id]
            self._index[final.id].aliases.add(key)
        return self._outcome(event, "applied", key=key, message_id=final.id)

    # ---- event API -------------------------------------------------------
    def load(self, records: Iterable[Message]) -> int:
        """Merge an initial history page (e.g. from ``query``)."""
        added = refreshed = 0
        for record in records:
            if not self._in_scope(record):
                continue
            entry = self._index.get(record.id)
            if entry is not None:
                if entry.provisional:
                    self._replace(entry, self._latest(record), durable=True)
                    refreshed += 1
                continue
            if self._ledger.is_deleted(record.id) or self._ledger.is_aborted(record.id):
                continue
            self._insert(record.id, self._latest(record), durable=True)
            added += 1
        if added:
            self._sort()
        self._outcome("load", "applied" if added or refreshed else "noop", count=added)
        return added

    def apply_optimistic(self, temp_id: str, draft: Union[MessageDraft, Message]) -> bool:
        if temp_id in self._index or self._ledger.is_settled(temp_id) or self._ledger.is_aborted(temp_id):
            return self._outcome("optimistic", "noop", key=temp_id)
        message = draft.as_message(temp_id) if isinstance(draft, MessageDraft) else draft.model_copy(update={"id": temp_id})
        self._insert(temp_id, message, durable=False)
        return self._outcome("optimistic", "applied", key=temp_id)

    def apply_durable_confirmation(self, temp_id: str, final: Message) -> bool:
        return self._settle_durable("confirmation", temp_id, final)

    def apply_durable_failure(self, temp_id: str) -> Optional[Message]:
        """Roll back an optimistic insert whose write never became durable."""
        self._ledger.mark_aborted(temp_id)
        entry = self._index.get(temp_id)
        if entry is None or entry.durable:
            self._outcome("durability_failure", "noop", key=temp_id)
            return None
        self._remove(entry)
        self._outcome("durability_failure", "applied", key=temp_id)
        return entry.message

    def apply_stream_placeholder(self, session_id: str, draft: Union[MessageDraft, Message]) -> bool:
        if session_id in self._index or self._ledger.is_settled(session_id) or self._ledger.is_aborted(session_id):
            return self._outcome("stream_placeholder", "noop", key=session_id)
        message = draft.as_message(session_id) if isinstance(draft, MessageDraft) else draft.model_copy(update={"id": session_id})
        self._insert(session_id, message, durable=False)
        return self._outcome("stream_placeholder", "applied", key=session_id)

    def apply_stream_finalization(self, session_id: str, final: Message, *, provisional: bool = False) -> bool:
        """Resolve a stream placeholder to its durable record.

        ``provisional`` marks a record assembled from the stream buffer rather than read
        from the store; the next store version pushed for that id replaces it.
        """
        return self._settle_durable("stream_finalization", session_id, final, provisional=provisional)

    def apply_stream_abort(self, session_id: str, message_id: Optional[str] = None) -> bool:
        entry = self._index.get(session_id)
        if (entry is not None and entry.durable) or self._ledger.is_settled(session_id):
            # Already finalized; the durable record stands
            return self._outcome("stream_abort", "noop", key=session_id)
        self._ledger.mark_aborted(session_id, message_id)
        if entry is None:
            return self._outcome("stream_abort", "noop", key=session_id)
        self._remove(entry)
        return self._outcome("stream_abort", "applied", key=session_id)

    def apply_push_event(self, kind: str, record: Message) -> bool:
        event = f"push_{kind}"
        if not self._in_scope(record):
            return self._outcome(event, "out_of_scope", message_id=record.id)
        if self._ledger.is_aborted(record.id):
            return self._outcome(event, "discarded", message_id=record.id)

        if kind == "insert":
            entry = self._index.get(record.id)
            if entry is not None and entry.provisional:
                return self._refresh_provisional(event, entry, self._latest(record))
            if entry is not None or self._ledger.is_settled(record.id) or self._ledger.is_deleted(record.id):
                return self._outcome(event, "noop", message_id=record.id)
            self._insert(record.id, self._latest(record), durable=True)
            return self._outcome(event, "applied", message_id=record.id)

        if kind == "update":
            if self._ledger.is_deleted(record.id):
                return self._outcome(event, "noop", message_id=record.id)
            entry = self._index.get(record.id)
            if entry is None:
                # Reordered ahead of its insert; applied when the record lands
                self._stash_update(record)
                return self._outcome(event, "deferred", message_id=record.id)
            if not entry.durable:
                return self._outcome(event, "noop", message_id=record.id)
            if entry.provisional:
                return self._refresh_provisional(event, entry, record)
            if entry.message == record:
                return self._outcome(event, "noop", message_id=record.id)
            self._replace(entry, record, durable=True)
            return self._outcome(event, "applied", message_id=record.id)

        if kind == "delete":
            self._early_updates.pop(record.id, None)
            self._ledger.tombstone(record.id)
            entry = self._index.get(record.id)
            if entry is None:
                return self._outcome(event, "noop", message_id=record.id)
            self._remove(entry)
            return self._outcome(event, "applied", message_id=record.id)

        LOG.warning("push_event_unknown_kind", extra={"kind": kind, "message_id": record.id})
        return self._outcome("push_unknown", "noop", message_id=record.id)

    def apply_local_edit(self, message_id: str, content: str) -> Optional[Message]:
        """Optimistically change content; returns the previous message for rollback."""
        entry = self._index.get(message_id)
        if entry is None:
            self._outcome("local_edit", "noop", message_id=message_id)
            return None
        previous = entry.message
        entry.message = previous.model_copy(update={"content": content, "edited": True})
        self._outcome("local_edit", "applied", message_id=message_id)
        return previous

    def revert_local_edit(self, previous: Message) -> bool:
        entry = self._index.get(previous.id)
        if entry is None or entry.message == previous:
            return self._outcome("local_edit_revert", "noop", message_id=previous.id)
        entry.message = previous
        return self._outcome("local_edit_revert", "applied", message_id=previous.id)

    def apply_local_delete(self, message_id: str) -> Optional[Message]:
        entry = self._index.get(message_id)
        if entry is None:
            self._outcome("local_delete", "noop", message_id=message_id)
            return None
        self._remove(entry)
        if entry.durable:
            self._ledger.tombstone(entry.key)
        self._outcome("local_delete", "applied", message_id=message_id)
        return entry.message

    def restore(self, message: Message) -> bool:
        """Put back a message whose delete was rejected by the store."""
        if message.id in self._index:
            # the push feed already brought it back
            return self._outcome("restore", "noop", message_id=message.id)
        self._ledger.clear_tombstone(message.id)
        self._insert(message.id, message, durable=True)
        return self._outcome("restore", "applied", message_id=message.id)

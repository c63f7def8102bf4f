"""
Bounded per-session memory store.

Holds each session's MemoryEntry list (creation order), its rolling summary and
its tool event log. Reads hand out copies so callers can score without holding
the session lock; metadata computed on those copies comes back through
write_back(). The entry count never exceeds max_entries after an insert.
"""

import itertools
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Sequence

from .errors import EmbeddingDimensionMismatch, StoreCorrupt
from .events import ToolEventLog
from .locks import SessionLocks
from .models import MemoryEntry, MemorySummary, Tier, ToolEvent, ToolEventKind, now_ms
from .persistence import MemoryPersistence
from .tiering import TierChanges, select_evictions

logger = logging.getLogger(__name__)


@dataclass
class _SessionMemory:
    entries: list[MemoryEntry] = field(default_factory=list)
    summary: str = ""
    summary_token_count: int = 0
    events: ToolEventLog = field(default_factory=ToolEventLog)

    def to_payload(self) -> dict:
        return {
            "memorySummary": self.summary,
            "memorySummaryTokenCount": self.summary_token_count,
            "memoryEmbeddings": [e.to_dict() for e in self.entries],
            "memoryToolEvents": [e.to_dict() for e in self.events.list()],
        }

    @classmethod
    def from_payload(cls, session_id: str, payload) -> "_SessionMemory":
        if not isinstance(payload, dict):
            raise StoreCorrupt(session_id, f"expected an object, got {type(payload).__name__}")
        try:
            entries = [MemoryEntry.from_dict(item) for item in payload.get("memoryEmbeddings") or []]
            events = [ToolEvent.from_dict(item) for item in payload.get("memoryToolEvents") or []]
            summary = str(payload.get("memorySummary") or "")
            summary_tokens = int(payload.get("memorySummaryTokenCount") or 0)
        except (KeyError, TypeError, ValueError) as e:
            raise StoreCorrupt(session_id, str(e)) from e

        if len({e.dimension for e in entries}) > 1:
            raise StoreCorrupt(session_id, "mixed embedding dimensions")
        if any(e.session_id != session_id for e in entries):
            raise StoreCorrupt(session_id, "entry belongs to another session")

        return cls(
            entries=entries,
            summary=summary,
            summary_token_count=summary_tokens,
            events=ToolEventLog(events),
        )


class MemoryStore:
    def __init__(
        self,
        persistence: Optional[MemoryPersistence] = None,
        locks: Optional[SessionLocks] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self._persistence = persistence
        self.locks = locks or SessionLocks()
        self._clock = clock
        self._sessions: dict[str, _SessionMemory] = {}
        self._epochs: dict[str, int] = {}
        # Epochs are never reused, so a deleted session can drop its entry
        self._epoch_counter = itertools.count(1)

    # ── Internal ──

    def _session(self, session_id: str) -> _SessionMemory:
        """Session record, loading it from persistence on first access. Caller holds the lock."""
        memory = self._sessions.get(session_id)
        if memory is not None:
            return memory

        memory = _SessionMemory()
        if self._persistence is not None:
            payload = self._persistence.load(session_id)
            if payload is not None:
                try:
                    memory = _SessionMemory.from_payload(session_id, payload)
                except StoreCorrupt as e:
                    logger.warning("%s; resetting session memory", e)
                    memory = _SessionMemory()
                    self._log(memory, ToolEventKind.FAILED, detail=f"store corrupt: {e.reason}")
                    self._persistence.save(session_id, memory.to_payload())
        self._sessions[session_id] = memory
        return memory

    def _save(self, session_id: str, memory: _SessionMemory):
        if self._persistence is not None:
            self._persistence.save(session_id, memory.to_payload())

    def _log(
        self,
        memory: _SessionMemory,
        kind: ToolEventKind,
        entry_ids: Iterable[str] = (),
        detail: str = "",
    ) -> ToolEvent:
        return memory.events.append(kind, entry_ids, detail, timestamp_ms=self._clock())

    # ── Reads ──

    def all(self, session_id: str) -> list[MemoryEntry]:
        """Copies of the session's entries in creation order."""
        with self.locks.hold(session_id):
            return [e.snapshot() for e in self._session(session_id).entries]

    def count(self, session_id: str) -> int:
        with self.locks.hold(session_id):
            return len(self._session(session_id).entries)

    def get(self, session_id: str) -> MemorySummary:
        with self.locks.hold(session_id):
            memory = self._session(session_id)
            return MemorySummary(
                session_id=session_id,
                summary=memory.summary,
                summary_token_count=memory.summary_token_count,
                entries=[e.snapshot() for e in memory.entries],
                events=memory.events.list(),
            )

    def epoch(self, session_id: str) -> int:
        with self.locks.hold(session_id):
            epoch = self._epochs.get(session_id)
            if epoch is None:
                epoch = self._epochs[session_id] = next(self._epoch_counter)
            return epoch

    # ── Mutations ──

    def insert(self, entry: MemoryEntry, max_entries: int) -> list[MemoryEntry]:
        """
        Add an entry, then evict down to max_entries.

        Returns the evicted entries (possibly including the new one if it
        scores lowest).
        """
        session_id = entry.session_id
        with self.locks.hold(session_id):
            memory = self._session(session_id)
            if memory.entries and memory.entries[0].dimension != entry.dimension:
                raise EmbeddingDimensionMismatch(memory.entries[0].dimension, entry.dimension)

            memory.entries.append(entry)
            evicted = select_evictions(memory.entries, max_entries)
            if evicted:
                gone = {e.id for e in evicted}
                memory.entries = [e for e in memory.entries if e.id not in gone]
                for e in evicted:
                    self._log(
                        memory,
                        ToolEventKind.EVICTED,
                        [e.id],
                        f"score={e.decay_score:.3f} over max_entries={max_entries}",
                    )
                logger.info(
                    "Evicted %d memories from session %s (max_entries=%d)",
                    len(evicted), session_id, max_entries,
                )
            self._save(session_id, memory)
            return evicted

    def remove(self, session_id: str, ids: Iterable[str]) -> list[MemoryEntry]:
        wanted = set(ids)
        with self.locks.hold(session_id):
            memory = self._session(session_id)
            removed = [e for e in memory.entries if e.id in wanted]
            if removed:
                memory.entries = [e for e in memory.entries if e.id not in wanted]
                self._save(session_id, memory)
            return removed

    def write_back(self, session_id: str, scored: Sequence[MemoryEntry]) -> TierChanges:
        """
        Copy decay/tier/access metadata from scored copies onto live entries.

        Entries evicted or reset since the copy was taken are skipped. Tier
        moves are logged as DEMOTED/PROMOTED events.
        """
        by_id = {e.id: e for e in scored}
        changes = TierChanges()
        with self.locks.hold(session_id):
            memory = self._session(session_id)
            for live in memory.entries:
                copy = by_id.get(live.id)
                if copy is None:
                    continue
                if copy.tier != live.tier:
                    if copy.tier is Tier.COLD:
                        changes.demoted.append(live.id)
                    else:
                        changes.promoted.append(live.id)
                live.decay_score = copy.decay_score
                live.tier = copy.tier
                live.last_accessed_ms = max(live.last_accessed_ms, copy.last_accessed_ms)
                live.access_count = max(live.access_count, copy.access_count)

            for entry_id in changes.demoted:
                self._log(memory, ToolEventKind.DEMOTED, [entry_id], "decay score below cold threshold")
            for entry_id in changes.promoted:
                self._log(memory, ToolEventKind.PROMOTED, [entry_id], "decay score back above cold threshold")
            self._save(session_id, memory)
        return changes

    def set_summary(self, session_id: str, summary: str, token_count: int):
        with self.locks.hold(session_id):
            memory = self._session(session_id)
            memory.summary = summary
            memory.summary_token_count = token_count
            self._save(session_id, memory)

    def append_event(
        self,
        session_id: str,
        kind: ToolEventKind,
        entry_ids: Iterable[str] = (),
        detail: str = "",
    ) -> ToolEvent:
        with self.locks.hold(session_id):
            memory = self._session(session_id)
            event = self._log(memory, kind, entry_ids, detail)
            self._save(session_id, memory)
            return event

    def set_pinned(self, session_id: str, entry_id: str, pinned: bool) -> bool:
        with self.locks.hold(session_id):
            memory = self._session(session_id)
            for entry in memory.entries:
                if entry.id == entry_id:
                    entry.is_pinned = pinned
                    if pinned and entry.tier is Tier.COLD:
                        entry.tier = Tier.HOT
                        self._log(memory, ToolEventKind.PROMOTED, [entry_id], "pinned")
                    self._save(session_id, memory)
                    return True
            return False

    def reset(self, session_id: str):
        """Clear entries, summary and events; in-flight cycles become stale."""
        with self.locks.hold(session_id):
            self._sessions[session_id] = _SessionMemory()
            self._epochs[session_id] = next(self._epoch_counter)
            self._save(session_id, self._sessions[session_id])

    def delete_session(self, session_id: str):
        with self.locks.hold(session_id):
            self._sessions.pop(session_id, None)
            self._epochs.pop(session_id, None)
            if self._persistence is not None:
                self._persistence.delete(session_id)

"""
Dynamic memory engine.

The surface the chat pipeline talks to:

- on_turn_recorded(): buffer a turn; every summary_message_interval turns,
  summarize the window into a new MemoryEntry
- build_context_block(): pick the memories worth replaying for the next
  prompt, within hot_memory_token_budget, and render them
- reset_memory() / delete_session(): clear a session

Concurrency: every mutation for a session runs under that session's lock.
Provider calls (summarize, embed) run outside it; the lock is taken again only
to commit the result. If the session was reset or deleted meanwhile, the
session epoch has moved on and the result is dropped.

Nothing here raises into the chat turn. Failures are logged, recorded as
FAILED tool events, and the prompt simply gets no memory context.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

import numpy as np

from .config import DynamicMemoryConfig, resolve_config
from .errors import EmbeddingDimensionMismatch
from .ingestion import IngestionBuffer, SummarizationRequest
from .models import MemoryEntry, ToolEventKind, as_embedding, now_ms
from .persistence import MemoryPersistence
from .scoring import cosine_similarity, rescore, score_entry
from .selector import (
    render_memories_for_prompt,
    search_cold_by_keyword,
    select_within_budget,
)
from .store import MemoryStore
from .summarizer import MemorySummarizer
from .tiering import reclassify, target_tier
from .token_budget import estimate_entry_tokens, estimate_tokens, total_tokens

logger = logging.getLogger(__name__)

# base_similarity for entries created before the session has seen any query
NEUTRAL_BASE_SIMILARITY = 0.5


@dataclass(frozen=True)
class ContextBlock:
    text: str = ""
    token_count: int = 0
    entry_ids: tuple[str, ...] = ()


class DynamicMemoryEngine:
    """
    Per-session summarized memory with decay, tiering and budgeted recall.

    Usage:
        engine = DynamicMemoryEngine(config, MemorySummarizer(llm, embeddings))
        engine.on_turn_recorded(session_id, HumanMessage(content="..."))
        block = engine.build_context_block(session_id, query_text="...")
    """

    def __init__(
        self,
        config: Optional[DynamicMemoryConfig] = None,
        summarizer: Optional[MemorySummarizer] = None,
        store: Optional[MemoryStore] = None,
        persistence: Optional[MemoryPersistence] = None,
        executor=None,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config or DynamicMemoryConfig()
        self.summarizer = summarizer or MemorySummarizer()
        self.store = store or MemoryStore(persistence=persistence, clock=clock)
        self.locks = self.store.locks
        self.buffer = IngestionBuffer(self.locks)
        self._executor = executor
        self._clock = clock
        self._overrides: dict[str, DynamicMemoryConfig] = {}
        self._last_query: dict[str, np.ndarray] = {}

    # ── Configuration ──

    def config_for(self, session_id: str) -> DynamicMemoryConfig:
        return resolve_config(self.config, self._overrides.get(session_id))

    def configure_session(self, session_id: str, config: Optional[DynamicMemoryConfig]):
        """Use a dedicated config for one session; None restores the global one."""
        if config is None:
            self._overrides.pop(session_id, None)
        else:
            self._overrides[session_id] = config

    # ── Ingestion ──

    def on_turn_recorded(self, session_id: str, turn: Any) -> bool:
        """Record a chat turn. Returns True if it started a summarization cycle."""
        config = self.config_for(session_id)
        if not config.enabled:
            return False
        try:
            with self.locks.hold(session_id):
                request = self.buffer.record_turn(
                    session_id, turn, config, epoch=self.store.epoch(session_id)
                )
        except Exception as e:
            logger.exception("Failed to record turn for session %s", session_id)
            self._record_failure(session_id, f"record turn failed: {e}")
            return False
        if request is None:
            return False
        self._dispatch(request)
        return True

    def flush(self, session_id: str) -> bool:
        """Summarize whatever is buffered now, without waiting for the interval."""
        if not self.config_for(session_id).enabled:
            return False
        with self.locks.hold(session_id):
            request = self.buffer.flush(session_id, epoch=self.store.epoch(session_id))
        if request is None:
            return False
        self._dispatch(request)
        return True

    def _dispatch(self, request: SummarizationRequest):
        if self._executor is not None:
            self._executor.submit(self._run_cycles, request)
        else:
            self._run_cycles(request)

    def _run_cycles(self, request: Optional[SummarizationRequest]):
        while request is not None:
            try:
                request = self._run_cycle(request)
            except Exception as e:
                logger.exception("Memory cycle crashed for session %s", request.session_id)
                self._record_failure(request.session_id, f"memory cycle crashed: {e}")
                request = self.buffer.complete(
                    request, False, self.config_for(request.session_id), epoch=request.epoch
                )

    def _run_cycle(self, request: SummarizationRequest) -> Optional[SummarizationRequest]:
        session_id = request.session_id
        config = self.config_for(session_id)
        logger.info(
            "Summarizing %d turns for session %s (cycle %d)",
            len(request.turns), session_id, request.sequence,
        )

        # Provider I/O happens without the session lock
        try:
            summary = self.summarizer.summarize(request.turns)
            embedding = self.summarizer.embed(summary)
        except Exception as e:
            logger.warning("Summarization failed for session %s: %s", session_id, e)
            with self.locks.hold(session_id):
                if self.store.epoch(session_id) != request.epoch:
                    return None
                self.store.append_event(
                    session_id,
                    ToolEventKind.FAILED,
                    detail=f"summarization failed, {len(request.turns)} turns kept: {e}",
                )
                return self.buffer.complete(request, False, config, epoch=request.epoch)

        with self.locks.hold(session_id):
            if self.store.epoch(session_id) != request.epoch:
                logger.info(
                    "Session %s was reset during summarization; dropping result", session_id
                )
                return None
            try:
                self._commit(session_id, summary, embedding, config)
            except EmbeddingDimensionMismatch as e:
                # Retrying the same window cannot fix a provider dimension change
                logger.warning("Dropping memory for session %s: %s", session_id, e)
                self.store.append_event(session_id, ToolEventKind.FAILED, detail=str(e))
            return self.buffer.complete(request, True, config, epoch=request.epoch)

    def _commit(
        self,
        session_id: str,
        summary: str,
        embedding: np.ndarray,
        config: DynamicMemoryConfig,
    ) -> MemoryEntry:
        """Insert a fresh summary entry and refresh every score. Caller holds the lock."""
        now = self._clock()
        last_query = self._last_query.get(session_id)
        base = (
            cosine_similarity(embedding, last_query)
            if last_query is not None
            else NEUTRAL_BASE_SIMILARITY
        )
        entry = MemoryEntry.create(
            session_id,
            summary,
            embedding,
            estimate_entry_tokens(summary),
            created_at_ms=now,
            base_similarity=base,
        )
        entry.decay_score = score_entry(entry, now, config.decay_rate, last_query)
        entry.tier = target_tier(entry, config.cold_threshold)

        existing = self.store.all(session_id)
        rescore(existing, now, config.decay_rate, last_query)
        reclassify(existing, config.cold_threshold)
        self.store.write_back(session_id, existing)

        evicted = self.store.insert(entry, config.max_entries)
        self.store.set_summary(session_id, summary, estimate_tokens(summary))
        if all(e.id != entry.id for e in evicted):
            self.store.append_event(
                session_id,
                ToolEventKind.SUMMARIZED,
                [entry.id],
                f"{entry.token_count} tokens, tier={entry.tier.value}",
            )
        logger.info(
            "Stored memory %s for session %s (%d entries, %d evicted)",
            entry.id, session_id, self.store.count(session_id), len(evicted),
        )
        return entry

    # ── Retrieval ──

    def select(
        self,
        session_id: str,
        query_embedding=None,
        budget_tokens: Optional[int] = None,
    ) -> list[MemoryEntry]:
        """
        Best-value memories for a query, total token_count within the budget.

        Scores are recomputed against the query and written back along with
        tier moves and access tracking. Works on a copy of the entry list so
        ingestion is never blocked while scoring.
        """
        config = self.config_for(session_id)
        if not config.enabled:
            return []
        budget = config.hot_memory_token_budget if budget_tokens is None else budget_tokens
        query = as_embedding(query_embedding) if query_embedding is not None else None

        entries = self.store.all(session_id)
        if not entries:
            if query is not None:
                self._last_query[session_id] = query
            return []

        now = self._clock()
        similarities = rescore(entries, now, config.decay_rate, query)
        reclassify(entries, config.cold_threshold)
        selected = select_within_budget(
            entries, similarities, config.min_similarity_threshold, budget
        )
        self._mark_accessed(selected, now)

        with self.locks.hold(session_id):
            if query is not None:
                self._last_query[session_id] = query
            self.store.write_back(session_id, entries)
            if selected:
                self.store.append_event(
                    session_id,
                    ToolEventKind.RETRIEVED,
                    [e.id for e in selected],
                    f"{total_tokens(selected)}/{budget} tokens",
                )
        logger.debug(
            "Selected %d of %d memories for session %s (%d/%d tokens)",
            len(selected), len(entries), session_id, total_tokens(selected), budget,
        )
        return selected

    def build_context_block(
        self,
        session_id: str,
        query_embedding=None,
        query_text: Optional[str] = None,
    ) -> ContextBlock:
        """Render the selected memories as a prompt block. Empty on any failure."""
        config = self.config_for(session_id)
        if not config.enabled:
            return ContextBlock()
        try:
            if query_embedding is None and query_text and self.summarizer.can_embed:
                query_embedding = self.summarizer.try_embed(query_text)
            selected = self.select(session_id, query_embedding)
            if not selected and query_text and config.context_enrichment_enabled:
                selected = self._keyword_fallback(session_id, query_text, config)
        except Exception as e:
            logger.warning("Failed to build memory context for session %s: %s", session_id, e)
            self._record_failure(session_id, f"retrieval failed: {e}")
            return ContextBlock()

        text = render_memories_for_prompt(selected)
        return ContextBlock(
            text=text,
            token_count=estimate_tokens(text),
            entry_ids=tuple(e.id for e in selected),
        )

    def _keyword_fallback(
        self,
        session_id: str,
        query_text: str,
        config: DynamicMemoryConfig,
    ) -> list[MemoryEntry]:
        entries = self.store.all(session_id)
        found = search_cold_by_keyword(entries, query_text, config.hot_memory_token_budget)
        if not found:
            return []
        self._mark_accessed(found, self._clock())
        with self.locks.hold(session_id):
            self.store.write_back(session_id, found)
            self.store.append_event(
                session_id,
                ToolEventKind.RETRIEVED,
                [e.id for e in found],
                f"keyword match, {total_tokens(found)}/{config.hot_memory_token_budget} tokens",
            )
        logger.info("Found %d cold memories via keyword search for session %s", len(found), session_id)
        return found

    @staticmethod
    def _mark_accessed(entries: Sequence[MemoryEntry], now: int):
        for entry in entries:
            entry.last_accessed_ms = now
            entry.access_count += 1

    # ── Session management ──

    def pin(self, session_id: str, entry_id: str, pinned: bool = True) -> bool:
        """Pinned memories stay hot and are evicted last."""
        return self.store.set_pinned(session_id, entry_id, pinned)

    def reset_memory(self, session_id: str):
        """Clear all entries, the summary, events and buffered turns."""
        with self.locks.hold(session_id):
            self.store.reset(session_id)
            self.buffer.discard(session_id)
            self._last_query.pop(session_id, None)
        logger.info("Reset dynamic memory for session %s", session_id)

    def delete_session(self, session_id: str):
        with self.locks.hold(session_id):
            self.store.delete_session(session_id)
            self.buffer.discard(session_id)
            self._last_query.pop(session_id, None)
            self._overrides.pop(session_id, None)

    def session_view(self, session_id: str) -> dict:
        """memorySummary, memoryEmbeddings, memoryToolEvents, memorySummaryTokenCount."""
        return self.store.get(session_id).to_dict()

    def close(self):
        self.summarizer.close()

    def _record_failure(self, session_id: str, detail: str):
        try:
            self.store.append_event(session_id, ToolEventKind.FAILED, detail=detail)
        except Exception as e:
            logger.warning("Could not record memory failure for session %s: %s", session_id, e)

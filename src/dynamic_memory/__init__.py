"""
Dynamic conversation memory with decay, tiering and budgeted recall.

Every few turns a window of the chat is summarized into a memory entry with an
embedding. Entries are scored by a blend of recency and similarity to the
current query, split into hot and cold tiers, evicted lowest-score-first past
max_entries, and replayed into the prompt within a token budget:

- Ingestion: IngestionBuffer decides when a window is ready
- Storage: MemoryStore keeps a bounded list per session (PostgreSQL optional)
- Scoring: exp(-decay_rate * age_h) blended 50/50 with cosine similarity
- Retrieval: greedy selection under hot_memory_token_budget, with a keyword
  fallback over cold memories
"""

from .config import DynamicMemoryConfig, resolve_config
from .engine import ContextBlock, DynamicMemoryEngine
from .errors import (
    ConfigInvalid,
    DynamicMemoryError,
    EmbeddingDimensionMismatch,
    ProviderUnavailable,
    StoreCorrupt,
)
from .events import ToolEventLog
from .ingestion import IngestionBuffer, SummarizationRequest
from .middleware import DynamicMemoryMiddleware
from .models import MemoryEntry, MemorySummary, Tier, ToolEvent, ToolEventKind
from .persistence import MemoryPersistence, PostgresMemoryPersistence
from .scoring import cosine_similarity, score_entry
from .selector import render_memories_for_prompt, select_within_budget
from .store import MemoryStore
from .summarizer import MemorySummarizer
from .token_budget import estimate_message_tokens, estimate_tokens

__all__ = [
    "DynamicMemoryConfig",
    "resolve_config",
    "DynamicMemoryEngine",
    "ContextBlock",
    "DynamicMemoryMiddleware",
    "IngestionBuffer",
    "SummarizationRequest",
    "MemoryStore",
    "MemoryPersistence",
    "PostgresMemoryPersistence",
    "MemorySummarizer",
    "MemoryEntry",
    "MemorySummary",
    "Tier",
    "ToolEvent",
    "ToolEventKind",
    "ToolEventLog",
    "cosine_similarity",
    "score_entry",
    "select_within_budget",
    "render_memories_for_prompt",
    "estimate_tokens",
    "estimate_message_tokens",
    "DynamicMemoryError",
    "ProviderUnavailable",
    "StoreCorrupt",
    "ConfigInvalid",
    "EmbeddingDimensionMismatch",
]

"""
Shared test setup.

Puts src/ on sys.path so tests import dynamic_memory without an install, and
provides small builders for entries, providers and engines.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from dynamic_memory.config import DynamicMemoryConfig  # noqa: E402
from dynamic_memory.engine import DynamicMemoryEngine  # noqa: E402
from dynamic_memory.models import MemoryEntry, Tier  # noqa: E402
from dynamic_memory.summarizer import MemorySummarizer  # noqa: E402

HOUR_MS = 3_600_000


def make_entry(
    entry_id: str,
    score: float = 0.5,
    created_at_ms: int = 0,
    tokens: int = 10,
    embedding=(1.0, 0.0, 0.0),
    tier: Tier = Tier.HOT,
    session_id: str = "s1",
    base_similarity: float = 0.5,
    text: str = "",
    pinned: bool = False,
) -> MemoryEntry:
    return MemoryEntry(
        id=entry_id,
        session_id=session_id,
        text=text or f"memory {entry_id}",
        embedding=list(embedding),
        token_count=tokens,
        created_at_ms=created_at_ms,
        last_accessed_ms=created_at_ms,
        base_similarity=base_similarity,
        decay_score=score,
        tier=tier,
        is_pinned=pinned,
    )


@pytest.fixture
def mock_llm():
    llm = MagicMock()
    llm.invoke.return_value = MagicMock(content="summary text")
    return llm


@pytest.fixture
def mock_embeddings():
    embeddings = MagicMock()
    embeddings.embed_query.return_value = [1.0, 0.0, 0.0]
    return embeddings


@pytest.fixture
def clock():
    """Controllable clock: set clock.now to move time."""

    class _Clock:
        now = 0

        def __call__(self) -> int:
            return self.now

    return _Clock()


@pytest.fixture
def make_engine(mock_llm, mock_embeddings, clock):
    engines = []

    def _make(timeout_s: float = 5.0, executor=None, **config_kwargs) -> DynamicMemoryEngine:
        config_kwargs.setdefault("enabled", True)
        engine = DynamicMemoryEngine(
            config=DynamicMemoryConfig(**config_kwargs),
            summarizer=MemorySummarizer(
                llm=mock_llm, embedding_model=mock_embeddings, timeout_s=timeout_s
            ),
            executor=executor,
            clock=clock,
        )
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.close()

"""
Decay scoring.

Each entry's score blends how recent it is with how close it is to the query
driving the current cycle:

    recency    = exp(-decay_rate * age_hours)
    relevance  = cosine(entry.embedding, query)   (base_similarity if no query)
    decay      = clamp(0.5 * recency + 0.5 * relevance, 0, 1)

Scores are recomputed lazily whenever a cycle runs (commit or select); nothing
ticks in the background.
"""

import math
from typing import Iterable, Optional

import numpy as np

from .models import MemoryEntry

MS_PER_HOUR = 3_600_000
RECENCY_WEIGHT = 0.5
RELEVANCE_WEIGHT = 0.5


def cosine_similarity(a, b) -> float:
    a_arr = np.asarray(a, dtype=np.float32)
    b_arr = np.asarray(b, dtype=np.float32)
    if a_arr.shape != b_arr.shape or a_arr.size == 0:
        return 0.0
    norm_a = np.linalg.norm(a_arr)
    norm_b = np.linalg.norm(b_arr)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a_arr, b_arr) / (norm_a * norm_b))


def recency(created_at_ms: int, now_ms: int, decay_rate: float) -> float:
    if decay_rate == 0:
        return 1.0
    age_h = max(now_ms - created_at_ms, 0) / MS_PER_HOUR
    return math.exp(-decay_rate * age_h)


def decay_score(recency_value: float, relevance: float) -> float:
    score = recency_value * RECENCY_WEIGHT + relevance * RELEVANCE_WEIGHT
    return min(max(score, 0.0), 1.0)


def relevance_of(entry: MemoryEntry, query_embedding: Optional[np.ndarray]) -> float:
    if query_embedding is None:
        return entry.base_similarity
    return cosine_similarity(entry.embedding, query_embedding)


def score_entry(
    entry: MemoryEntry,
    now_ms: int,
    decay_rate: float,
    query_embedding: Optional[np.ndarray] = None,
) -> float:
    """Pure score for one entry; does not touch the entry."""
    return decay_score(
        recency(entry.created_at_ms, now_ms, decay_rate),
        relevance_of(entry, query_embedding),
    )


def rescore(
    entries: Iterable[MemoryEntry],
    now_ms: int,
    decay_rate: float,
    query_embedding: Optional[np.ndarray] = None,
) -> dict[str, float]:
    """
    Recompute decay_score on every entry in place.

    Returns the query similarity per entry id (base_similarity when there is
    no query), which the selector needs for its threshold check.
    """
    similarities: dict[str, float] = {}
    for entry in entries:
        relevance = relevance_of(entry, query_embedding)
        similarities[entry.id] = relevance
        entry.decay_score = decay_score(
            recency(entry.created_at_ms, now_ms, decay_rate), relevance
        )
    return similarities

"""
Budgeted retrieval.

Given freshly scored entries, pick the subset injected into the next prompt:

  1. drop entries that are Cold *and* below min_similarity to the query
     (a Cold entry that is still similar stays eligible)
  2. order by decay score desc, newest first on ties
  3. greedily take entries while they fit the token budget, skipping any
     entry that would overflow and trying the smaller ones after it

Greedy packing is O(n log n) and not knapsack-optimal; the budget is a hard
ceiling either way.

When nothing qualifies semantically, cold memories can still be found by
keyword overlap with the query text.
"""

import re
from typing import Mapping, Sequence

from .models import MemoryEntry, Tier

MIN_KEYWORD_LENGTH = 3

_NON_ALNUM = re.compile(r"[\W_]+")


def is_candidate(entry: MemoryEntry, similarity: float, min_similarity: float) -> bool:
    if entry.tier is Tier.HOT:
        return True
    return similarity >= min_similarity


def rank_key(entry: MemoryEntry):
    return (-entry.decay_score, -entry.created_at_ms)


def pack_within_budget(ranked: Sequence[MemoryEntry], budget_tokens: int) -> list[MemoryEntry]:
    """Take entries in order, skipping (not stopping at) any that would overflow."""
    if budget_tokens <= 0:
        return []
    selected: list[MemoryEntry] = []
    used = 0
    for entry in ranked:
        if used + entry.token_count > budget_tokens:
            continue
        selected.append(entry)
        used += entry.token_count
        if used == budget_tokens:
            break
    return selected


def select_within_budget(
    entries: Sequence[MemoryEntry],
    similarities: Mapping[str, float],
    min_similarity: float,
    budget_tokens: int,
) -> list[MemoryEntry]:
    if budget_tokens <= 0:
        return []
    candidates = [
        e for e in entries
        if is_candidate(e, similarities.get(e.id, e.base_similarity), min_similarity)
    ]
    candidates.sort(key=rank_key)
    return pack_within_budget(candidates, budget_tokens)


# ── Keyword fallback ──


def normalize_query_text(text: str) -> str:
    """Lowercase, collapse every run of non-alphanumerics to a single space."""
    return _NON_ALNUM.sub(" ", text.lower()).strip()


def extract_keywords(text: str) -> list[str]:
    seen: set[str] = set()
    keywords = []
    for word in normalize_query_text(text).split():
        if len(word) < MIN_KEYWORD_LENGTH or word in seen:
            continue
        seen.add(word)
        keywords.append(word)
    return keywords


def search_cold_by_keyword(
    entries: Sequence[MemoryEntry],
    query_text: str,
    budget_tokens: int,
) -> list[MemoryEntry]:
    """Cold entries sharing keywords with the query, most matches first, within budget."""
    keywords = extract_keywords(query_text)
    if not keywords or budget_tokens <= 0:
        return []

    matches: list[tuple[int, MemoryEntry]] = []
    for entry in entries:
        if entry.tier is not Tier.COLD:
            continue
        text = normalize_query_text(entry.text)
        count = sum(1 for kw in keywords if kw in text)
        if count:
            matches.append((count, entry))

    matches.sort(key=lambda m: (-m[0], -m[1].created_at_ms))
    return pack_within_budget([entry for _, entry in matches], budget_tokens)


# ── Rendering ──

MEMORY_BLOCK_HEADER = "[Relevant Memories]"


def render_memories_for_prompt(memories: Sequence[MemoryEntry]) -> str:
    if not memories:
        return ""
    lines = [MEMORY_BLOCK_HEADER]
    for memory in memories:
        lines.append(f"- {memory.text}")
    return "\n".join(lines)

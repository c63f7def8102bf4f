"""
Hot/cold tiering and eviction.

An entry is Hot while its decay score is at or above cold_threshold and Cold
below it; it can move back and forth freely. Pinned entries stay Hot.
Eviction removes only the overflow beyond max_entries, lowest score first.
"""

from dataclasses import dataclass, field
from typing import Sequence

from .models import MemoryEntry, Tier


@dataclass
class TierChanges:
    demoted: list[str] = field(default_factory=list)
    promoted: list[str] = field(default_factory=list)


def target_tier(entry: MemoryEntry, cold_threshold: float) -> Tier:
    if entry.is_pinned:
        return Tier.HOT
    return Tier.COLD if entry.decay_score < cold_threshold else Tier.HOT


def reclassify(entries: Sequence[MemoryEntry], cold_threshold: float) -> TierChanges:
    """Move entries between tiers in place and report which ones moved."""
    changes = TierChanges()
    for entry in entries:
        new_tier = target_tier(entry, cold_threshold)
        if new_tier == entry.tier:
            continue
        if new_tier is Tier.COLD:
            changes.demoted.append(entry.id)
        elif new_tier is Tier.HOT:
            changes.promoted.append(entry.id)
        else:
            raise ValueError(f"unknown tier {new_tier!r}")
        entry.tier = new_tier
    return changes


def eviction_order_key(entry: MemoryEntry):
    # Unpinned first, then lowest score, then oldest, then id for determinism
    return (entry.is_pinned, entry.decay_score, entry.created_at_ms, entry.id)


def select_evictions(entries: Sequence[MemoryEntry], max_entries: int) -> list[MemoryEntry]:
    """Entries to remove so that at most max_entries remain. Never more."""
    overflow = len(entries) - max_entries
    if overflow <= 0:
        return []
    return sorted(entries, key=eviction_order_key)[:overflow]

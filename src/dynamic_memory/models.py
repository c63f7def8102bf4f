"""Memory entry, tool event and summary data models"""

import copy
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np


def now_ms() -> int:
    return int(time.time() * 1000)


class Tier(str, Enum):
    HOT = "hot"
    COLD = "cold"


class ToolEventKind(str, Enum):
    SUMMARIZED = "summarized"
    EVICTED = "evicted"
    RETRIEVED = "retrieved"
    DEMOTED = "demoted"
    PROMOTED = "promoted"
    FAILED = "failed"


def as_embedding(values) -> np.ndarray:
    """Copy values into a read-only float32 vector."""
    arr = np.array(values, dtype=np.float32).reshape(-1)
    arr.flags.writeable = False
    return arr


@dataclass(eq=False)
class MemoryEntry:
    id: str
    session_id: str
    text: str
    embedding: np.ndarray
    token_count: int
    created_at_ms: int
    last_accessed_ms: int
    base_similarity: float = 0.0
    decay_score: float = 0.0
    tier: Tier = Tier.HOT
    access_count: int = 0
    is_pinned: bool = False

    def __post_init__(self):
        object.__setattr__(self, "embedding", as_embedding(self.embedding))
        if self.token_count <= 0:
            raise ValueError(f"token_count must be positive, got {self.token_count}")

    def __setattr__(self, name, value):
        # Content is append-only: text and embedding are fixed once set
        if name in ("text", "embedding") and name in self.__dict__:
            raise AttributeError(f"MemoryEntry.{name} is immutable")
        super().__setattr__(name, value)

    @classmethod
    def create(
        cls,
        session_id: str,
        text: str,
        embedding,
        token_count: int,
        created_at_ms: Optional[int] = None,
        base_similarity: float = 0.0,
    ) -> "MemoryEntry":
        created = created_at_ms if created_at_ms is not None else now_ms()
        return cls(
            id=str(uuid.uuid4()),
            session_id=session_id,
            text=text,
            embedding=embedding,
            token_count=token_count,
            created_at_ms=created,
            last_accessed_ms=created,
            base_similarity=min(max(base_similarity, 0.0), 1.0),
        )

    @property
    def dimension(self) -> int:
        return int(self.embedding.shape[0])

    def snapshot(self) -> "MemoryEntry":
        """Shallow copy sharing the read-only embedding."""
        return copy.copy(self)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "text": self.text,
            "embedding": self.embedding.tolist(),
            "tokenCount": self.token_count,
            "createdAtMs": self.created_at_ms,
            "lastAccessedMs": self.last_accessed_ms,
            "accessCount": self.access_count,
            "baseSimilarity": self.base_similarity,
            "decayScore": self.decay_score,
            "tier": self.tier.value,
            "isPinned": self.is_pinned,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MemoryEntry":
        return cls(
            id=data["id"],
            session_id=data["sessionId"],
            text=data["text"],
            embedding=data["embedding"],
            token_count=int(data["tokenCount"]),
            created_at_ms=int(data["createdAtMs"]),
            last_accessed_ms=int(data.get("lastAccessedMs", data["createdAtMs"])),
            base_similarity=float(data.get("baseSimilarity", 0.0)),
            decay_score=float(data.get("decayScore", 0.0)),
            tier=Tier(data.get("tier", Tier.HOT.value)),
            access_count=int(data.get("accessCount", 0)),
            is_pinned=bool(data.get("isPinned", False)),
        )


@dataclass(frozen=True)
class ToolEvent:
    timestamp_ms: int
    kind: ToolEventKind
    entry_ids: tuple[str, ...] = ()
    detail: str = ""

    def to_dict(self) -> dict:
        return {
            "timestampMs": self.timestamp_ms,
            "kind": self.kind.value,
            "entryIds": list(self.entry_ids),
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ToolEvent":
        return cls(
            timestamp_ms=int(data["timestampMs"]),
            kind=ToolEventKind(data["kind"]),
            entry_ids=tuple(data.get("entryIds", [])),
            detail=data.get("detail", ""),
        )


@dataclass
class MemorySummary:
    """Read-only view of one session's memory, as shown to the UI."""

    session_id: str
    summary: str = ""
    summary_token_count: int = 0
    entries: list[MemoryEntry] = field(default_factory=list)
    events: list[ToolEvent] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "memorySummary": self.summary,
            "memorySummaryTokenCount": self.summary_token_count,
            "memoryEmbeddings": [e.to_dict() for e in self.entries],
            "memoryToolEvents": [e.to_dict() for e in self.events],
        }

"""Capped, append-only log of memory actions shown to the UI as tool events."""

import logging
from collections import deque
from typing import Iterable, Optional

from .models import ToolEvent, ToolEventKind, now_ms

logger = logging.getLogger(__name__)

MAX_TOOL_EVENTS = 50


class ToolEventLog:
    def __init__(self, events: Optional[Iterable[ToolEvent]] = None, cap: int = MAX_TOOL_EVENTS):
        self._events: deque[ToolEvent] = deque(events or (), maxlen=cap)

    def append(
        self,
        kind: ToolEventKind,
        entry_ids: Iterable[str] = (),
        detail: str = "",
        timestamp_ms: Optional[int] = None,
    ) -> ToolEvent:
        event = ToolEvent(
            timestamp_ms=timestamp_ms if timestamp_ms is not None else now_ms(),
            kind=kind,
            entry_ids=tuple(entry_ids),
            detail=detail,
        )
        self._events.append(event)
        logger.debug("memory event %s %s %s", kind.value, list(event.entry_ids), detail)
        return event

    def list(self) -> list[ToolEvent]:
        return list(self._events)

    def clear(self):
        self._events.clear()

    def __len__(self) -> int:
        return len(self._events)

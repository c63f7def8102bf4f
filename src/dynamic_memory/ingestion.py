"""
Ingestion buffer.

Collects chat turns per session and decides when a summarization cycle fires:
every summary_message_interval recorded turns produce exactly one request.

While a request is in flight for a session, reaching the next boundary defers
the new request instead of starting a second summarization; it is handed out
by complete() once the first one finishes. A failed request keeps its turns,
so the next window retries them together with the new ones.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from .config import DynamicMemoryConfig
from .locks import SessionLocks

logger = logging.getLogger(__name__)

# Unsummarized turns kept across failures, in multiples of the interval
MAX_RETAINED_WINDOWS = 5


@dataclass(frozen=True)
class SummarizationRequest:
    session_id: str
    sequence: int
    epoch: int
    turns: tuple[Any, ...]


@dataclass
class _SessionBuffer:
    pending: list[Any] = field(default_factory=list)
    counter: int = 0
    sequence: int = 0
    in_flight: Optional[SummarizationRequest] = None
    deferred: bool = False


class IngestionBuffer:
    def __init__(self, locks: Optional[SessionLocks] = None):
        self.locks = locks or SessionLocks()
        self._buffers: dict[str, _SessionBuffer] = {}
        self._guard = threading.Lock()

    def _buffer(self, session_id: str) -> _SessionBuffer:
        with self._guard:
            buf = self._buffers.get(session_id)
            if buf is None:
                buf = _SessionBuffer()
                self._buffers[session_id] = buf
            return buf

    def record_turn(
        self,
        session_id: str,
        turn: Any,
        config: DynamicMemoryConfig,
        epoch: int = 0,
    ) -> Optional[SummarizationRequest]:
        """Buffer a turn; return a request when this turn closes an interval."""
        if not config.enabled:
            return None

        interval = config.summary_message_interval
        with self.locks.hold(session_id):
            buf = self._buffer(session_id)
            buf.pending.append(turn)
            self._cap_pending(session_id, buf, interval)
            buf.counter += 1
            if buf.counter < interval:
                return None

            buf.counter = 0
            if buf.in_flight is not None:
                buf.deferred = True
                logger.debug(
                    "Summarization for session %s already in flight; deferring window",
                    session_id,
                )
                return None
            return self._issue(session_id, buf, interval, epoch)

    def complete(
        self,
        request: SummarizationRequest,
        success: bool,
        config: DynamicMemoryConfig,
        epoch: int = 0,
    ) -> Optional[SummarizationRequest]:
        """
        Finish an in-flight request.

        On success its turns leave the buffer; on failure they stay for the
        next window. Returns a deferred request if one is now due.
        """
        session_id = request.session_id
        with self.locks.hold(session_id):
            buf = self._buffer(session_id)
            if buf.in_flight is None or buf.in_flight.sequence != request.sequence:
                return None
            buf.in_flight = None

            if success:
                # In-flight turns always sit at the front of the buffer
                del buf.pending[: len(request.turns)]

            if not buf.deferred:
                return None
            buf.deferred = False
            if not config.enabled:
                return None
            return self._issue(session_id, buf, config.summary_message_interval, epoch)

    def flush(self, session_id: str, epoch: int = 0) -> Optional[SummarizationRequest]:
        """Request a summary of everything buffered now, regardless of the counter."""
        with self.locks.hold(session_id):
            buf = self._buffer(session_id)
            if buf.in_flight is not None or not buf.pending:
                return None
            buf.counter = 0
            return self._issue(session_id, buf, len(buf.pending), epoch)

    def discard(self, session_id: str):
        with self.locks.hold(session_id):
            with self._guard:
                self._buffers.pop(session_id, None)

    def pending_count(self, session_id: str) -> int:
        with self.locks.hold(session_id):
            return len(self._buffer(session_id).pending)

    def in_flight(self, session_id: str) -> bool:
        with self.locks.hold(session_id):
            return self._buffer(session_id).in_flight is not None

    def _issue(
        self,
        session_id: str,
        buf: _SessionBuffer,
        interval: int,
        epoch: int,
    ) -> Optional[SummarizationRequest]:
        # Turns counted toward the next boundary belong to the next window
        window = len(buf.pending) - buf.counter
        if window < interval:
            return None
        buf.sequence += 1
        request = SummarizationRequest(
            session_id=session_id,
            sequence=buf.sequence,
            epoch=epoch,
            turns=tuple(buf.pending[:window]),
        )
        buf.in_flight = request
        return request

    @staticmethod
    def _cap_pending(session_id: str, buf: _SessionBuffer, interval: int):
        limit = interval * MAX_RETAINED_WINDOWS
        # Never drop turns that belong to the request being summarized
        start = len(buf.in_flight.turns) if buf.in_flight is not None else 0
        overflow = len(buf.pending) - start - limit
        if overflow > 0:
            del buf.pending[start : start + overflow]
            logger.warning(
                "Dropped %d unsummarized turns for session %s (retention limit %d)",
                overflow, session_id, limit,
            )

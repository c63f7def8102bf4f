"""
Error taxonomy for the dynamic memory engine.

None of these reach the chat turn: the engine catches them at its entry points,
records a FAILED tool event and degrades to "no memory context".
"""


class DynamicMemoryError(Exception):
    """Base class for all dynamic memory failures."""


class ProviderUnavailable(DynamicMemoryError):
    """The summarization or embedding provider failed or timed out."""


class StoreCorrupt(DynamicMemoryError):
    """A persisted session record could not be deserialized."""

    def __init__(self, session_id: str, reason: str):
        super().__init__(f"memory record for session {session_id} is corrupt: {reason}")
        self.session_id = session_id
        self.reason = reason


class ConfigInvalid(DynamicMemoryError, ValueError):
    """A configuration value is out of range or of the wrong type."""


class EmbeddingDimensionMismatch(DynamicMemoryError, ValueError):
    """An entry's embedding dimension differs from the rest of its session."""

    def __init__(self, expected: int, got: int):
        super().__init__(f"expected embedding dimension {expected}, got {got}")
        self.expected = expected
        self.got = got

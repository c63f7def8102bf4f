"""
Dynamic memory configuration.

The surrounding app stores settings as a loose JSON object whose fields may be
missing or null. All defaulting and range checks happen here, once, so the rest
of the engine only ever sees a fully populated DynamicMemoryConfig.
"""

import logging
import math
import os
from dataclasses import asdict, dataclass
from typing import Any, Mapping, Optional

from .errors import ConfigInvalid

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY_MESSAGE_INTERVAL = 20
DEFAULT_MAX_ENTRIES = 50
DEFAULT_MIN_SIMILARITY = 0.35
DEFAULT_HOT_MEMORY_TOKEN_BUDGET = 2000
DEFAULT_DECAY_RATE = 0.08
DEFAULT_COLD_THRESHOLD = 0.3

# camelCase settings key -> (dataclass field, kind, lower bound, upper bound)
_NUMERIC_FIELDS: dict[str, tuple[str, type, float, Optional[float]]] = {
    "summaryMessageInterval": ("summary_message_interval", int, 1, None),
    "maxEntries": ("max_entries", int, 1, None),
    "minSimilarityThreshold": ("min_similarity_threshold", float, 0.0, 1.0),
    "hotMemoryTokenBudget": ("hot_memory_token_budget", int, 0, None),
    "decayRate": ("decay_rate", float, 0.0, 1.0),
    "coldThreshold": ("cold_threshold", float, 0.0, 1.0),
}

_BOOL_FIELDS: dict[str, str] = {
    "enabled": "enabled",
    "contextEnrichmentEnabled": "context_enrichment_enabled",
}


@dataclass(frozen=True)
class DynamicMemoryConfig:
    """Configuration for one memory cycle. Construction refuses invalid values."""

    enabled: bool = False
    summary_message_interval: int = DEFAULT_SUMMARY_MESSAGE_INTERVAL
    max_entries: int = DEFAULT_MAX_ENTRIES
    min_similarity_threshold: float = DEFAULT_MIN_SIMILARITY
    hot_memory_token_budget: int = DEFAULT_HOT_MEMORY_TOKEN_BUDGET
    decay_rate: float = DEFAULT_DECAY_RATE
    cold_threshold: float = DEFAULT_COLD_THRESHOLD

    # Keyword search over cold memories when semantic retrieval finds nothing
    context_enrichment_enabled: bool = True

    def __post_init__(self):
        for _key, (name, kind, low, high) in _NUMERIC_FIELDS.items():
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigInvalid(f"{name} must be a number, got {value!r}")
            if not math.isfinite(value):
                raise ConfigInvalid(f"{name} must be finite, got {value!r}")
            if kind is int and not float(value).is_integer():
                raise ConfigInvalid(f"{name} must be an integer, got {value!r}")
            if value < low or (high is not None and value > high):
                bounds = f"[{low}, {high}]" if high is not None else f">= {low}"
                raise ConfigInvalid(f"{name} must be {bounds}, got {value!r}")
            if kind is int:
                object.__setattr__(self, name, int(value))

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "DynamicMemoryConfig":
        """
        Build a config from the persisted camelCase settings object.

        Missing or null fields take their defaults. Numeric values outside
        their range are clamped with a warning; values that are not numbers
        at all raise ConfigInvalid.
        """
        if not data:
            return cls()

        kwargs: dict[str, Any] = {}
        for key, name in _BOOL_FIELDS.items():
            value = data.get(key)
            if value is not None:
                kwargs[name] = _parse_bool(value)

        for key, (name, kind, low, high) in _NUMERIC_FIELDS.items():
            value = data.get(key)
            if value is None:
                continue
            kwargs[name] = _clamp_setting(key, value, kind, low, high)

        return cls(**kwargs)

    @classmethod
    def from_env(cls) -> "DynamicMemoryConfig":
        """Load configuration from DYNAMIC_MEMORY_* environment variables."""
        raw: dict[str, Any] = {
            "enabled": os.getenv("DYNAMIC_MEMORY_ENABLED", "false"),
            "contextEnrichmentEnabled": os.getenv("DYNAMIC_MEMORY_CONTEXT_ENRICHMENT", "true"),
        }
        env_names = {
            "summaryMessageInterval": "DYNAMIC_MEMORY_SUMMARY_INTERVAL",
            "maxEntries": "DYNAMIC_MEMORY_MAX_ENTRIES",
            "minSimilarityThreshold": "DYNAMIC_MEMORY_MIN_SIMILARITY",
            "hotMemoryTokenBudget": "DYNAMIC_MEMORY_HOT_TOKEN_BUDGET",
            "decayRate": "DYNAMIC_MEMORY_DECAY_RATE",
            "coldThreshold": "DYNAMIC_MEMORY_COLD_THRESHOLD",
        }
        for key, env_name in env_names.items():
            value = os.getenv(env_name)
            if value:
                raw[key] = value
        return cls.from_dict(raw)

    def to_dict(self) -> dict:
        """Serialize back to the camelCase settings shape."""
        values = asdict(self)
        out = {key: values[name] for key, name in _BOOL_FIELDS.items()}
        for key, (name, _kind, _low, _high) in _NUMERIC_FIELDS.items():
            out[key] = values[name]
        return out


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _clamp_setting(key: str, value: Any, kind: type, low: float, high: Optional[float]):
    if isinstance(value, bool):
        raise ConfigInvalid(f"{key} must be a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigInvalid(f"{key} must be a number, got {value!r}") from None
    if not math.isfinite(number):
        raise ConfigInvalid(f"{key} must be a finite number, got {value!r}")

    clamped = max(number, low)
    if high is not None:
        clamped = min(clamped, high)
    if clamped != number:
        logger.warning("Clamped dynamic memory setting %s from %s to %s", key, value, clamped)
    return int(clamped) if kind is int else clamped


def resolve_config(
    base: DynamicMemoryConfig,
    overrides: Optional[DynamicMemoryConfig] = None,
) -> DynamicMemoryConfig:
    """Effective config for a session: a per-session override wins outright."""
    return overrides if overrides is not None else base

"""
Summarization and embedding provider wrapper.

Turns a window of chat turns into one memory: a short summary produced by a
LangChain chat model and a vector produced by a LangChain Embeddings model.
Both calls run on a small worker pool with a deadline; any failure or timeout
surfaces as ProviderUnavailable and is never retried here.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Optional, Sequence

import numpy as np

from .condenser import turns_to_text
from .errors import ProviderUnavailable
from .models import as_embedding

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 60.0

SUMMARY_SYSTEM_PROMPT = """You maintain long-term memory for an ongoing conversation. Summarize the following conversation turns into a compact memory.
Focus on:
- Facts about the participants and the world of the conversation
- Decisions, promises and open threads
- Details likely to matter later

Output 1-4 plain sentences in the same language as the conversation. Do NOT use markdown headers or lists."""


def _response_text(response) -> str:
    content = response.content if hasattr(response, "content") else response
    if isinstance(content, list):
        content = "\n".join(
            block.get("text", "") if isinstance(block, dict) else str(block)
            for block in content
        )
    return str(content).strip()


class MemorySummarizer:
    """Wraps the injected chat model and embedding model."""

    def __init__(
        self,
        llm=None,
        embedding_model=None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        max_workers: int = 4,
    ):
        self._llm = llm
        self._embedding_model = embedding_model
        self.timeout_s = timeout_s
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="memory-provider"
        )

    @property
    def can_embed(self) -> bool:
        return self._embedding_model is not None

    def _call(self, what: str, fn, *args):
        future = self._pool.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout_s)
        except FutureTimeout:
            future.cancel()
            raise ProviderUnavailable(f"{what} timed out after {self.timeout_s}s") from None
        except ProviderUnavailable:
            raise
        except Exception as e:
            raise ProviderUnavailable(f"{what} failed: {e}") from e

    def summarize(self, turns: Sequence) -> str:
        """Summary text for a window of turns, oldest first."""
        if self._llm is None:
            raise ProviderUnavailable("no summarization model configured")
        conversation_text = turns_to_text(turns)
        if not conversation_text:
            raise ProviderUnavailable("window has no text to summarize")

        response = self._call(
            "summarization",
            self._llm.invoke,
            [
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": conversation_text},
            ],
        )
        summary = _response_text(response)
        if not summary:
            raise ProviderUnavailable("summarization returned empty text")
        return summary

    def embed(self, text: str) -> np.ndarray:
        if self._embedding_model is None:
            raise ProviderUnavailable("no embedding model configured")
        vector = self._call("embedding", self._embedding_model.embed_query, text)
        if vector is None or len(vector) == 0:
            raise ProviderUnavailable("embedding returned an empty vector")
        return as_embedding(vector)

    def try_embed(self, text: str) -> Optional[np.ndarray]:
        """Embed for retrieval; None instead of raising."""
        try:
            return self.embed(text)
        except ProviderUnavailable as e:
            logger.warning("Query embedding failed: %s", e)
            return None

    def close(self):
        self._pool.shutdown(wait=False, cancel_futures=True)

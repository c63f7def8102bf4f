"""
Dynamic memory middleware.

Sits between the chat history and the LLM call:

- record() forwards each finished turn to the engine for summarization
- apply() returns a new message list with a memory message injected right
  after the system messages, holding the rolling conversation summary and the
  memories selected for the latest user message

The full history is untouched; only what the LLM sees changes.
"""

import logging
from typing import Optional

from langchain_core.messages import HumanMessage, SystemMessage

from .engine import DynamicMemoryEngine
from .token_budget import message_text

logger = logging.getLogger(__name__)

MEMORY_MESSAGE_ID = "dynamic-memory"
SUMMARY_HEADER = "[Conversation Summary]"


class DynamicMemoryMiddleware:
    """
    Usage:
        middleware = DynamicMemoryMiddleware(engine)
        middleware.record(thread_id, HumanMessage(content="..."))
        prompt_messages = middleware.apply(messages, thread_id)
    """

    def __init__(self, engine: DynamicMemoryEngine, include_summary: bool = True):
        self.engine = engine
        self.include_summary = include_summary

    def record(self, thread_id: str, message) -> bool:
        if isinstance(message, SystemMessage) or getattr(message, "id", None) == MEMORY_MESSAGE_ID:
            return False
        return self.engine.on_turn_recorded(thread_id, message)

    def apply(self, messages: list, thread_id: str = "default") -> list:
        """Return messages with the memory message injected; the input is not modified."""
        if not messages or not self.engine.config_for(thread_id).enabled:
            return messages

        system_msgs = []
        conversation_msgs = []
        for msg in messages:
            if isinstance(msg, SystemMessage):
                system_msgs.append(msg)
            elif getattr(msg, "id", None) != MEMORY_MESSAGE_ID:
                conversation_msgs.append(msg)

        memory_msg = self._build_memory_message(thread_id, self._latest_query(conversation_msgs))
        if memory_msg is None:
            return [*system_msgs, *conversation_msgs]

        logger.debug("Injected dynamic memory for thread %s", thread_id)
        return [*system_msgs, memory_msg, *conversation_msgs]

    @staticmethod
    def _latest_query(conversation_msgs: list) -> Optional[str]:
        for msg in reversed(conversation_msgs):
            if isinstance(msg, HumanMessage):
                text = message_text(msg).strip()
                if text:
                    return text
        return None

    def _build_memory_message(self, thread_id: str, query: Optional[str]) -> Optional[HumanMessage]:
        parts = []
        if self.include_summary:
            summary = self.engine.store.get(thread_id).summary
            if summary:
                parts.append(f"{SUMMARY_HEADER}\n{summary}")

        block = self.engine.build_context_block(thread_id, query_text=query)
        if block.text:
            parts.append(block.text)

        if not parts:
            return None
        return HumanMessage(content="\n\n".join(parts), id=MEMORY_MESSAGE_ID)

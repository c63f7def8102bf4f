"""
Token estimation for memory entries and prompt blocks.

The engine never talks to a tokenizer; a cheap character-based estimate is
enough to keep injected memory under its budget.
"""

import json


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~3 chars per token for mixed CJK/English."""
    if not text:
        return 0
    return max(1, len(text) // 3)


def estimate_entry_tokens(text: str) -> int:
    """Token cost of a memory entry. Always positive, even for tiny texts."""
    return max(1, estimate_tokens(text))


def message_text(msg) -> str:
    """Plain text of a LangChain message, including thinking and tool input blocks."""
    content = getattr(msg, "content", "")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict):
                btype = block.get("type", "")
                if btype in ("tool_use", "tool_call"):
                    args = block.get("input") or block.get("args") or {}
                    parts.append(json.dumps(args, ensure_ascii=False))
                    continue
                text = (
                    block.get("text")
                    or block.get("thinking")
                    or block.get("reasoning")
                    or ""
                )
                if text:
                    parts.append(text)
        return "\n".join(parts)
    return str(content) if content else ""


def estimate_message_tokens(msg) -> int:
    """Estimate tokens for a LangChain message, with a little role overhead."""
    return estimate_tokens(message_text(msg)) + 4


def total_tokens(entries) -> int:
    return sum(e.token_count for e in entries)

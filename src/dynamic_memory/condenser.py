"""
Turn condenser.

Before a window of turns is sent to the summarizer, each turn is reduced to a
role-tagged line: thinking/reasoning blocks are dropped and long tool results
are truncated, so the summary prompt stays small.
"""

from langchain_core.messages import AIMessage, BaseMessage, ToolMessage

from .token_budget import message_text

DEFAULT_MAX_TOOL_CHARS = 200
DEFAULT_MAX_TURN_CHARS = 500

_ROLE_NAMES = {
    "human": "User",
    "user": "User",
    "ai": "Assistant",
    "assistant": "Assistant",
    "tool": "Tool",
    "system": "System",
}


def _strip_thinking(msg: AIMessage) -> str:
    content = msg.content
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict):
            if block.get("type") in ("thinking", "reasoning"):
                continue
            text = block.get("text") or ""
            if text:
                parts.append(text)
    return "\n".join(parts)


def _truncate(text: str, max_chars: int, marker: str) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + marker


def condense_turn(
    turn,
    max_tool_chars: int = DEFAULT_MAX_TOOL_CHARS,
    max_turn_chars: int = DEFAULT_MAX_TURN_CHARS,
) -> str:
    """
    Render one turn as "Role: text" for the summary prompt.

    Accepts LangChain messages, {"role": ..., "content": ...} dicts and plain
    strings. Returns "" for turns with no text.
    """
    if isinstance(turn, BaseMessage):
        role = _ROLE_NAMES.get(turn.type, turn.type.capitalize())
        if isinstance(turn, AIMessage):
            text = _strip_thinking(turn)
        elif isinstance(turn, ToolMessage):
            text = _truncate(message_text(turn), max_tool_chars, "\n... (truncated)")
        else:
            text = message_text(turn)
    elif isinstance(turn, dict):
        raw_role = str(turn.get("role", "user")).lower()
        role = _ROLE_NAMES.get(raw_role, raw_role.capitalize())
        content = turn.get("content", "")
        text = content if isinstance(content, str) else str(content)
        if raw_role == "tool":
            text = _truncate(text, max_tool_chars, "\n... (truncated)")
    else:
        role = "User"
        text = str(turn)

    text = text.strip()
    if not text:
        return ""
    return f"{role}: {_truncate(text, max_turn_chars, '...')}"


def turns_to_text(turns, max_tool_chars: int = DEFAULT_MAX_TOOL_CHARS) -> str:
    lines = [condense_turn(t, max_tool_chars=max_tool_chars) for t in turns]
    return "\n".join(line for line in lines if line)

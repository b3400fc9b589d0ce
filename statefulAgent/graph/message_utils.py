"""Utilities for reading and cleaning message histories."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional, Set

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, ToolMessage

_IMAGE_PART_TYPES = {"image", "image_url"}
_MEDIA_PART_TYPES = _IMAGE_PART_TYPES | {"audio", "input_audio", "file"}

# A reply that is nothing but a serialized tool call, e.g. {"name": "...", "arguments": {...}}
_FUNCTION_CALL_JSON = re.compile(r'^\s*\{\s*"(name|function|tool)"\s*:', re.DOTALL)


def extract_text_content(message: BaseMessage) -> str:
    """Concatenate the text parts of a message (string or list content)."""
    content = message.content
    if isinstance(content, str):
        return content
    parts: List[str] = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(str(part.get("text", "")))
    return "".join(parts)


def is_media_part(part: Any) -> bool:
    return isinstance(part, dict) and part.get("type") in _MEDIA_PART_TYPES


def has_image_content(message: BaseMessage) -> bool:
    content = message.content
    if not isinstance(content, list):
        return False
    return any(isinstance(part, dict) and part.get("type") in _IMAGE_PART_TYPES for part in content)


def has_media_content(message: BaseMessage) -> bool:
    content = message.content
    if not isinstance(content, list):
        return False
    return any(is_media_part(part) for part in content)


def is_function_call_json(text: str) -> bool:
    """True when a text reply is a tool call the provider failed to parse."""
    if not _FUNCTION_CALL_JSON.match(text or ""):
        return False
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


def last_human_index(messages: List[BaseMessage]) -> Optional[int]:
    for index in range(len(messages) - 1, -1, -1):
        if isinstance(messages[index], HumanMessage):
            return index
    return None


def any_images(messages: List[BaseMessage]) -> bool:
    return any(isinstance(m, HumanMessage) and has_image_content(m) for m in messages)


def canonical_args(args: Dict[str, Any]) -> str:
    """Stable string form of tool arguments, for duplicate detection."""
    return json.dumps(args or {}, sort_keys=True, ensure_ascii=False, default=str)


def tool_call_ids(message: AIMessage) -> List[str]:
    ids = []
    for tc in getattr(message, "tool_calls", None) or []:
        tc_id = tc.get("id") if isinstance(tc, dict) else getattr(tc, "id", None)
        if tc_id:
            ids.append(tc_id)
    return ids


def clean_message_history(messages: List[BaseMessage]) -> List[BaseMessage]:
    """Remove AI messages with unanswered tool_calls, and orphan ToolMessages.

    Providers require that every AI message with tool_calls is followed by
    the matching ToolMessages. A cancelled round can leave such gaps.

    Args:
        messages: List of conversation messages

    Returns:
        Cleaned list
    """
    answered_call_ids: Set[str] = {
        msg.tool_call_id for msg in messages
        if isinstance(msg, ToolMessage) and getattr(msg, "tool_call_id", None)
    }

    cleaned: List[BaseMessage] = []
    kept_call_ids: Set[str] = set()
    for msg in messages:
        if isinstance(msg, AIMessage):
            ids = tool_call_ids(msg)
            if any(tc_id not in answered_call_ids for tc_id in ids):
                continue
            kept_call_ids.update(ids)
        elif isinstance(msg, ToolMessage) and msg.tool_call_id not in kept_call_ids:
            continue
        cleaned.append(msg)

    return cleaned

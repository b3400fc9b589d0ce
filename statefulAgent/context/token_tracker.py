"""
Token 估算与用量提取

负责：
1. 按字符类别估算文本 token 数（偏保守，无需 tokenizer）
2. 估算消息列表的 token 数
3. 从 API 响应提取实际 token 使用量
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from langchain_core.messages import AIMessage, BaseMessage

from statefulAgent.graph.message_utils import is_media_part

logger = logging.getLogger("statefulAgent.context.tokens")

_CJK = re.compile(r"[\u4e00-\u9fff]")
_WORD = re.compile(r"[a-zA-Z]+")
_NUMBER = re.compile(r"\d+")
_ALNUM = re.compile(r"[a-zA-Z\d]")

# Role marker and framing per message
MESSAGE_OVERHEAD = 4

# Flat cost per image/audio/file part, independent of its encoded size
MEDIA_PART_TOKENS = 1_000


@dataclass
class TokenUsage:
    """单次 API 调用的 Token 使用情况"""
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    model_name: str


def estimate_tokens(text: str) -> int:
    """Conservative token estimate for mixed Chinese / English text.

    CJK characters count 1.8, English words 1.3, digit runs 0.5 and every
    other character 0.3.
    """
    if not text:
        return 0

    chinese_chars = len(_CJK.findall(text))
    english_words = len(_WORD.findall(text))
    numbers = len(_NUMBER.findall(text))
    others = len(text) - chinese_chars - len(_ALNUM.findall(text))

    tokens = math.ceil(chinese_chars * 1.8 + english_words * 1.3 + numbers * 0.5 + others * 0.3)
    return max(tokens, 1)


def estimate_content_tokens(content: Any) -> int:
    """Estimate string or multimodal list content; media parts cost MEDIA_PART_TOKENS each."""
    if isinstance(content, str):
        return estimate_tokens(content)
    total = 0
    for part in content or []:
        if isinstance(part, str):
            total += estimate_tokens(part)
        elif is_media_part(part):
            total += MEDIA_PART_TOKENS
        elif isinstance(part, dict) and part.get("type") == "text":
            total += estimate_tokens(str(part.get("text", "")))
        else:
            total += estimate_tokens(json.dumps(part, ensure_ascii=False, default=str))
    return total


def estimate_message_tokens(message: BaseMessage) -> int:
    total = MESSAGE_OVERHEAD + estimate_content_tokens(message.content)
    if isinstance(message, AIMessage):
        for tc in message.tool_calls or []:
            total += estimate_tokens(tc.get("name", ""))
            total += estimate_tokens(json.dumps(tc.get("args", {}), ensure_ascii=False, default=str))
    return total


def estimate_messages_tokens(messages: Iterable[BaseMessage]) -> int:
    return sum(estimate_message_tokens(m) for m in messages)


def extract_token_usage(response: AIMessage) -> Optional[TokenUsage]:
    """
    从 API 响应提取 token 使用量

    Args:
        response: LLM 返回的 AIMessage

    Returns:
        TokenUsage 对象，如果无法提取则返回 None
    """
    metadata = getattr(response, "response_metadata", None) or {}
    usage = metadata.get("token_usage") or metadata.get("usage")

    if not usage:
        usage_metadata = getattr(response, "usage_metadata", None)
        if not usage_metadata:
            logger.debug("No token usage found in response metadata")
            return None
        return TokenUsage(
            prompt_tokens=usage_metadata.get("input_tokens", 0),
            completion_tokens=usage_metadata.get("output_tokens", 0),
            total_tokens=usage_metadata.get("total_tokens", 0),
            model_name=metadata.get("model_name", "unknown"),
        )

    return TokenUsage(
        prompt_tokens=usage.get("prompt_tokens", 0),
        completion_tokens=usage.get("completion_tokens", 0),
        total_tokens=usage.get("total_tokens", 0),
        model_name=metadata.get("model_name", "unknown"),
    )

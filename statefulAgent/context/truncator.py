"""
上下文裁剪器

负责：
1. 保留全部 SystemMessage
2. 从最旧的对话消息开始丢弃，直到落入 token 预算
3. 丢弃过消息时插入一条裁剪说明
4. 保证 AIMessage 与其 ToolMessage 不被拆开
5. 始终保留最新一条用户消息（超长时截断文本，保留图片）
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage

from statefulAgent.graph.message_utils import is_media_part

from .token_tracker import estimate_message_tokens, estimate_messages_tokens

logger = logging.getLogger("statefulAgent.context.truncator")

TRIM_NOTE_ID = "context-trim-note"
MEDIA_OMITTED_NOTE = "[附件过大，已从上下文中省略]"


@dataclass
class ContextStats:
    """一次裁剪的统计结果"""
    original_count: int
    final_count: int
    estimated_tokens: int
    system_tokens: int
    conversation_tokens: int
    trimmed_count: int
    budget: int
    usage_percent: float

    @property
    def was_trimmed(self) -> bool:
        return self.trimmed_count > 0


def is_trim_note(message: BaseMessage) -> bool:
    return isinstance(message, SystemMessage) and message.id == TRIM_NOTE_ID


def build_trim_note(dropped: int, kept: int) -> SystemMessage:
    return SystemMessage(
        content=(
            f"[上下文提示：为保持对话长度在模型限制内，已省略前 {dropped} 条历史消息。"
            f"当前显示最近 {kept} 条消息。]"
        ),
        id=TRIM_NOTE_ID,
    )


def _latest_human_unit(units: List[List[BaseMessage]]) -> Optional[int]:
    for index in range(len(units) - 1, -1, -1):
        if units[index] and isinstance(units[index][0], HumanMessage):
            return index
    return None


def _group_units(messages: List[BaseMessage]) -> List[List[BaseMessage]]:
    """Split a conversation into units that must be kept or dropped together.

    An AIMessage with tool_calls forms one unit with the ToolMessages that
    answer it. ToolMessages whose AIMessage is gone become empty units and
    are always dropped.
    """
    units: List[List[BaseMessage]] = []
    open_ids: set = set()
    for msg in messages:
        if isinstance(msg, ToolMessage):
            if units and msg.tool_call_id in open_ids:
                units[-1].append(msg)
            else:
                units.append([])
            continue
        open_ids = set()
        if isinstance(msg, AIMessage):
            open_ids = {tc.get("id") for tc in msg.tool_calls or [] if tc.get("id")}
        units.append([msg])
    return units


class ContextTrimmer:
    """Trims a message list to an estimated-token budget."""

    def __init__(self, settings):
        self.settings = settings

    @property
    def budget(self) -> int:
        return self.settings.budget

    def trim(self, messages: List[BaseMessage]) -> Tuple[List[BaseMessage], ContextStats]:
        """
        裁剪消息列表

        Args:
            messages: 消息列表（可包含上一轮的裁剪说明，会被移除）

        Returns:
            (裁剪后的消息列表, 统计信息)
        """
        budget = self.budget
        cleaned = [m for m in messages if not is_trim_note(m)]
        system = [m for m in cleaned if isinstance(m, SystemMessage)]
        conversation = [m for m in cleaned if not isinstance(m, SystemMessage)]

        system_tokens = estimate_messages_tokens(system)
        conversation_tokens = estimate_messages_tokens(conversation)

        if system_tokens + conversation_tokens <= budget:
            return system + conversation, self._stats(
                len(messages), system + conversation, system_tokens, conversation_tokens, 0
            )

        if system_tokens > budget:
            logger.warning(
                f"System prompt too long: {system_tokens} tokens > {budget} budget; "
                f"dropping all {len(conversation)} conversation messages"
            )
            return system, self._stats(len(messages), system, system_tokens, 0, len(conversation))

        # Reserve room for the note with the largest counts it could show
        worst_note = build_trim_note(len(conversation), len(conversation))
        available = budget - system_tokens - estimate_message_tokens(worst_note)

        units = _group_units(conversation)
        anchor = _latest_human_unit(units)
        used = 0
        if anchor is not None:
            question = units[anchor][0]
            if estimate_message_tokens(question) > available:
                question = self._clip(question, available) if available > 0 else None
            if question is None:
                logger.warning("Latest user message does not fit the context budget even when clipped")
                anchor = None
            else:
                units[anchor] = [question]
                used = estimate_message_tokens(question)

        selected = {anchor} if anchor is not None else set()
        for index in range(len(units) - 1, -1, -1):
            if index == anchor:
                continue
            unit = units[index]
            cost = estimate_messages_tokens(unit)
            if not unit or used + cost > available:
                break
            selected.add(index)
            used += cost

        kept = [m for index, unit in enumerate(units) if index in selected for m in unit]

        if not kept and conversation and available > 0:
            clipped = self._clip(conversation[-1], available)
            if clipped is not None:
                kept = [clipped]
                used = estimate_message_tokens(clipped)

        dropped = len(conversation) - len(kept)
        result = list(system)
        if available > 0:
            result.append(build_trim_note(dropped, len(kept)))
        result.extend(kept)

        logger.warning(
            f"Trimmed messages: {len(messages)} → {len(result)} "
            f"(kept {len(system)} system + {len(kept)} recent, dropped {dropped})"
        )
        return result, self._stats(len(messages), result, system_tokens, used, dropped)

    def _clip(self, message: BaseMessage, available: int):
        """Shorten an oversized user message so it fits ``available``.

        Text parts are clipped and media parts kept. When the media parts
        alone do not fit, they are replaced by a short placeholder.
        """
        if isinstance(message, (AIMessage, ToolMessage)):
            return None
        content = message.content
        if isinstance(content, str):
            return self._clip_text(message, content, [], available)

        text = "\n".join(
            part if isinstance(part, str) else str(part.get("text", ""))
            for part in content
            if isinstance(part, str) or (isinstance(part, dict) and part.get("type") == "text")
        )
        media = [part for part in content if is_media_part(part)]
        clipped = self._clip_text(message, text, media, available)
        if clipped is None and media:
            logger.warning(f"Media parts exceed the context budget; omitting {len(media)} of them")
            clipped = self._clip_text(message, f"{MEDIA_OMITTED_NOTE}\n{text}", [], available)
        return clipped

    def _clip_text(self, message: BaseMessage, text: str, media: List[dict], available: int):
        def build(length: int) -> BaseMessage:
            clipped = text if length >= len(text) else text[:length] + "…"
            if not media:
                return message.model_copy(update={"content": clipped})
            parts = [{"type": "text", "text": clipped}] if clipped else []
            return message.model_copy(update={"content": parts + media})

        def fits(candidate: BaseMessage) -> bool:
            return estimate_message_tokens(candidate) <= available

        if fits(build(len(text))):
            return build(len(text))

        low, high = 0, len(text) - 1
        while low < high:
            mid = (low + high + 1) // 2
            if fits(build(mid)):
                low = mid
            else:
                high = mid - 1
        if low == 0 and not (media and fits(build(0))):
            return None
        logger.warning(f"Clipped oversized message: {len(text)} → {low} chars")
        return build(low)

    def _stats(
        self,
        original_count: int,
        result: List[BaseMessage],
        system_tokens: int,
        conversation_tokens: int,
        trimmed_count: int,
    ) -> ContextStats:
        estimated = estimate_messages_tokens(result)
        max_tokens = getattr(self.settings, "max_tokens", self.budget) or 1
        return ContextStats(
            original_count=original_count,
            final_count=len(result),
            estimated_tokens=estimated,
            system_tokens=system_tokens,
            conversation_tokens=conversation_tokens,
            trimmed_count=trimmed_count,
            budget=self.budget,
            usage_percent=estimated / max_tokens * 100,
        )

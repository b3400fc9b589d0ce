"""System prompts and corrective messages for the ledger assistant."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field, field_validator

from statefulAgent.agents.interfaces import IntentType, RewrittenIntent

AGENT_PROMPT_ID = "agent-system-prompt"
TASK_BLOCK_MARKER = "## 当前任务"


class RuntimeContext(BaseModel):
    """Host-supplied facts about the user and the active ledger."""

    user_name: Optional[str] = None
    ledger_id: Optional[int] = None
    ledger_name: Optional[str] = None
    currency: str = "CNY"
    categories: List[str] = Field(default_factory=list)
    payment_methods: List[str] = Field(default_factory=list)
    timezone: str = "UTC"

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {value}") from e
        return value


BASE_SYSTEM_PROMPT = """你是一个智能记账助手，帮助用户记录、查询、修改和统计账本中的交易。

## 工作方式
- 需要数据时调用工具获取，不要编造交易记录、金额或 ID。
- 所有业务结果都必须通过 render_* 工具展示给用户（列表用 render_transaction_list，单条记录用 render_transaction_detail，统计用 render_statistics_card）。
- 同一个工具不要用相同参数重复调用；结果已经拿到就直接展示。
- 删除、批量修改等高风险操作会请求用户确认，被拒绝后不要重试。
- 工具返回错误时，根据错误信息调整参数或换一种方式，不要原样重试。
- 闲聊或问答类问题直接用文字回答即可。"""

TASK_GUIDANCE: Dict[IntentType, str] = {
    IntentType.CREATE: "调用 transaction(action=\"create\") 创建记录，完成后用 render_transaction_detail 展示新记录。",
    IntentType.BATCH: "调用 transaction(action=\"batch_create\") 一次性创建全部记录，完成后用 render_transaction_list 展示。",
    IntentType.QUERY: "调用 transaction(action=\"query\") 查询，然后用 render_transaction_list 展示结果。",
    IntentType.STATISTICS: "调用 transaction(action=\"statistics\") 获取统计数据，然后用 render_statistics_card 展示。",
    IntentType.UPDATE: "先确认目标记录的 ID，再调用 transaction(action=\"update\")，完成后用 render_transaction_detail 展示。",
    IntentType.DELETE: "先确认目标记录的 ID，再调用 transaction(action=\"delete\")，完成后告知用户结果。",
}

EMPTY_RESPONSE_PROMPT = "你上一次没有返回任何内容。请继续完成任务：需要数据就调用工具，已有结果就调用 render_* 工具展示。"
RENDER_REMINDER_PROMPT = "你已经获取了数据，但还没有展示给用户。请调用合适的 render_* 工具展示结果。"
REFLECTION_COMPLETE_PROMPT = "任务尚未完成：结果还没有展示给用户。请调用 render_* 工具展示结果后再结束。"
EMPTY_RESPONSE_FAILURE = "抱歉，AI 暂时没有返回有效内容，请稍后重试或换一种说法。"


def get_current_datetime_tag(now: Optional[datetime] = None, tz: str = "UTC") -> str:
    """Get current wall-clock time in ``tz`` in XML tag format.

    Args:
        now: Aware datetime to render instead of the current time
        tz: IANA timezone name, e.g. "Asia/Shanghai"

    Returns:
        String like "<current_datetime>2025-01-24 15:30:45 UTC</current_datetime>"
    """
    zone = ZoneInfo(tz)
    local = now.astimezone(zone) if now is not None else datetime.now(zone)
    return f"<current_datetime>{local.strftime('%Y-%m-%d %H:%M:%S')} {tz}</current_datetime>"


def build_context_section(context: Optional[RuntimeContext]) -> str:
    if context is None:
        return ""
    lines = ["## 当前上下文"]
    if context.user_name:
        lines.append(f"- 用户：{context.user_name}")
    if context.ledger_name or context.ledger_id is not None:
        lines.append(f"- 当前账本：{context.ledger_name or ''}（ID: {context.ledger_id}）")
    lines.append(f"- 货币：{context.currency}")
    if context.categories:
        lines.append(f"- 可用分类：{'、'.join(context.categories)}")
    if context.payment_methods:
        lines.append(f"- 支付方式：{'、'.join(context.payment_methods)}")
    return "\n".join(lines)


def build_system_prompt(context: Optional[RuntimeContext] = None, now: Optional[datetime] = None) -> str:
    tz = context.timezone if context is not None else "UTC"
    parts = [BASE_SYSTEM_PROMPT, get_current_datetime_tag(now, tz)]
    section = build_context_section(context)
    if section:
        parts.append(section)
    return "\n\n".join(parts)


def build_task_block(intent: RewrittenIntent) -> str:
    lines = [TASK_BLOCK_MARKER, intent.rewritten_prompt]
    if intent.extracted_info:
        lines.append("### 已提取信息")
        lines.append(json.dumps(intent.extracted_info, ensure_ascii=False, default=str))
    guidance = TASK_GUIDANCE.get(intent.intent_type)
    if guidance:
        lines.append("### 执行指引")
        lines.append(guidance)
    return "\n".join(lines)


def agent_system_message(content: str) -> SystemMessage:
    return SystemMessage(content=content, id=AGENT_PROMPT_ID)


def is_agent_system_message(message) -> bool:
    return isinstance(message, SystemMessage) and message.id == AGENT_PROMPT_ID


def corrective_message(text: str) -> HumanMessage:
    return HumanMessage(content=text, additional_kwargs={"corrective": True})


def rejection_reply(reason: str) -> str:
    return f"好的，已取消执行。{reason}".strip()

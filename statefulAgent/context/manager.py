"""
上下文管理器 - 统一入口

负责：
1. 每轮对话开始前裁剪上下文
2. 记录模型返回的实际 token 用量
3. 生成统计报告并记录日志
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from langchain_core.messages import AIMessage, BaseMessage

from statefulAgent.utils.logging_utils import log_context_stats

from .token_tracker import TokenUsage, extract_token_usage
from .truncator import ContextStats, ContextTrimmer

logger = logging.getLogger("statefulAgent.context")


@dataclass
class ContextManagementReport:
    """上下文管理操作报告"""
    messages: List[BaseMessage]
    stats: ContextStats

    @property
    def action(self) -> str:
        return "trimmed" if self.stats.was_trimmed else "none"


class ContextManager:
    """Trimmer plus bookkeeping of the last stats and provider usage."""

    def __init__(self, settings, log: Optional[logging.LoggerAdapter] = None):
        self.settings = settings
        self.trimmer = ContextTrimmer(settings)
        self.logger = log or logger
        self.last_stats: Optional[ContextStats] = None
        self.last_usage: Optional[TokenUsage] = None

    def prepare(self, messages: List[BaseMessage]) -> ContextManagementReport:
        trimmed, stats = self.trimmer.trim(messages)
        self.last_stats = stats
        if stats.was_trimmed or stats.usage_percent > self.settings.usage_warning_ratio * 100:
            log_context_stats(self.logger, stats)
        return ContextManagementReport(messages=trimmed, stats=stats)

    def record_response(self, response: AIMessage) -> Optional[TokenUsage]:
        usage = extract_token_usage(response)
        if usage:
            self.last_usage = usage
            self.logger.debug(
                f"Token usage: prompt={usage.prompt_tokens} completion={usage.completion_tokens}"
            )
        return usage

    def reset(self) -> None:
        self.last_stats = None
        self.last_usage = None

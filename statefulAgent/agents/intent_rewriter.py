"""Keyword-based intent rewriter.

Works offline and never fails, so it is both the default rewriter and the
fallback when a model-backed rewriter errors out. Confidence stays low
(rule matches are a guess), except when concrete fields were extracted.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from langchain_core.messages import BaseMessage, HumanMessage

from statefulAgent.graph.message_utils import extract_text_content, has_image_content

from .interfaces import IntentType, RewrittenIntent, RiskLevel

LOGGER = logging.getLogger("statefulAgent.intent")

# Checked in order; first hit wins
_KEYWORD_RULES: Tuple[Tuple[IntentType, RiskLevel, Tuple[str, ...]], ...] = (
    (IntentType.BATCH, RiskLevel.HIGH, ("批量", "batch", "全部删除", "清空")),
    (IntentType.DELETE, RiskLevel.HIGH, ("删除", "移除", "delete", "remove")),
    (IntentType.UPDATE, RiskLevel.MEDIUM, ("修改", "更新", "改成", "update", "modify", "change")),
    (IntentType.STATISTICS, RiskLevel.LOW, ("统计", "多少", "汇总", "statistics", "how much", "total")),
    (IntentType.QUERY, RiskLevel.LOW, ("查询", "查看", "列出", "query", "show", "list", "find")),
    (IntentType.CREATE, RiskLevel.MEDIUM, ("记一笔", "记账", "花了", "收入", "买了", "record", "spent", "paid")),
)

_CHAT_PATTERNS = re.compile(r"^\s*(你好|您好|嗨|谢谢|多谢|hello|hi|hey|thanks|thank you)[\s!！。.,，]*$", re.IGNORECASE)
_TARGET_ID = re.compile(r"(?:transaction|record|id|#|第|编号)\s*[:：]?\s*(\d+)", re.IGNORECASE)
_AMOUNT = re.compile(r"(\d+(?:\.\d{1,2})?)\s*(?:元|块|rmb|¥|yuan|dollars?)?", re.IGNORECASE)


@dataclass
class IntentRewriterConfig:
    enabled: bool = True
    confirm_high_risk: bool = True
    confirm_medium_risk: bool = False
    batch_threshold: int = 5


class RuleBasedIntentRewriter:
    """Classifies a request by keywords and applies the confirmation policy."""

    def __init__(self, config: Optional[IntentRewriterConfig] = None):
        self.config = config or IntentRewriterConfig()

    def initialize(self, credential: Optional[str] = None) -> None:
        # No remote model behind the keyword rules
        return None

    def is_enabled(self) -> bool:
        return self.config.enabled

    async def rewrite(self, content: Any, history: Sequence[BaseMessage]) -> RewrittenIntent:
        message = HumanMessage(content=content)
        text = extract_text_content(message).strip()
        has_image = has_image_content(message)

        intent = self.classify(text, has_image)
        self.apply_confirmation_policy(intent)
        LOGGER.info(
            f"Intent: {intent.intent_type.value} risk={intent.risk_level.value} "
            f"confidence={intent.confidence:.2f} confirm={intent.requires_confirmation}"
        )
        return intent

    def classify(self, text: str, has_image: bool = False) -> RewrittenIntent:
        """Rule-based classification of ``text``."""
        lowered = text.lower()

        if _CHAT_PATTERNS.match(text):
            return RewrittenIntent(
                rewritten_prompt=text,
                original_input=text,
                intent_type=IntentType.CHAT,
                confidence=0.9,
                has_image=has_image,
            )

        intent_type, risk_level = IntentType.UNKNOWN, RiskLevel.LOW
        for candidate, risk, keywords in _KEYWORD_RULES:
            if any(keyword in lowered for keyword in keywords):
                intent_type, risk_level = candidate, risk
                break
        else:
            if has_image:
                # An image alone is almost always a receipt to record
                intent_type, risk_level = IntentType.CREATE, RiskLevel.MEDIUM

        extracted = self._extract_info(text, intent_type)

        if intent_type == IntentType.CREATE and "amount" not in extracted and not has_image:
            return RewrittenIntent(
                rewritten_prompt="需要更多信息才能记账",
                original_input=text,
                intent_type=IntentType.CLARIFY,
                confidence=0.3,
                extracted_info=extracted,
                clarify_question="请问这笔账的金额是多少？",
                missing_info=["金额"],
                has_image=has_image,
            )

        confidence = 0.7 if extracted else 0.5
        return RewrittenIntent(
            rewritten_prompt=self._describe(intent_type, text, extracted),
            original_input=text,
            intent_type=intent_type,
            confidence=confidence,
            risk_level=risk_level,
            extracted_info=extracted,
            has_image=has_image,
        )

    def apply_confirmation_policy(self, intent: RewrittenIntent) -> None:
        if intent.risk_level == RiskLevel.CRITICAL:
            intent.requires_confirmation = True
            intent.confirmation_reason = intent.confirmation_reason or "此操作不可逆，请确认"
        elif intent.risk_level == RiskLevel.HIGH and self.config.confirm_high_risk:
            intent.requires_confirmation = True
            intent.confirmation_reason = intent.confirmation_reason or "此操作可能影响数据"
        elif intent.risk_level == RiskLevel.MEDIUM and self.config.confirm_medium_risk:
            intent.requires_confirmation = True
            intent.confirmation_reason = intent.confirmation_reason or "请确认操作"

        if intent.intent_type == IntentType.BATCH:
            limit = intent.extracted_info.get("limit")
            if not limit or limit >= self.config.batch_threshold:
                intent.requires_confirmation = True
                intent.confirmation_reason = f"批量操作将影响{limit or '多条'}记录"

    def _extract_info(self, text: str, intent_type: IntentType) -> Dict[str, Any]:
        info: Dict[str, Any] = {}
        if intent_type in (IntentType.DELETE, IntentType.UPDATE, IntentType.QUERY):
            match = _TARGET_ID.search(text)
            if match:
                info["transaction_id"] = int(match.group(1))
        if intent_type == IntentType.CREATE:
            amounts: List[str] = [m.group(1) for m in _AMOUNT.finditer(text)]
            if amounts:
                info["amount"] = float(amounts[0])
            info["type"] = "INCOME" if "收入" in text or "income" in text.lower() else "EXPENSE"
            if "amount" not in info:
                info.pop("type")
        if intent_type == IntentType.BATCH:
            match = re.search(r"(\d+)\s*(?:条|笔|items?|records?)", text, re.IGNORECASE)
            if match:
                info["limit"] = int(match.group(1))
        return info

    @staticmethod
    def _describe(intent_type: IntentType, text: str, extracted: Dict[str, Any]) -> str:
        target = extracted.get("transaction_id")
        if intent_type == IntentType.DELETE and target is not None:
            return f"删除 ID 为 {target} 的交易记录"
        if intent_type == IntentType.UPDATE and target is not None:
            return f"修改 ID 为 {target} 的交易记录：{text}"
        if intent_type == IntentType.CREATE and "amount" in extracted:
            kind = "收入" if extracted.get("type") == "INCOME" else "支出"
            return f"记录一笔{kind}，金额 {extracted['amount']:g}：{text}"
        return text

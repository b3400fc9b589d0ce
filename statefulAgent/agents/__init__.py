"""Pluggable sub-agents: intent rewriting and reflection."""

from .interfaces import (
    IntentType,
    NextAction,
    ReflectionContext,
    ReflectionResult,
    RewrittenIntent,
    RiskLevel,
)
from .intent_rewriter import IntentRewriterConfig, RuleBasedIntentRewriter
from .reflector import PolicyReflector

__all__ = [
    "IntentType",
    "NextAction",
    "ReflectionContext",
    "ReflectionResult",
    "RewrittenIntent",
    "RiskLevel",
    "IntentRewriterConfig",
    "RuleBasedIntentRewriter",
    "PolicyReflector",
]

"""Runtime assembly for the stateful ledger agent."""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence

from langchain_core.tools import BaseTool

from statefulAgent.agents.interfaces import ChatModel, IntentRewriter, Reflector
from statefulAgent.config.settings import Settings, get_settings
from statefulAgent.graph.prompts import RuntimeContext
from statefulAgent.hitl.permissions import PermissionGate
from statefulAgent.tools.registry import ToolMeta
from statefulAgent.utils.logging_utils import get_agent_logger, setup_logging

from .agent import StatefulAgent

LOGGER = logging.getLogger(__name__)


def build_agent(
    model: ChatModel,
    tools: Iterable[BaseTool] = (),
    *,
    settings: Optional[Settings] = None,
    runtime_context: Optional[RuntimeContext] = None,
    tool_meta: Sequence[ToolMeta] = (),
    intent_rewriter: Optional[IntentRewriter] = None,
    reflector: Optional[Reflector] = None,
    logger: Optional[logging.Logger] = None,
    configure_logging: bool = False,
) -> StatefulAgent:
    """Assemble a StatefulAgent from settings.

    Args:
        model: Chat model with an async ``ainvoke``; bound to ``tools`` when it supports ``bind_tools``
        tools: Business and render tools exposed to the model
        settings: Overrides the cached environment settings
        runtime_context: User and ledger facts injected into the system prompt
        tool_meta: Extra metadata (e.g. a ``render`` tag on tools without the render_ prefix)
        intent_rewriter: Replaces the rule-based rewriter
        reflector: Replaces the policy reflector
        logger: Host logger; wrapped with a trace-aware adapter
        configure_logging: Install console/file handlers from the observability settings

    Returns:
        Ready-to-use agent in the Idle state
    """
    settings = settings or get_settings()
    observability = settings.observability

    if configure_logging:
        setup_logging(
            level=observability.log_level.upper(),
            log_dir=observability.log_dir,
            to_file=observability.log_to_file,
        )

    agent_logger = get_agent_logger(min_level=observability.log_level, logger=logger)
    tools = list(tools)

    permission_gate = PermissionGate(
        config_path=settings.permissions.rules_path,
        enable_confirmation=settings.governance.enable_confirmation,
        logger=agent_logger,
    )

    agent = StatefulAgent(
        model,
        tools,
        settings=settings,
        intent_rewriter=intent_rewriter,
        reflector=reflector,
        permission_gate=permission_gate,
        runtime_context=runtime_context,
        logger=agent_logger,
    )
    for meta in tool_meta:
        agent.registry.register_meta(meta)

    LOGGER.info(
        "Stateful agent ready: %d tools, confirmation=%s, intent rewrite=%s, reflection=%s",
        len(tools),
        settings.governance.enable_confirmation,
        agent.intent_rewriter.is_enabled(),
        agent.reflector.is_enabled(),
    )
    return agent

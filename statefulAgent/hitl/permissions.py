"""Permission gate for tool execution."""

from __future__ import annotations

import logging
import math
import re
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Set, Tuple

import yaml

LOGGER = logging.getLogger("statefulAgent.permissions")

RATE_LIMIT_WINDOW = 60.0


class PermissionTier(str, Enum):
    READ = "read"
    WRITE = "write"
    DANGEROUS = "dangerous"


_TIER_RISK = {
    PermissionTier.READ: "low",
    PermissionTier.WRITE: "medium",
    PermissionTier.DANGEROUS: "high",
}

_HIGH_INTENT_RISK = {"high", "critical"}


@dataclass(frozen=True)
class ToolPermission:
    """Permission rule for one tool (from YAML or registered in code)."""

    tier: PermissionTier = PermissionTier.WRITE
    actions: Mapping[str, PermissionTier] = field(default_factory=dict)
    max_calls_per_minute: Optional[int] = None
    cooldown: Optional[float] = None
    critical: bool = False
    confirmation_message: Optional[str] = None

    def tier_for(self, args: Dict[str, Any]) -> PermissionTier:
        action = (args or {}).get("action")
        if isinstance(action, str) and action in self.actions:
            return self.actions[action]
        return self.tier

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ToolPermission":
        return cls(
            tier=PermissionTier(config.get("tier", PermissionTier.WRITE.value)),
            actions={name: PermissionTier(tier) for name, tier in (config.get("actions") or {}).items()},
            max_calls_per_minute=config.get("max_calls_per_minute"),
            cooldown=config.get("cooldown"),
            critical=bool(config.get("critical", False)),
            confirmation_message=config.get("confirmation_message"),
        )


@dataclass
class PermissionDecision:
    """权限检查结果"""

    allowed: bool
    requires_confirmation: bool
    tier: PermissionTier
    risk_level: str = "low"  # low, medium, high, critical
    block_reason: Optional[str] = None
    confirmation_message: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


class PermissionGate:
    """Classifies tool calls and enforces confirmation and rate limits.

    规则优先级（从高到低）：
    1. 代码注册的工具规则
    2. 配置文件中的工具规则（可按 action 参数细分）
    3. 配置文件中的名称模式
    4. 默认等级（未知工具）
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        enable_confirmation: bool = True,
        logger: Optional[logging.LoggerAdapter] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            config_path: 权限规则配置文件路径（可选）
            enable_confirmation: 关闭后任何调用都不需要确认
            clock: 单调时钟（测试可替换）
        """
        self.config_path = Path(config_path) if config_path else None
        self.enable_confirmation = enable_confirmation
        self.logger = logger or LOGGER
        self._clock = clock
        self.rules = self._load_config() if self.config_path else {}

        defaults = self.rules.get("defaults") or {}
        self.unknown_tier = PermissionTier(defaults.get("unknown_tier", PermissionTier.WRITE.value))
        self.tool_rules: Dict[str, ToolPermission] = {
            name: ToolPermission.from_config(cfg or {})
            for name, cfg in (self.rules.get("tools") or {}).items()
        }
        self.patterns: List[Tuple[re.Pattern, ToolPermission]] = [
            (re.compile(item["pattern"]), ToolPermission.from_config(item))
            for item in (self.rules.get("patterns") or [{"pattern": "^render_", "tier": "read"}])
        ]
        self.custom_rules: Dict[str, ToolPermission] = {}
        self._always_allowed: Set[str] = set()
        self._call_history: Dict[str, Deque[float]] = {}

    def _load_config(self) -> dict:
        """加载配置文件"""
        if not self.config_path.exists():
            self.logger.warning(f"Permission rules not found: {self.config_path}")
            return {}

        with open(self.config_path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}

    def register_rule(self, tool_name: str, permission: ToolPermission) -> None:
        """Register a rule in code; overrides the config file."""
        self.custom_rules[tool_name] = permission

    def rule_for(self, tool_name: str) -> ToolPermission:
        if tool_name in self.custom_rules:
            return self.custom_rules[tool_name]
        if tool_name in self.tool_rules:
            return self.tool_rules[tool_name]
        for pattern, permission in self.patterns:
            if pattern.search(tool_name):
                return permission
        return ToolPermission(tier=self.unknown_tier)

    def classify(self, tool_name: str, args: Dict[str, Any]) -> PermissionTier:
        return self.rule_for(tool_name).tier_for(args)

    def check(
        self,
        tool_name: str,
        args: Dict[str, Any],
        intent_risk: Optional[str] = None,
        intent_confirmed: bool = False,
    ) -> PermissionDecision:
        """检查工具调用是否允许、是否需要确认

        Args:
            tool_name: 工具名称
            args: 工具参数
            intent_risk: 本轮意图的风险等级
            intent_confirmed: 用户是否已确认过本轮意图

        Returns:
            PermissionDecision
        """
        rule = self.rule_for(tool_name)
        tier = rule.tier_for(args)
        risk_level = "critical" if rule.critical else _TIER_RISK[tier]

        block_reason = self._check_rate_limit(tool_name, rule) or self._check_cooldown(tool_name, rule)
        if block_reason:
            self.logger.warning(f"Blocked {tool_name}: {block_reason}")
            return PermissionDecision(
                allowed=False,
                requires_confirmation=False,
                tier=tier,
                risk_level=risk_level,
                block_reason=block_reason,
            )

        requires_confirmation = False
        if self.enable_confirmation:
            if tier == PermissionTier.DANGEROUS:
                requires_confirmation = rule.critical or tool_name not in self._always_allowed
            elif (
                tier == PermissionTier.WRITE
                and intent_risk in _HIGH_INTENT_RISK
                and not intent_confirmed
            ):
                requires_confirmation = True

        warnings: List[str] = []
        if rule.critical:
            warnings.append("此操作不可逆")
        if rule.confirmation_message:
            warnings.append(rule.confirmation_message)

        return PermissionDecision(
            allowed=True,
            requires_confirmation=requires_confirmation,
            tier=tier,
            risk_level=risk_level,
            confirmation_message=self._confirmation_message(tool_name, args) if requires_confirmation else None,
            warnings=warnings,
        )

    def record_call(self, tool_name: str) -> None:
        """Remember the call time; history is bounded to the rate-limit window plus the latest call."""
        now = self._clock()
        history = self._call_history.setdefault(tool_name, deque())
        history.append(now)
        while len(history) > 1 and now - history[0] >= RATE_LIMIT_WINDOW:
            history.popleft()

    def always_allow(self, tool_name: str) -> bool:
        """Skip confirmation for ``tool_name`` from now on (never for critical rules)."""
        if self.rule_for(tool_name).critical:
            self.logger.warning(f"Refusing to always-allow critical tool {tool_name}")
            return False
        self._always_allowed.add(tool_name)
        return True

    def reset(self) -> None:
        self._call_history.clear()
        self._always_allowed.clear()

    def _check_rate_limit(self, tool_name: str, rule: ToolPermission) -> Optional[str]:
        if not rule.max_calls_per_minute:
            return None
        history = self._call_history.get(tool_name)
        if not history:
            return None
        now = self._clock()
        while history and now - history[0] >= RATE_LIMIT_WINDOW:
            history.popleft()
        if len(history) >= rule.max_calls_per_minute:
            wait = math.ceil(RATE_LIMIT_WINDOW - (now - history[0]))
            return f"调用过于频繁，请{wait}秒后重试"
        return None

    def _check_cooldown(self, tool_name: str, rule: ToolPermission) -> Optional[str]:
        if not rule.cooldown:
            return None
        history = self._call_history.get(tool_name)
        if not history:
            return None
        elapsed = self._clock() - history[-1]
        if elapsed < rule.cooldown:
            return f"操作冷却中，请{math.ceil(rule.cooldown - elapsed)}秒后重试"
        return None

    @staticmethod
    def _confirmation_message(tool_name: str, args: Dict[str, Any]) -> str:
        action = (args or {}).get("action")
        target = f"{tool_name}（{action}）" if action else tool_name
        details = ", ".join(f"{k}={v}" for k, v in (args or {}).items() if k != "action")
        return f"即将执行 {target}" + (f"：{details}" if details else "")

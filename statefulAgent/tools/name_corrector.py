"""Map malformed tool names the model invents onto the real domain tools.

Models trained on generic tool sets tend to call ``list`` or
``create_transaction`` instead of the aggregated ``category`` /
``transaction`` tools. The mapping is closed: only names listed in
:class:`MalformedToolName` are ever rewritten.
"""

from __future__ import annotations

import logging
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Collection, Dict, Mapping, NamedTuple, Optional

LOGGER = logging.getLogger("statefulAgent.tools.corrector")

ArgsTransform = Callable[[Dict[str, Any]], Dict[str, Any]]


class MalformedToolName(str, Enum):
    LIST = "list"
    SEARCH = "search"
    CREATE = "create"
    QUERY = "query"
    UPDATE = "update"
    DELETE = "delete"
    STATISTICS = "statistics"
    STATS = "stats"
    GET_CATEGORIES = "get_categories"
    LIST_CATEGORIES = "list_categories"
    QUERY_TRANSACTIONS = "query_transactions"
    CREATE_TRANSACTION = "create_transaction"
    ADD_TRANSACTION = "add_transaction"
    UPDATE_TRANSACTION = "update_transaction"
    DELETE_TRANSACTION = "delete_transaction"
    GET_PAYMENT_METHODS = "get_payment_methods"
    GET_CONTEXT = "get_context"


class CorrectionRule(NamedTuple):
    target: str
    transform: ArgsTransform


class ToolCorrection(NamedTuple):
    original_name: str
    tool_name: str
    args: Dict[str, Any]


def with_action(action: str) -> ArgsTransform:
    """Transform that keeps the arguments and pins ``action``."""

    def transform(args: Dict[str, Any]) -> Dict[str, Any]:
        corrected = dict(args or {})
        corrected["action"] = action
        return corrected

    transform.__name__ = f"with_action_{action}"
    return transform


def keep_args(args: Dict[str, Any]) -> Dict[str, Any]:
    return dict(args or {})


TOOL_NAME_CORRECTIONS: Mapping[MalformedToolName, CorrectionRule] = MappingProxyType({
    MalformedToolName.LIST: CorrectionRule("category", with_action("list")),
    MalformedToolName.SEARCH: CorrectionRule("category", with_action("search")),
    MalformedToolName.CREATE: CorrectionRule("transaction", with_action("create")),
    MalformedToolName.QUERY: CorrectionRule("transaction", with_action("query")),
    MalformedToolName.UPDATE: CorrectionRule("transaction", with_action("update")),
    MalformedToolName.DELETE: CorrectionRule("transaction", with_action("delete")),
    MalformedToolName.STATISTICS: CorrectionRule("transaction", with_action("statistics")),
    MalformedToolName.STATS: CorrectionRule("transaction", with_action("statistics")),
    MalformedToolName.GET_CATEGORIES: CorrectionRule("category", with_action("list")),
    MalformedToolName.LIST_CATEGORIES: CorrectionRule("category", with_action("list")),
    MalformedToolName.QUERY_TRANSACTIONS: CorrectionRule("transaction", with_action("query")),
    MalformedToolName.CREATE_TRANSACTION: CorrectionRule("transaction", with_action("create")),
    MalformedToolName.ADD_TRANSACTION: CorrectionRule("transaction", with_action("create")),
    MalformedToolName.UPDATE_TRANSACTION: CorrectionRule("transaction", with_action("update")),
    MalformedToolName.DELETE_TRANSACTION: CorrectionRule("transaction", with_action("delete")),
    MalformedToolName.GET_PAYMENT_METHODS: CorrectionRule("payment_method", with_action("list")),
    MalformedToolName.GET_CONTEXT: CorrectionRule("context", keep_args),
})


def correct_tool_call(
    name: str,
    args: Dict[str, Any],
    available_tools: Collection[str],
) -> Optional[ToolCorrection]:
    """Rewrite an unregistered tool call onto a registered one.

    Returns:
        The corrected call, or None when ``name`` is not a known malformed
        name or its target tool is not registered.
    """
    try:
        key = MalformedToolName(name)
    except ValueError:
        return None

    rule = TOOL_NAME_CORRECTIONS[key]
    if rule.target not in available_tools:
        LOGGER.debug(f"Correction target {rule.target} for {name} is not registered")
        return None

    corrected = ToolCorrection(original_name=name, tool_name=rule.target, args=rule.transform(args))
    LOGGER.info(f"Corrected tool call: {name} → {rule.target}({corrected.args})")
    return corrected

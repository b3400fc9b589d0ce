"""Tool registry and tool-name correction."""

from .name_corrector import ToolCorrection, correct_tool_call
from .registry import ToolMeta, ToolRegistry, is_render_tool

__all__ = ["ToolCorrection", "correct_tool_call", "ToolMeta", "ToolRegistry", "is_render_tool"]

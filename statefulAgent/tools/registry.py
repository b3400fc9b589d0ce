"""Tool registration and metadata."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from langchain_core.tools import BaseTool

from statefulAgent.utils.error_handler import ToolNotFoundError

RENDER_TOOL_PREFIX = "render_"


def is_render_tool(name: Optional[str]) -> bool:
    """Render tools put results on screen; calling one counts as presenting."""
    return bool(name) and name.startswith(RENDER_TOOL_PREFIX)


@dataclass(frozen=True, slots=True)
class ToolMeta:
    """Describes governance attributes for a tool."""

    name: str
    tags: Tuple[str, ...] = ()
    description: str = ""

    @property
    def is_render(self) -> bool:
        return "render" in self.tags or is_render_tool(self.name)


class ToolRegistry:
    """Tracks tool instances and their metadata."""

    def __init__(self, tools: Optional[Iterable[BaseTool]] = None, meta: Optional[Iterable[ToolMeta]] = None) -> None:
        self._tools: Dict[str, BaseTool] = {}
        self._meta: Dict[str, ToolMeta] = {}
        if tools:
            for tool in tools:
                self.register_tool(tool)
        if meta:
            for item in meta:
                self.register_meta(item)

    def register_tool(self, tool: BaseTool) -> None:
        self._tools[tool.name] = tool
        self._meta.setdefault(tool.name, ToolMeta(name=tool.name, description=tool.description or ""))

    def register_meta(self, metadata: ToolMeta) -> None:
        self._meta[metadata.name] = metadata

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def get_tool(self, name: str) -> BaseTool:
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def is_render(self, name: str) -> bool:
        meta = self._meta.get(name)
        return meta.is_render if meta else is_render_tool(name)

    def list_tools(self) -> List[BaseTool]:
        return list(self._tools.values())

    def tool_names(self) -> List[str]:
        return list(self._tools)

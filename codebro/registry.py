"""Tool interface and the ordered name -> tool registry consulted by the dispatcher."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class ToolContext:
    """What a tool gets to see about the agent invoking it.

    ``extensions`` is reserved for fields contributed at runtime by MCP
    servers; everything else is fixed at composition time.
    """

    working_directory: str
    config: Any = None
    progress: Any = None
    extensions: dict[str, Any] = field(default_factory=dict)


class Tool:
    """A named, schema-described capability the model may request.

    Subclasses set ``name``, ``description`` and ``parameters`` and implement
    either ``run`` (blocking, executed in a worker thread) or ``invoke``.
    """

    name: str = ""
    description: str = ""
    parameters: dict = {"type": "object", "properties": {}}

    def definition(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    async def invoke(self, args: dict, context: ToolContext) -> Any:
        return await asyncio.to_thread(self.run, args, context)

    def run(self, args: dict, context: ToolContext) -> Any:
        raise NotImplementedError(f"tool {self.name!r} implements neither run nor invoke")


class ToolRegistry:
    """Ordered mapping from tool name to Tool. The first registration of a name wins."""

    def __init__(self, tools=()):
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> bool:
        if not tool.name:
            raise ValueError("tool has no name")
        if tool.name in self._tools:
            logger.debug("ignoring redundant tool %r", tool.name)
            return False
        self._tools[tool.name] = tool
        return True

    def lookup(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[dict]:
        return [t.definition() for t in self._tools.values()]

    def without(self, excluded) -> "ToolRegistry":
        excluded = set(excluded or ())
        return ToolRegistry(t for n, t in self._tools.items() if n not in excluded)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self):
        return iter(self._tools.values())


def format_tools_for_prompt(registry: ToolRegistry) -> str:
    """Render the registry as the tool-declaration section of the system prompt."""
    if not len(registry):
        return ""
    lines = ["# Available tools", ""]
    for tool in registry:
        fn = tool.definition()["function"]
        lines.append(f"## {fn['name']}")
        description = " ".join((fn.get("description") or "").split())
        if description:
            lines.append(description)
        lines.append("Parameters (JSON schema):")
        lines.append(json.dumps(fn.get("parameters") or {}, ensure_ascii=False))
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"

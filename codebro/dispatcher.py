"""Concurrent execution of the tool calls requested in one assistant turn."""

import asyncio
import json
import logging
import time

from .messages import Message, ToolCall, ToolCallResult, tool_message
from .mode import MODE_SWITCH_TOOL, ModeController
from .registry import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

MAX_ARG_LOG = 1000


def error_result(message: str) -> dict:
    return {"success": False, "error": message}


def succeeded(result) -> bool:
    """Tools report failure with ``success: false`` or an ``error`` key."""
    if isinstance(result, dict):
        if result.get("success") is False:
            return False
        return not result.get("error")
    return True


class ToolDispatcher:
    """Run tool calls against the registry and turn results into tool messages.

    Calls from the same turn are started together and joined; a failure in
    one call never affects its siblings. Results keep the request order.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        mode: ModeController,
        context: ToolContext,
        progress=None,
    ):
        self.registry = registry
        self.mode = mode
        self.context = context
        self.progress = progress
        self.history: list[ToolCallResult] = []

    async def dispatch(self, tool_calls: list[ToolCall]) -> list[ToolCallResult]:
        results = list(
            await asyncio.gather(*(self._execute(call) for call in tool_calls))
        )
        for item in results:
            self._apply_mode_switch(item)
        self.history.extend(results)
        return results

    def tool_messages(self, results: list[ToolCallResult]) -> list[Message]:
        return [tool_message(item.call.id, item.result) for item in results]

    async def _execute(self, call: ToolCall) -> ToolCallResult:
        tool = self.registry.lookup(call.name)
        if tool is None:
            return self._fail(call, f"Tool {call.name!r} not found")

        try:
            args = json.loads(call.arguments or "{}")
        except (json.JSONDecodeError, TypeError) as e:
            return self._fail(call, f"invalid JSON in tool arguments: {e}")
        if not isinstance(args, dict):
            return self._fail(call, "tool arguments must be a JSON object")

        if self.progress is not None:
            pretty = json.dumps(args, indent=2, ensure_ascii=False)
            if len(pretty) > MAX_ARG_LOG:
                pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
            self.progress.tool_start(call.name, pretty)

        t0 = time.monotonic()
        try:
            result = await tool.invoke(args, self.context)
        except Exception as e:
            logger.debug("tool %s raised", call.name, exc_info=True)
            result = error_result(f"{type(e).__name__}: {e}")
        elapsed = time.monotonic() - t0

        if self.progress is not None:
            if succeeded(result):
                preview = json.dumps(result, ensure_ascii=False, default=str)[:500]
                self.progress.tool_result(call.name, elapsed, preview)
            else:
                self.progress.tool_error(call.name, _error_text(result))
        return ToolCallResult(call=call, result=result)

    def _fail(self, call: ToolCall, message: str) -> ToolCallResult:
        if self.progress is not None:
            self.progress.tool_error(call.name, message)
        return ToolCallResult(call=call, result=error_result(message))

    def _apply_mode_switch(self, item: ToolCallResult) -> None:
        if item.call.name != MODE_SWITCH_TOOL:
            return
        result = item.result
        if not isinstance(result, dict) or not result.get("success"):
            return
        try:
            target = json.loads(item.call.arguments or "{}").get("mode")
            mode = self.mode.switch(target)
        except (ValueError, AttributeError) as e:
            logger.debug("ignoring mode switch: %s", e)
            return
        logger.debug("mode switched to %s", mode.value)


def _error_text(result) -> str:
    if isinstance(result, dict):
        return str(result.get("error") or "failed")
    return str(result)

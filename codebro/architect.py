"""The architect tool: a one-shot model call that turns a request into a step list."""

import logging
import re
from pathlib import Path

from . import fmt
from .consumer import ResponseConsumer
from .errors import ConfigError, TransportError
from .messages import system_message, user_message
from .registry import Tool, ToolContext

logger = logging.getLogger(__name__)

ARCHITECT_PROMPT_FILE = Path(__file__).parent / "architect_prompt.txt"

_STEP_RE = re.compile(r"^\s*-+\s+(?P<step>\S.*?)\s*$")


def parse_plan(plan: str) -> list[str]:
    """Return the dashed step lines of a plan, without their dashes."""
    steps = []
    for line in (plan or "").splitlines():
        m = _STEP_RE.match(line)
        if m:
            steps.append(m["step"])
    return steps


class ArchitectTool(Tool):
    """Asks the configured model, without tools or history, for an implementation plan.

    ``completion`` is handed to the ResponseConsumer and replaced in tests.
    """

    name = "architect"
    description = (
        "Analyse a technical request and break it down into clear, actionable "
        "implementation steps. Use it when planning how to implement a feature, "
        "solve a technical problem or structure code. The returned subtasks can "
        "be recorded with taskManager."
    )
    parameters = {
        "type": "object",
        "properties": {
            "reason": {"type": "string", "description": "Why the plan is needed."},
            "prompt": {
                "type": "string",
                "description": "The technical request or coding task to analyse.",
            },
            "context": {
                "type": "string",
                "description": "Optional context from the conversation or the project.",
            },
        },
        "required": ["reason", "prompt"],
    }

    def __init__(self, completion=None):
        self._completion = completion

    async def invoke(self, args: dict, context: ToolContext):
        prompt = args.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            return {"success": False, "error": "'prompt' must be a non-empty string"}
        config = context.config
        if config is None or not getattr(config, "model", None):
            return {"success": False, "error": "no model configured for planning"}

        extra = args.get("context")
        if isinstance(extra, str) and extra.strip():
            prompt = f"<context>{extra.strip()}</context>\n\n{prompt.strip()}"

        consumer = ResponseConsumer(
            provider=config.provider,
            api_key=config.api_key,
            base_url=config.base_url,
            stream=False,
            temperature=config.temperature,
            completion=self._completion,
        )
        messages = [
            system_message(ARCHITECT_PROMPT_FILE.read_text(encoding="utf-8")).to_dict(),
            user_message(prompt).to_dict(),
        ]
        if getattr(context.progress, "verbose", False):
            fmt.info("Planning...")
        try:
            response = await consumer.get_response(messages, config.model)
        except (ConfigError, TransportError) as e:
            logger.debug("architect call failed", exc_info=True)
            return {"success": False, "error": f"planning failed: {e}"}

        plan = response.text.strip()
        if not plan:
            return {"success": False, "error": "the model returned an empty plan"}
        return {"success": True, "result": plan, "subtasks": parse_plan(plan)}

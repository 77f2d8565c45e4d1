"""PLAN / EXECUTE mode state and the system prompt built from it."""

import enum
from datetime import datetime
from pathlib import Path

from .consumer import END_MARKER, START_MARKER
from .registry import ToolRegistry, format_tools_for_prompt

MODE_SWITCH_TOOL = "agentModeSwitch"
TOOLS_PLACEHOLDER = "@@TOOLS_DECLARE@@"

_PROMPT_DIR = Path(__file__).parent
SYSTEM_PROMPT_FILE = _PROMPT_DIR / "system_prompt.txt"
EXECUTE_PROMPT_FILE = _PROMPT_DIR / "execute_prompt.txt"
PLANNER_PROMPT_FILE = _PROMPT_DIR / "planner_prompt.txt"

TOOL_POLICY = """
# Tool usage policy
- When several tool calls do not depend on each other, request them together in one turn.
- Refuse to write, explain or run code or commands that may be used maliciously, even if the user claims an educational purpose.
"""

INLINE_PROTOCOL = f"""
# Calling tools
Call a tool by writing its name and JSON-encoded arguments between markers:
{START_MARKER}{{"name": "readFile", "arguments": "{{\\"path\\": \\"README.md\\"}}"}}{END_MARKER}
Several calls go in one JSON array between the same markers. Tool results come back as tool messages.
"""


class Mode(enum.Enum):
    PLAN = "PLAN"
    EXECUTE = "EXECUTE"


class ModeController:
    """Holds the agent's current mode.

    The only transition is ``switch``, which the dispatcher calls after a
    successful mode-switch tool call.
    """

    def __init__(
        self,
        initial: Mode = Mode.PLAN,
        *,
        execute_prompt: str | None = None,
        planner_prompt: str | None = None,
    ):
        self.current = initial
        self.execute_prompt = (
            execute_prompt
            if execute_prompt is not None
            else EXECUTE_PROMPT_FILE.read_text(encoding="utf-8")
        )
        self.planner_prompt = (
            planner_prompt
            if planner_prompt is not None
            else PLANNER_PROMPT_FILE.read_text(encoding="utf-8")
        )

    def switch(self, target) -> Mode:
        self.current = parse_mode(target)
        return self.current

    def prompt_fragment(self) -> str:
        if self.current is Mode.EXECUTE:
            return self.execute_prompt
        return self.planner_prompt


def parse_mode(value) -> Mode:
    """Accept a Mode or its name. Raises ValueError for anything else."""
    if isinstance(value, Mode):
        return value
    if isinstance(value, str):
        try:
            return Mode(value.strip().upper())
        except ValueError:
            pass
    raise ValueError(f"invalid mode {value!r}, expected EXECUTE or PLAN")


def build_system_prompt(
    controller: ModeController,
    registry: ToolRegistry,
    *,
    working_directory: str | None = None,
    additional_rules: str = "",
    tasks=(),
    inline_tools: bool = False,
    base_prompt: str | None = None,
    now: datetime | None = None,
) -> str:
    """Assemble the system message for the current mode."""
    if base_prompt is None:
        base_prompt = SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")
    now = now or datetime.now().astimezone()

    parts = [base_prompt.rstrip()]
    parts.append(f"Current date and time: {now.strftime('%Y-%m-%d %H:%M %Z')}".rstrip())
    if working_directory:
        parts.append(f"Working directory: {working_directory}")
    parts.append(f"Current mode: {controller.current.value}")
    fragment = controller.prompt_fragment().replace(
        TOOLS_PLACEHOLDER, format_tools_for_prompt(registry)
    )
    parts.append(fragment.rstrip())
    parts.append(TOOL_POLICY.strip())
    if inline_tools:
        parts.append(INLINE_PROTOCOL.strip())
    if MODE_SWITCH_TOOL in registry:
        parts.append(f"You can switch between EXECUTE and PLAN mode with {MODE_SWITCH_TOOL}.")

    if additional_rules and additional_rules.strip():
        parts.append(f"# Additional rules from user\n{additional_rules.strip()}")

    active = [t for t in tasks if t.status in ("pending", "in_progress")]
    if active:
        lines = "\n".join(f"- {t.id}: {t.description} ({t.status})" for t in active)
        parts.append(f"# Active tasks\n{lines}")

    return "\n\n".join(parts) + "\n"

"""The agent loop: ask the model, run the tools it requests, repeat until it answers."""

import logging
import time
from dataclasses import dataclass, field

from .config import AgentConfig
from .consumer import ResponseConsumer
from .dispatcher import ToolDispatcher
from .errors import ConfigError
from .fmt import NullProgress
from .messages import (
    Message,
    MessageStore,
    ToolCallResult,
    assistant_message,
    compact_history,
    estimate_tokens,
    system_message,
    user_message,
)
from .mode import Mode, ModeController, build_system_prompt, parse_mode
from .registry import ToolContext, ToolRegistry
from .tasks import TaskStore
from .tools import default_tools

logger = logging.getLogger(__name__)


@dataclass
class AgentState:
    store: MessageStore = field(default_factory=MessageStore)
    mode: ModeController = field(default_factory=ModeController)


class Agent:
    """One conversation with one model.

    ``chat`` drives a single user request to completion. The message store,
    mode and tool history persist across calls until ``clear_history``.
    """

    def __init__(
        self,
        config: AgentConfig,
        registry: ToolRegistry,
        *,
        progress=None,
        consumer: ResponseConsumer | None = None,
        context: ToolContext | None = None,
        mode: ModeController | None = None,
    ):
        if not config.model:
            raise ConfigError("no model configured")
        self.config = config
        self.registry = registry
        self.progress = progress or NullProgress()
        self.consumer = consumer or ResponseConsumer(
            provider=config.provider,
            api_key=config.api_key,
            base_url=config.base_url,
            stream=config.stream,
            tool_protocol=config.tool_protocol,
            temperature=config.temperature,
        )
        self.context = context or ToolContext(
            working_directory=config.working_directory,
            config=config,
            progress=self.progress,
        )
        self.state = AgentState(mode=mode or ModeController(parse_mode(config.mode)))
        self.dispatcher = ToolDispatcher(
            registry, self.state.mode, self.context, progress=self.progress
        )
        self._tasks = TaskStore(self.context.working_directory)

    @property
    def mode(self) -> Mode:
        return self.state.mode.current

    @property
    def history(self) -> list[Message]:
        return self.state.store.messages

    @property
    def tool_history(self) -> list[ToolCallResult]:
        return list(self.dispatcher.history)

    def clear_history(self) -> int:
        """Drop the conversation and tool history. The mode is kept."""
        dropped = len(self.state.store)
        self.state.store.clear()
        self.dispatcher.history.clear()
        return dropped

    def system_prompt(self) -> str:
        return build_system_prompt(
            self.state.mode,
            self.registry,
            working_directory=self.context.working_directory,
            additional_rules=self.config.additional_rules,
            tasks=self._tasks.load(),
            inline_tools=self.config.tool_protocol == "inline",
        )

    async def chat(self, message: str, on_text=None) -> str:
        """Run the loop for one user message and return the final answer.

        Raises TransportError if the model cannot be reached; nothing is
        appended for the request that failed.
        """
        store = self.state.store
        if not len(store):
            store.append(system_message(self.system_prompt()))
        store.append(user_message(message))

        def forward_text(text: str) -> None:
            self.progress.done_waiting()
            if on_text is not None:
                on_text(text)

        answer = ""
        max_iterations = self.config.max_iterations
        iteration = 0
        outcome = "exhausted"
        while iteration < max_iterations:
            iteration += 1
            store.set_system(self.system_prompt())
            wire = store.to_wire()
            tools = self.registry.definitions()
            self.progress.iteration(iteration, max_iterations, estimate_tokens(wire, tools))

            self.progress.waiting()
            t0 = time.monotonic()
            try:
                response = await self.consumer.get_response(
                    wire, self.config.model, tools, forward_text
                )
            finally:
                self.progress.done_waiting()
            self.progress.response(time.monotonic() - t0, response.finish_reason)

            if response.text.strip():
                answer = response.text

            if not response.tool_calls:
                store.append(assistant_message(response.text))
                outcome = "ok"
                break

            store.append(assistant_message(response.text or None, response.tool_calls))
            mode_before = self.state.mode.current
            results = await self.dispatcher.dispatch(response.tool_calls)
            store.extend(self.dispatcher.tool_messages(results))
            if self.state.mode.current is not mode_before:
                self.progress.mode_changed(self.state.mode.current.value)
        else:
            logger.debug("iteration limit %d reached", max_iterations)

        self.progress.finished(iteration, outcome)
        if compact_history(
            store,
            self.system_prompt(),
            max_messages=self.config.max_history,
            keep_recent=self.config.keep_recent,
        ):
            logger.debug("history compacted to %d messages", len(store))
        return answer


def create_agent(config: AgentConfig, *, progress=None, extra_tools=()) -> Agent:
    """Compose the default registry and build an Agent.

    Built-in tools are registered first, so an MCP tool cannot shadow one.
    """
    registry = ToolRegistry(default_tools())
    for tool in extra_tools:
        registry.register(tool)
    registry = registry.without(config.exclude_tools)
    return Agent(config, registry, progress=progress)

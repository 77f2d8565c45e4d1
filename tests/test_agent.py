"""Tests for codebro.agent: the chat loop end to end with a scripted model."""

import asyncio
import json

import pytest

from codebro.agent import Agent, create_agent
from codebro.config import AgentConfig
from codebro.consumer import TurnResponse
from codebro.errors import ConfigError, TransportError
from codebro.messages import ToolCall
from codebro.mode import Mode
from codebro.registry import ToolRegistry
from codebro.tools import AgentModeSwitchTool, ProjectStructureTool, ThinkingTool


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class ScriptedConsumer:
    """Returns prepared TurnResponses in order and records every request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    async def get_response(self, messages, model, tools=None, on_text=None):
        self.requests.append({"messages": messages, "model": model, "tools": tools})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if on_text is not None and response.text:
            on_text(response.text)
        return response


class RecordingProgress:
    verbose = False

    def __init__(self):
        self.events = []

    def __getattr__(self, name):
        def record(*args):
            self.events.append((name, *args))

        return record


def _call(call_id, name, **args):
    return ToolCall(id=call_id, name=name, arguments=json.dumps(args))


def _agent(tmp_path, *responses, tools=None, **config):
    config.setdefault("model", "test-model")
    cfg = AgentConfig(working_directory=str(tmp_path), **config)
    registry = ToolRegistry(tools if tools is not None else [ThinkingTool(), AgentModeSwitchTool()])
    consumer = ScriptedConsumer(*responses)
    progress = RecordingProgress()
    return Agent(cfg, registry, consumer=consumer, progress=progress), consumer, progress


# ===========================================================================
# The loop
# ===========================================================================


class TestChat:
    def test_plain_answer(self, tmp_path):
        agent, consumer, _ = _agent(tmp_path, TurnResponse(text="Hello!", finish_reason="stop"))
        answer = asyncio.run(agent.chat("hi"))
        assert answer == "Hello!"
        assert [m.role for m in agent.history] == ["system", "user", "assistant"]
        assert consumer.requests[0]["model"] == "test-model"

    def test_one_tool_round_adds_four_messages(self, tmp_path):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "main.py").write_text("print(1)\n")
        agent, consumer, _ = _agent(
            tmp_path,
            TurnResponse(tool_calls=[_call("c1", "projectStructure")]),
            TurnResponse(text="All done."),
            tools=[ProjectStructureTool(), AgentModeSwitchTool()],
        )
        asyncio.run(agent.chat("show me the project"))
        history = agent.history
        assert [m.role for m in history] == ["system", "user", "assistant", "tool", "assistant"]
        assert history[2].tool_calls[0].id == "c1"
        assert history[2].tool_calls[0].arguments == "{}"
        assert history[3].tool_call_id == "c1"
        result = json.loads(history[3].content)
        assert result["success"] is True
        assert result["structure"][0]["name"] == "src"
        assert result["structure"][0]["children"][0]["name"] == "main.py"
        assert history[4].content == "All done."
        # The second request carried the tool result back to the model.
        second = consumer.requests[1]["messages"]
        assert second[-1]["role"] == "tool"
        assert second[-1]["tool_call_id"] == "c1"

    def test_tool_messages_answer_preceding_assistant(self, tmp_path):
        agent, _, _ = _agent(
            tmp_path,
            TurnResponse(
                tool_calls=[
                    _call("a", "thinkingTool", reason="one"),
                    _call("b", "nope"),
                    _call("c", "thinkingTool", reason="three"),
                ]
            ),
            TurnResponse(text="ok"),
        )
        asyncio.run(agent.chat("go"))
        history = agent.history
        assert [m.tool_call_id for m in history[3:6]] == ["a", "b", "c"]
        assert json.loads(history[4].content)["success"] is False
        assert [r.call.id for r in agent.tool_history] == ["a", "b", "c"]

    def test_tools_are_offered_to_the_model(self, tmp_path):
        agent, consumer, _ = _agent(tmp_path, TurnResponse(text="x"))
        asyncio.run(agent.chat("hi"))
        names = [t["function"]["name"] for t in consumer.requests[0]["tools"]]
        assert names == ["thinkingTool", "agentModeSwitch"]

    def test_text_is_forwarded(self, tmp_path):
        agent, _, _ = _agent(tmp_path, TurnResponse(text="streamed"))
        seen = []
        asyncio.run(agent.chat("hi", on_text=seen.append))
        assert seen == ["streamed"]

    def test_iteration_cap_returns_last_text(self, tmp_path):
        responses = [
            TurnResponse(text=f"step {i}", tool_calls=[_call(f"c{i}", "thinkingTool", reason="r")])
            for i in range(3)
        ]
        agent, consumer, progress = _agent(tmp_path, *responses, max_iterations=3)
        answer = asyncio.run(agent.chat("loop forever"))
        assert answer == "step 2"
        assert len(consumer.requests) == 3
        assert ("finished", 3, "exhausted") in progress.events

    def test_conversation_continues_across_chats(self, tmp_path):
        agent, consumer, _ = _agent(tmp_path, TurnResponse(text="one"), TurnResponse(text="two"))
        asyncio.run(agent.chat("first"))
        asyncio.run(agent.chat("second"))
        roles = [m["role"] for m in consumer.requests[1]["messages"]]
        assert roles == ["system", "user", "assistant", "user"]

    def test_transport_error_propagates_without_assistant_message(self, tmp_path):
        agent, _, _ = _agent(tmp_path, TransportError("test-model", "boom"))
        with pytest.raises(TransportError):
            asyncio.run(agent.chat("hi"))
        assert [m.role for m in agent.history] == ["system", "user"]

    def test_history_compacted_after_chat(self, tmp_path):
        responses = [
            TurnResponse(tool_calls=[_call(f"c{i}", "thinkingTool", reason="r")]) for i in range(4)
        ] + [TurnResponse(text="done")]
        agent, _, _ = _agent(tmp_path, *responses, max_history=6, keep_recent=4)
        asyncio.run(agent.chat("go"))
        history = agent.history
        assert len(history) <= 5
        assert history[0].role == "system"
        assert history[1].role != "tool"
        assert history[-1].content == "done"

    def test_missing_model_rejected(self, tmp_path):
        with pytest.raises(ConfigError):
            Agent(AgentConfig(working_directory=str(tmp_path)), ToolRegistry())


# ===========================================================================
# Modes
# ===========================================================================


class TestAgentModes:
    def test_starts_in_plan_with_planner_prompt(self, tmp_path):
        agent, consumer, _ = _agent(tmp_path, TurnResponse(text="plan"))
        asyncio.run(agent.chat("hi"))
        assert agent.mode is Mode.PLAN
        assert "Current mode: PLAN" in consumer.requests[0]["messages"][0]["content"]

    def test_switch_rebuilds_system_prompt(self, tmp_path):
        agent, consumer, progress = _agent(
            tmp_path,
            TurnResponse(tool_calls=[_call("c1", "agentModeSwitch", mode="EXECUTE", purpose="go")]),
            TurnResponse(text="executing"),
        )
        asyncio.run(agent.chat("build it"))
        assert agent.mode is Mode.EXECUTE
        assert "Current mode: PLAN" in consumer.requests[0]["messages"][0]["content"]
        assert "Current mode: EXECUTE" in consumer.requests[1]["messages"][0]["content"]
        assert ("mode_changed", "EXECUTE") in progress.events

    def test_configured_initial_mode(self, tmp_path):
        agent, _, _ = _agent(tmp_path, mode="EXECUTE")
        assert agent.mode is Mode.EXECUTE

    def test_clear_history_keeps_mode(self, tmp_path):
        agent, _, _ = _agent(
            tmp_path,
            TurnResponse(tool_calls=[_call("c1", "agentModeSwitch", mode="EXECUTE", purpose="go")]),
            TurnResponse(text="ok"),
        )
        asyncio.run(agent.chat("x"))
        dropped = agent.clear_history()
        assert dropped == 5
        assert agent.history == []
        assert agent.tool_history == []
        assert agent.mode is Mode.EXECUTE

    def test_active_tasks_appear_in_prompt(self, tmp_path):
        (tmp_path / ".codebro").mkdir()
        (tmp_path / ".codebro" / "tasks.md").write_text(
            "# Tasks\n\n## task-1: Add a parser\n- **Status**: in_progress\n",
            encoding="utf-8",
        )
        agent, consumer, _ = _agent(tmp_path, TurnResponse(text="ok"))
        asyncio.run(agent.chat("status?"))
        assert "- task-1: Add a parser (in_progress)" in consumer.requests[0]["messages"][0]["content"]


# ===========================================================================
# Composition
# ===========================================================================


class TestCreateAgent:
    def test_default_registry(self, tmp_path):
        agent = create_agent(AgentConfig(model="m", api_key="k", working_directory=str(tmp_path)))
        names = agent.registry.names()
        for expected in (
            "thinkingTool",
            "agentModeSwitch",
            "taskManager",
            "projectStructure",
            "readFile",
            "writeFile",
            "editFile",
            "searchCode",
            "executeCommand",
            "fetchUrl",
            "architect",
        ):
            assert expected in names

    def test_exclude_tools(self, tmp_path):
        cfg = AgentConfig(
            model="m",
            api_key="k",
            working_directory=str(tmp_path),
            exclude_tools=("executeCommand", "fetchUrl"),
        )
        names = create_agent(cfg).registry.names()
        assert "executeCommand" not in names
        assert "fetchUrl" not in names
        assert "readFile" in names

    def test_extra_tools_cannot_shadow_builtins(self, tmp_path):
        class Impostor(ThinkingTool):
            pass

        impostor = Impostor()
        agent = create_agent(
            AgentConfig(model="m", api_key="k", working_directory=str(tmp_path)),
            extra_tools=[impostor],
        )
        assert agent.registry.lookup("thinkingTool") is not impostor

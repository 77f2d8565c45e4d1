"""Tests for the command line: argument parsing, one-shot questions and the REPL."""

import asyncio

import pytest

from codebro import cli
from codebro.agent import Agent
from codebro.config import AgentConfig
from codebro.consumer import TurnResponse
from codebro.messages import ToolCall
from codebro.mode import Mode
from codebro.registry import ToolRegistry
from codebro.tools import AgentModeSwitchTool, ThinkingTool


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class ScriptedConsumer:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    async def get_response(self, messages, model, tools=None, on_text=None):
        self.requests.append(messages)
        response = self.responses.pop(0)
        if on_text is not None and response.text:
            on_text(response.text)
        return response


class FakePromptSession:
    """Stands in for prompt_toolkit's PromptSession, replaying scripted input."""

    lines: list = []

    def __init__(self, *args, **kwargs):
        self._lines = list(type(self).lines)

    async def prompt_async(self, *args, **kwargs):
        if not self._lines:
            raise EOFError
        return self._lines.pop(0)


def _agent(tmp_path, *responses):
    cfg = AgentConfig(model="test-model", working_directory=str(tmp_path))
    registry = ToolRegistry([ThinkingTool(), AgentModeSwitchTool()])
    consumer = ScriptedConsumer(*responses)
    return Agent(cfg, registry, consumer=consumer), consumer


def _repl(monkeypatch, agent, lines, stream=False):
    import prompt_toolkit

    FakePromptSession.lines = lines
    monkeypatch.setattr(prompt_toolkit, "PromptSession", FakePromptSession)
    asyncio.run(cli.repl_loop(agent, stream_to_stdout=stream, verbose=False))


# ===========================================================================
# Argument parsing
# ===========================================================================


class TestParser:
    def test_defaults_leave_config_untouched(self):
        args = cli.build_parser().parse_args(["what is this?"])
        assert args.question == "what is this?"
        assert not args.repl
        assert all(v is None for v in cli._overrides(args).values())

    def test_overrides(self):
        args = cli.build_parser().parse_args(
            [
                "--model", "gpt-4o",
                "--provider", "openrouter",
                "--no-stream",
                "--mode", "execute",
                "--max-iterations", "7",
                "--exclude-tools", "fetchUrl, executeCommand,",
                "q",
            ]
        )
        overrides = cli._overrides(args)
        assert overrides["model"] == "gpt-4o"
        assert overrides["provider"] == "openrouter"
        assert overrides["stream"] is False
        assert overrides["mode"] == "execute"
        assert overrides["max_iterations"] == 7
        assert overrides["exclude_tools"] == ["fetchUrl", "executeCommand"]

    def test_stream_flags_exclusive(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["--stream", "--no-stream", "q"])


# ===========================================================================
# main
# ===========================================================================


class TestMain:
    def test_requires_question_or_repl(self):
        with pytest.raises(SystemExit) as exc:
            cli.main([])
        assert exc.value.code == 2

    def test_init_config(self, capsys):
        with pytest.raises(SystemExit) as exc:
            cli.main(["--init-config"])
        assert exc.value.code == 0
        assert "# codebro configuration" in capsys.readouterr().out

    def test_config_error_exits_1(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
        with pytest.raises(SystemExit) as exc:
            cli.main(["--base-dir", str(tmp_path), "--no-color", "hello"])
        assert exc.value.code == 1
        assert "no model configured" in capsys.readouterr().err


# ===========================================================================
# One-shot and REPL
# ===========================================================================


class TestAsk:
    def test_prints_answer(self, tmp_path, capsys):
        agent, _ = _agent(tmp_path, TurnResponse(text="42"))
        answer = asyncio.run(cli.ask(agent, "meaning?", stream_to_stdout=False))
        assert answer == "42"
        assert capsys.readouterr().out == "42\n"

    def test_streams_answer(self, tmp_path, capsys):
        agent, _ = _agent(tmp_path, TurnResponse(text="streamed"))
        asyncio.run(cli.ask(agent, "go", stream_to_stdout=True))
        assert capsys.readouterr().out == "streamed\n"


class TestRepl:
    def test_questions_share_history(self, tmp_path, monkeypatch, capsys):
        agent, consumer = _agent(tmp_path, TurnResponse(text="one"), TurnResponse(text="two"))
        _repl(monkeypatch, agent, ["first", "", "second", "/exit", "never asked"])
        assert capsys.readouterr().out == "one\ntwo\n"
        roles = [m["role"] for m in consumer.requests[1]]
        assert roles == ["system", "user", "assistant", "user"]

    def test_clear_forgets_conversation(self, tmp_path, monkeypatch):
        agent, consumer = _agent(tmp_path, TurnResponse(text="a"), TurnResponse(text="b"))
        _repl(monkeypatch, agent, ["first", "/clear", "second"])
        roles = [m["role"] for m in consumer.requests[1]]
        assert roles == ["system", "user"]

    def test_mode_command_only_reports(self, tmp_path, monkeypatch, capsys):
        agent, consumer = _agent(tmp_path)
        _repl(monkeypatch, agent, ["/mode", "/mode EXECUTE"])
        assert agent.mode is Mode.PLAN
        assert agent.tool_history == []
        assert consumer.requests == []
        err = capsys.readouterr().err
        assert "current mode: PLAN" in err
        assert "agentModeSwitch" in err

    def test_mode_changes_through_the_switch_tool(self, tmp_path, monkeypatch):
        agent, _ = _agent(
            tmp_path,
            TurnResponse(
                tool_calls=[
                    ToolCall(
                        id="c1",
                        name="agentModeSwitch",
                        arguments='{"mode": "EXECUTE", "purpose": "plan approved"}',
                    )
                ]
            ),
            TurnResponse(text="switched"),
        )
        _repl(monkeypatch, agent, ["go ahead", "/mode"])
        assert agent.mode is Mode.EXECUTE

    def test_help_does_not_call_model(self, tmp_path, monkeypatch):
        agent, consumer = _agent(tmp_path)
        _repl(monkeypatch, agent, ["/help"])
        assert consumer.requests == []

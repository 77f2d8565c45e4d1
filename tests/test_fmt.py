"""Tests for the fmt module (ANSI-formatted output helpers and progress reporters)."""

from io import StringIO

import pytest
from rich.console import Console

from codebro import fmt


def _capture(func, *args, **kwargs):
    """Call a fmt function with a captured console and return plain-text output."""
    buf = StringIO()
    old = fmt._console
    fmt._console = Console(file=buf, no_color=True, width=80)
    try:
        func(*args, **kwargs)
    finally:
        fmt._console = old
    return buf.getvalue()


@pytest.fixture
def console():
    buf = StringIO()
    old = fmt._console
    fmt._console = Console(file=buf, no_color=True, width=80)
    yield buf
    fmt._console = old


class TestTurnHeader:
    def test_contains_iteration_info(self):
        out = _capture(fmt.turn_header, 3, 10, 4200)
        assert "Iteration 3/10" in out
        assert "4200 tokens" in out


class TestLlmTiming:
    def test_stop_reason(self):
        out = _capture(fmt.llm_timing, 1.4, "stop")
        assert "LLM responded in 1.4s" in out
        assert "finish_reason=stop" in out

    def test_missing_reason(self):
        out = _capture(fmt.llm_timing, 0.2, None)
        assert "finish_reason=None" in out


class TestCompletion:
    def test_ok(self):
        out = _capture(fmt.completion, 5, "ok")
        assert "Agent finished" in out
        assert "5 iterations" in out

    def test_exhausted(self):
        out = _capture(fmt.completion, 25, "exhausted")
        assert "25 iterations" in out
        assert "exhausted" in out


class TestToolLines:
    def test_call_prints_args(self):
        out = _capture(fmt.tool_call, "readFile", '{\n  "path": "foo.txt"\n}')
        assert "readFile" in out
        assert "foo.txt" in out

    def test_result(self):
        out = _capture(fmt.tool_result, "writeFile", 0.1, '{"success": true}')
        assert "writeFile" in out
        assert "0.1s" in out

    def test_error(self):
        out = _capture(fmt.tool_error, "editFile", "oldString not found in file")
        assert "editFile" in out
        assert "oldString not found" in out

    def test_markup_not_interpreted(self):
        out = _capture(fmt.tool_error, "x", "[bold]literal[/bold]")
        assert "[bold]literal[/bold]" in out


class TestMisc:
    def test_mode_changed(self):
        assert "now in EXECUTE mode" in _capture(fmt.mode_changed, "EXECUTE")

    def test_task_update(self):
        out = _capture(fmt.task_update, "create", "task-1: write docs")
        assert "[task create]" in out
        assert "task-1: write docs" in out

    def test_mcp_server_error(self):
        out = _capture(fmt.mcp_server_error, "fs", "boom")
        assert "'fs'" in out
        assert "boom" in out

    def test_error(self):
        out = _capture(fmt.error, "no model configured")
        assert out.startswith("Error: no model configured")


# ---------------------------------------------------------------------------
# Progress reporters
# ---------------------------------------------------------------------------


class TestProgress:
    def test_null_progress_is_silent(self, console):
        progress = fmt.NullProgress()
        progress.waiting()
        progress.iteration(1, 5, 100)
        progress.response(0.5, "stop")
        progress.tool_start("readFile", "{}")
        progress.tool_result("readFile", 0.1, "")
        progress.tool_error("readFile", "x")
        progress.mode_changed("PLAN")
        progress.finished(1, "ok")
        assert console.getvalue() == ""

    def test_verbose_reports_iterations(self, console):
        progress = fmt.RichProgress(verbose=True)
        progress.iteration(2, 25, 300)
        progress.finished(2, "ok")
        out = console.getvalue()
        assert "Iteration 2/25" in out
        assert "Agent finished" in out

    def test_quiet_still_reports_errors_and_mode(self, console):
        progress = fmt.RichProgress(verbose=False)
        progress.iteration(2, 25, 300)
        progress.tool_start("readFile", "{}")
        progress.tool_error("readFile", "missing")
        progress.mode_changed("EXECUTE")
        out = console.getvalue()
        assert "Iteration" not in out
        assert "missing" in out
        assert "EXECUTE" in out

    def test_waiting_spinner_stops(self, console):
        progress = fmt.RichProgress(verbose=False)
        progress.waiting()
        assert progress._status is not None
        progress.response(0.1, "stop")
        assert progress._status is None

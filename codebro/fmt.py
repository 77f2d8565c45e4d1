"""ANSI-formatted stderr output using Rich, and the progress reporters built on it."""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Turn structure ----------------------------------------------------------


def turn_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Iteration {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, finish_reason: str | None) -> None:
    style = "green" if finish_reason in ("stop", "tool_calls") else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    _console.print(text)


def llm_spinner(label: str = "Thinking"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def completion(iterations: int, outcome: str) -> None:
    if outcome == "ok":
        _console.print(
            Text(f"  \u2713 Agent finished: {iterations} iterations", style="bold green")
        )
    else:
        _console.print(
            Text(
                f"  Agent finished: {iterations} iterations, exit={outcome}",
                style="bold red",
            )
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  \u25b6 ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  \u2713 {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  \u2717 {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def mode_changed(mode: str) -> None:
    line = Text()
    line.append("  [mode] ", style="yellow")
    line.append(f"now in {mode} mode", style="dim italic")
    _console.print(line)


def think_step(reason: str) -> None:
    line = Text()
    line.append("  [think]", style="yellow")
    line.append(f" {reason}", style="dim italic")
    _console.print(line)


def task_update(action: str, detail: str) -> None:
    line = Text()
    line.append(f"  [task {action}]", style="yellow")
    line.append(f" {detail}", style="dim italic")
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def mcp_server_start(name: str, tool_count: int) -> None:
    _console.print(Text(f"  MCP server {name!r}: {tool_count} tool(s)", style="dim"))


def mcp_server_error(name: str, msg: str) -> None:
    line = Text()
    line.append(f"  \u26a0 MCP server {name!r}: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(Text("Interactive mode. Type /help for commands, /exit or Ctrl-D to quit.", style="dim"))


# -- Progress reporters --------------------------------------------------------


class NullProgress:
    """Progress reporter that reports nothing."""

    def waiting(self, label: str = "Thinking") -> None:
        pass

    def done_waiting(self) -> None:
        pass

    def iteration(self, n: int, max_n: int, token_est: int) -> None:
        pass

    def response(self, elapsed: float, finish_reason: str | None) -> None:
        pass

    def tool_start(self, name: str, args_json: str) -> None:
        pass

    def tool_result(self, name: str, elapsed: float, preview: str) -> None:
        pass

    def tool_error(self, name: str, msg: str) -> None:
        pass

    def mode_changed(self, mode: str) -> None:
        pass

    def finished(self, iterations: int, outcome: str) -> None:
        pass


class RichProgress(NullProgress):
    """Reports the loop's progress on stderr with a spinner while the model works."""

    def __init__(self, verbose: bool = True):
        self.verbose = verbose
        self._status = None

    def waiting(self, label: str = "Thinking") -> None:
        self.done_waiting()
        self._status = llm_spinner(label)
        self._status.start()

    def done_waiting(self) -> None:
        if self._status is not None:
            self._status.stop()
            self._status = None

    def iteration(self, n: int, max_n: int, token_est: int) -> None:
        if self.verbose:
            turn_header(n, max_n, token_est)

    def response(self, elapsed: float, finish_reason: str | None) -> None:
        self.done_waiting()
        if self.verbose:
            llm_timing(elapsed, finish_reason)

    def tool_start(self, name: str, args_json: str) -> None:
        if self.verbose:
            tool_call(name, args_json)

    def tool_result(self, name: str, elapsed: float, preview: str) -> None:
        if self.verbose:
            tool_result(name, elapsed, preview)

    def tool_error(self, name: str, msg: str) -> None:
        tool_error(name, msg)

    def mode_changed(self, mode: str) -> None:
        mode_changed(mode)

    def finished(self, iterations: int, outcome: str) -> None:
        if self.verbose:
            completion(iterations, outcome)

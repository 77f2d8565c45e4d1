"""Command-line entry point: one-shot questions and the interactive REPL."""

import argparse
import asyncio
import logging
import os
import sys
from importlib import metadata

from . import fmt
from .agent import Agent, create_agent
from .config import build_agent_config, generate_config
from .errors import AgentError
from .mcp_bridge import McpBridge
from .mode import MODE_SWITCH_TOOL


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="codebro",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A CLI coding agent that plans, then executes with tools.",
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--provider",
        choices=["openai", "openrouter", "azure", "lmstudio"],
        default=None,
        help="LLM provider (default: openai).",
    )
    parser.add_argument("--model", default=None, help="Model identifier.")
    parser.add_argument(
        "--api-key", default=None, help="API key for the provider (overrides env var)."
    )
    parser.add_argument("--base-url", default=None, help="Server base URL.")
    parser.add_argument(
        "--mode",
        choices=["PLAN", "EXECUTE", "plan", "execute"],
        default=None,
        help="Starting mode (default: PLAN).",
    )
    parser.add_argument(
        "--tool-protocol",
        choices=["native", "inline"],
        default=None,
        help="How tools are offered to the model: native tool calls or inline markers.",
    )
    stream = parser.add_mutually_exclusive_group()
    stream.add_argument("--stream", dest="stream", action="store_true", default=None,
                        help="Stream the reply as it is generated (default).")
    stream.add_argument("--no-stream", dest="stream", action="store_false",
                        help="Wait for the whole reply.")
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Maximum model calls per question (default: 25).",
    )
    parser.add_argument(
        "--temperature", type=float, default=None, help="Sampling temperature."
    )
    parser.add_argument(
        "--exclude-tools",
        default=None,
        help="Comma-separated tool names to withhold from the model.",
    )
    parser.add_argument(
        "--base-dir", default=".", help="Project directory the tools operate in."
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a starter codebro.toml and exit.",
    )
    parser.add_argument("-q", "--quiet", action="store_true", help="Only print the answer.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    color = parser.add_mutually_exclusive_group()
    color.add_argument("--color", action="store_true", help="Force colored output.")
    color.add_argument("--no-color", action="store_true", help="Disable colored output.")
    return parser


def _overrides(args) -> dict:
    exclude = None
    if args.exclude_tools is not None:
        exclude = [t.strip() for t in args.exclude_tools.split(",") if t.strip()]
    return {
        "provider": args.provider,
        "model": args.model,
        "api_key": args.api_key,
        "base_url": args.base_url,
        "mode": args.mode,
        "tool_protocol": args.tool_protocol,
        "stream": args.stream,
        "max_iterations": args.max_iterations,
        "temperature": args.temperature,
        "exclude_tools": exclude,
    }


def _write_text(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


async def ask(agent: Agent, question: str, *, stream_to_stdout: bool) -> str:
    """Run one question; streamed text goes to stdout as it arrives."""
    answer = await agent.chat(question, on_text=_write_text if stream_to_stdout else None)
    if stream_to_stdout:
        _write_text("\n")
    else:
        print(answer)
    return answer


def _repl_help() -> None:
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Forget the conversation (the mode is kept)\n"
        "  /mode              Show the current mode\n"
        "  /exit, /quit       Exit the REPL"
    )


def _repl_mode(agent: Agent, arg: str) -> None:
    fmt.info(f"current mode: {agent.mode.value}")
    if arg:
        fmt.warning(
            f"the mode changes only through the {MODE_SWITCH_TOOL} tool; "
            "ask the agent to switch"
        )


async def repl_loop(agent: Agent, *, stream_to_stdout: bool, verbose: bool) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(agent.context.working_directory, ".codebro", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    session = PromptSession(history=FileHistory(history_path), enable_history_search=True)

    if verbose:
        fmt.repl_banner()

    while True:
        prompt_text = FormattedText([("bold fg:ansigreen", f"codebro[{agent.mode.value}]> ")])
        try:
            print(file=sys.stderr)
            line = await session.prompt_async(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break

        cmd, _, arg = line.partition(" ")
        cmd = cmd.lower()
        if cmd == "/help":
            _repl_help()
            continue
        if cmd == "/clear":
            dropped = agent.clear_history()
            fmt.info(f"context cleared ({dropped} messages removed)")
            continue
        if cmd == "/mode":
            _repl_mode(agent, arg.strip())
            continue

        try:
            await ask(agent, line, stream_to_stdout=stream_to_stdout)
        except AgentError as e:
            fmt.error(str(e))
        except KeyboardInterrupt:
            fmt.warning("interrupted, question aborted.")


async def _run(args, config) -> int:
    progress = fmt.RichProgress(verbose=not args.quiet)
    bridge = McpBridge(config.mcp_servers)
    async with bridge:
        agent = create_agent(config, progress=progress, extra_tools=bridge.tools())
        stream_to_stdout = config.stream
        if args.question is not None:
            await ask(agent, args.question, stream_to_stdout=stream_to_stdout)
        if args.repl:
            await repl_loop(agent, stream_to_stdout=stream_to_stdout, verbose=not args.quiet)
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("codebro")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)
    if args.init_config:
        print(generate_config(), end="")
        sys.exit(0)
    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")

    fmt.init(color=args.color, no_color=args.no_color)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        config = build_agent_config(args.base_dir, **_overrides(args))
        sys.exit(asyncio.run(_run(args, config)))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        fmt.warning("interrupted.")
        sys.exit(130)


if __name__ == "__main__":
    main()

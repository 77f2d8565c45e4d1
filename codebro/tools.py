"""Built-in tools: filesystem, search, shell, web, thinking and mode switching.

Every tool returns a JSON-able dict. Failures are reported as
``{"success": False, "error": ...}`` rather than raised, so the model
can read them and adjust.
"""

import asyncio
import fnmatch
import os
import re
import signal
import sys
from pathlib import Path

from . import fmt
from .architect import ArchitectTool
from .edit import replace
from .fetch import DEFAULT_MAX_LENGTH, DEFAULT_TIMEOUT_MS, FORMATS, FetchError, fetch_url
from .mode import MODE_SWITCH_TOOL, parse_mode
from .registry import Tool, ToolContext
from .tasks import TaskManagerTool

MAX_READ_BYTES = 1024 * 1024
MAX_OUTPUT_CHARS = 10 * 1024
MAX_SEARCH_RESULTS = 100
MAX_LINE_LENGTH = 500
BINARY_CHECK_BYTES = 8192
MAX_THINK_DELAY_MS = 10000
DEFAULT_COMMAND_TIMEOUT_MS = 30000
MAX_COMMAND_TIMEOUT_MS = 600000
DEFAULT_EXCLUDE = "node_modules,.git,dist,build"

FORBIDDEN_COMMANDS = [
    re.compile(r"rm\s+(-r[f]?|-fr|--recursive)\s+[./*]"),
    re.compile(r"rm\s+-.*\s+/$"),
    re.compile(r">\s*/dev/[hs]d[a-z]"),
    re.compile(r"\bmkfs"),
    re.compile(r"\bdd\s+.*of=/dev/[hs]d[a-z]"),
    re.compile(r"wget\s+.*\|\s*(ba)?sh"),
    re.compile(r"curl\s+.*\|\s*(ba)?sh"),
    re.compile(r":\(\)\s*\{\s*:\|:&\s*\};:"),
]


def _error(message: str, **extra) -> dict:
    return {"success": False, "error": message, **extra}


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve a path against base_dir, following symlinks.

    Raises:
        ValueError: If the resolved path escapes base_dir.
    """
    if not isinstance(file_path, str) or not file_path:
        raise ValueError("path must be a non-empty string")
    base = Path(base_dir).resolve()
    candidate = Path(file_path)
    resolved = candidate.resolve() if candidate.is_absolute() else (base / candidate).resolve()
    if not resolved.is_relative_to(base):
        raise ValueError(
            f"Path {file_path!r} resolves to {resolved}, which is outside working directory {base}"
        )
    return resolved


def is_forbidden_command(command: str) -> bool:
    return any(p.search(command) for p in FORBIDDEN_COMMANDS)


def _is_binary(path: Path) -> bool:
    with open(path, "rb") as f:
        return b"\x00" in f.read(BINARY_CHECK_BYTES)


def _truncate(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n[truncated, {len(text) - limit} more characters]"


async def _kill_process_tree(proc) -> None:
    """Kill the shell and everything it started, then reap it."""
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    try:
        proc.kill()
    except ProcessLookupError:
        pass
    await proc.wait()


# -- Reasoning and control -----------------------------------------------------


class ThinkingTool(Tool):
    name = "thinkingTool"
    description = (
        "Pause to reason about the task before acting. Use it to think through "
        "a plan, weigh alternatives or reflect on a tool result."
    )
    parameters = {
        "type": "object",
        "properties": {
            "reason": {"type": "string", "description": "Your reasoning, in full sentences."},
            "delayInMs": {
                "type": "number",
                "description": f"Optional pause in milliseconds (max {MAX_THINK_DELAY_MS}).",
            },
        },
        "required": ["reason"],
    }

    async def invoke(self, args: dict, context: ToolContext):
        reason = args.get("reason")
        if not isinstance(reason, str) or not reason.strip():
            return _error("'reason' must be a non-empty string")
        delay = args.get("delayInMs") or 0
        if not isinstance(delay, (int, float)) or isinstance(delay, bool) or delay < 0:
            return _error("'delayInMs' must be a non-negative number")
        if getattr(context.progress, "verbose", False):
            fmt.think_step(reason.strip())
        if delay:
            await asyncio.sleep(min(delay, MAX_THINK_DELAY_MS) / 1000)
        return {"success": True, "reason": reason.strip()}


class AgentModeSwitchTool(Tool):
    """Validates the request; the dispatcher performs the switch once this succeeds."""

    name = MODE_SWITCH_TOOL
    description = (
        "Switch the agent between PLAN mode (analyse the request and record a plan "
        "as tasks) and EXECUTE mode (carry the plan out with tools)."
    )
    parameters = {
        "type": "object",
        "properties": {
            "mode": {
                "type": "string",
                "enum": ["EXECUTE", "PLAN"],
                "description": "The target mode.",
            },
            "purpose": {
                "type": "string",
                "description": "Why the switch is needed.",
            },
        },
        "required": ["mode", "purpose"],
    }

    def run(self, args: dict, context: ToolContext):
        try:
            mode = parse_mode(args.get("mode"))
        except ValueError as e:
            return _error(str(e))
        purpose = args.get("purpose") or ""
        return {
            "success": True,
            "mode": mode.value,
            "message": f"Switched to {mode.value} mode. {purpose}".strip(),
        }


# -- Filesystem ----------------------------------------------------------------


def _structure(directory: Path, max_depth: int, exclude: list[str], depth: int = 0) -> list:
    entries = []
    for child in sorted(directory.iterdir(), key=lambda p: p.name):
        if any(pattern in child.name for pattern in exclude):
            continue
        if child.is_dir() and not child.is_symlink():
            if depth < max_depth:
                entries.append(
                    {
                        "type": "directory",
                        "name": child.name,
                        "children": _structure(child, max_depth, exclude, depth + 1),
                    }
                )
            else:
                entries.append(
                    {"type": "directory", "name": child.name, "note": "max depth reached"}
                )
        else:
            entries.append({"type": "file", "name": child.name, "extension": child.suffix})
    return entries


class ProjectStructureTool(Tool):
    name = "projectStructure"
    description = "Return the directory tree of the project, skipping excluded names."
    parameters = {
        "type": "object",
        "properties": {
            "directory": {
                "type": "string",
                "description": "Directory to describe, relative to the project root. Defaults to '.'.",
            },
            "depth": {"type": "number", "description": "Maximum depth to traverse. Defaults to 3."},
            "exclude": {
                "type": "string",
                "description": f"Comma-separated name fragments to skip. Defaults to '{DEFAULT_EXCLUDE}'.",
            },
        },
    }

    def run(self, args: dict, context: ToolContext):
        directory = args.get("directory") or "."
        try:
            root = safe_resolve(directory, context.working_directory)
        except ValueError as e:
            return _error(str(e))
        if not root.is_dir():
            return _error(f"not a directory: {directory}")
        depth = args.get("depth", 3)
        if not isinstance(depth, (int, float)) or isinstance(depth, bool):
            return _error("'depth' must be a number")
        exclude_arg = args.get("exclude")
        if exclude_arg is None:
            exclude_arg = DEFAULT_EXCLUDE
        exclude = [p.strip() for p in str(exclude_arg).split(",") if p.strip()]
        try:
            structure = _structure(root, max(0, int(depth)), exclude)
        except OSError as e:
            return _error(f"failed to read {directory}: {e}")
        return {"success": True, "directory": directory, "structure": structure}


class ReadFileTool(Tool):
    name = "readFile"
    description = (
        "Read a text file. Pass startLine/endLine (1-based, inclusive) to read a range."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path to the file, relative to the project root."},
            "startLine": {"type": "number", "description": "First line to return (1-based)."},
            "endLine": {"type": "number", "description": "Last line to return (inclusive)."},
        },
        "required": ["path"],
    }

    def run(self, args: dict, context: ToolContext):
        file_path = args.get("path")
        try:
            resolved = safe_resolve(file_path, context.working_directory)
        except ValueError as e:
            return _error(str(e))
        if not resolved.is_file():
            return _error(f"file does not exist: {file_path}")
        try:
            if resolved.stat().st_size > MAX_READ_BYTES:
                return _error(f"file is larger than {MAX_READ_BYTES} bytes, read a line range instead")
            if _is_binary(resolved):
                return _error(f"binary file detected: {file_path}")
            content = resolved.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError) as e:
            return _error(f"failed to read {file_path}: {e}")

        lines = content.split("\n")
        start_line = args.get("startLine")
        if start_line is None:
            return {"success": True, "path": file_path, "content": content, "totalLines": len(lines)}
        start = max(0, int(start_line) - 1)
        end_line = args.get("endLine")
        end = len(lines) if end_line is None else min(len(lines), int(end_line))
        return {
            "success": True,
            "path": file_path,
            "content": "\n".join(lines[start:end]),
            "startLine": start + 1,
            "endLine": end,
            "totalLines": len(lines),
        }


class WriteFileTool(Tool):
    name = "writeFile"
    description = "Create or overwrite a file with the given content."
    parameters = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path to the file, relative to the project root."},
            "content": {"type": "string", "description": "Content to write."},
            "createDirs": {
                "type": "boolean",
                "description": "Create missing parent directories. Defaults to true.",
            },
        },
        "required": ["path", "content"],
    }

    def run(self, args: dict, context: ToolContext):
        file_path = args.get("path")
        content = args.get("content")
        if not isinstance(content, str):
            return _error("'content' must be a string")
        try:
            resolved = safe_resolve(file_path, context.working_directory)
        except ValueError as e:
            return _error(str(e))
        if resolved.is_dir():
            return _error(f"path is a directory: {file_path}")
        if not resolved.parent.is_dir():
            if args.get("createDirs") is False:
                return _error(f"parent directory does not exist: {resolved.parent}")
            resolved.parent.mkdir(parents=True, exist_ok=True)
        data = content.encode("utf-8")
        resolved.write_bytes(data)
        return {"success": True, "path": file_path, "bytes": len(data)}


class EditFileTool(Tool):
    name = "editFile"
    description = (
        "Replace ONE occurrence of oldString with newString in a file. oldString must "
        "identify a unique location; include surrounding lines when needed. With an "
        "empty oldString and a path that does not exist yet, the file is created with newString."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path to the file to modify."},
            "oldString": {"type": "string", "description": "The text to replace."},
            "newString": {"type": "string", "description": "The replacement text."},
        },
        "required": ["path", "oldString", "newString"],
    }

    def run(self, args: dict, context: ToolContext):
        file_path = args.get("path")
        old_string = args.get("oldString", "")
        new_string = args.get("newString")
        if not isinstance(old_string, str) or not isinstance(new_string, str):
            return _error("'oldString' and 'newString' must be strings")
        try:
            resolved = safe_resolve(file_path, context.working_directory)
        except ValueError as e:
            return _error(str(e))

        if not resolved.exists():
            if old_string:
                return _error(f"file does not exist: {file_path}")
            resolved.parent.mkdir(parents=True, exist_ok=True)
            resolved.write_text(new_string, encoding="utf-8")
            return {"success": True, "path": file_path, "created": True}

        try:
            content = resolved.read_text(encoding="utf-8")
            updated = replace(content, old_string, new_string)
        except (UnicodeDecodeError, OSError, ValueError) as e:
            return _error(f"cannot edit {file_path}: {e}")
        resolved.write_text(updated, encoding="utf-8")
        return {"success": True, "path": file_path}


# -- Search --------------------------------------------------------------------


def _search(root: Path, base: Path, regex: re.Pattern, file_pattern: str) -> list[dict]:
    matches = []
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if d not in (".git", "node_modules"))
        for filename in sorted(files):
            path = Path(dirpath) / filename
            rel = path.relative_to(base).as_posix()
            if file_pattern and not (
                fnmatch.fnmatch(filename, file_pattern) or fnmatch.fnmatch(rel, file_pattern)
            ):
                continue
            try:
                if _is_binary(path):
                    continue
                text = path.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            for line_no, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    matches.append({"file": rel, "line": line_no, "text": line[:MAX_LINE_LENGTH]})
    return matches


class SearchCodeTool(Tool):
    name = "searchCode"
    description = (
        "Search file contents for a case-insensitive regular expression. "
        "Returns matching lines with their file and line number."
    )
    parameters = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Regular expression to look for."},
            "path": {"type": "string", "description": "Directory to search. Defaults to the project root."},
            "filePattern": {
                "type": "string",
                "description": "Optional glob limiting the files searched, e.g. '*.py'.",
            },
        },
        "required": ["query"],
    }

    def run(self, args: dict, context: ToolContext):
        query = args.get("query")
        if not isinstance(query, str) or not query:
            return _error("'query' must be a non-empty string")
        try:
            regex = re.compile(query, re.IGNORECASE)
        except re.error as e:
            return _error(f"invalid regex {query!r}: {e}")
        try:
            root = safe_resolve(args.get("path") or ".", context.working_directory)
        except ValueError as e:
            return _error(str(e))
        if not root.is_dir():
            return _error(f"not a directory: {args.get('path')}")

        base = Path(context.working_directory).resolve()
        matches = _search(root, base, regex, args.get("filePattern") or "")
        return {
            "success": True,
            "count": len(matches),
            "results": matches[:MAX_SEARCH_RESULTS],
            "truncated": len(matches) > MAX_SEARCH_RESULTS,
        }


# -- Shell ---------------------------------------------------------------------


class ExecuteCommandTool(Tool):
    name = "executeCommand"
    description = (
        "Run a shell command in the project. Destructive commands such as 'rm -rf /' "
        "or piping downloads into a shell are refused."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "The command to execute."},
            "workingDir": {
                "type": "string",
                "description": "Working directory relative to the project root. Defaults to the root.",
            },
            "timeout": {
                "type": "number",
                "description": f"Timeout in milliseconds. Defaults to {DEFAULT_COMMAND_TIMEOUT_MS}.",
            },
        },
        "required": ["command"],
    }

    async def invoke(self, args: dict, context: ToolContext):
        command = args.get("command")
        if not isinstance(command, str) or not command.strip():
            return _error("'command' must be a non-empty string")
        if is_forbidden_command(command):
            return _error("command is forbidden for security reasons", command=command)
        try:
            cwd = safe_resolve(args.get("workingDir") or ".", context.working_directory)
        except ValueError as e:
            return _error(str(e))
        if not cwd.is_dir():
            return _error(f"working directory does not exist: {args.get('workingDir')}")
        timeout_ms = args.get("timeout") or DEFAULT_COMMAND_TIMEOUT_MS
        if (
            not isinstance(timeout_ms, (int, float))
            or isinstance(timeout_ms, bool)
            or timeout_ms <= 0
        ):
            return _error("'timeout' must be a positive number of milliseconds")
        timeout = min(timeout_ms, MAX_COMMAND_TIMEOUT_MS) / 1000

        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            start_new_session=sys.platform != "win32",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            await _kill_process_tree(proc)
            return _error(
                f"command timed out after {timeout:g}s",
                command=command,
                workingDir=str(cwd),
            )

        result = {
            "success": proc.returncode == 0,
            "exitCode": proc.returncode,
            "stdout": _truncate(stdout.decode("utf-8", errors="replace")),
            "stderr": _truncate(stderr.decode("utf-8", errors="replace")),
            "command": command,
            "workingDir": str(cwd),
        }
        if proc.returncode != 0:
            result["error"] = f"command exited with status {proc.returncode}"
        return result


# -- Web -----------------------------------------------------------------------


class FetchUrlTool(Tool):
    name = "fetchUrl"
    description = "Fetch a public web page and return its content as Markdown or text."
    parameters = {
        "type": "object",
        "properties": {
            "url": {"type": "string", "description": "The http(s) URL to fetch."},
            "maxLength": {
                "type": "number",
                "description": f"Maximum characters to return. Defaults to {DEFAULT_MAX_LENGTH}.",
            },
            "timeout": {
                "type": "number",
                "description": f"Request timeout in milliseconds. Defaults to {DEFAULT_TIMEOUT_MS}.",
            },
            "format": {
                "type": "string",
                "enum": list(FORMATS),
                "description": "How HTML pages are returned. Defaults to markdown.",
            },
        },
        "required": ["url"],
    }

    def run(self, args: dict, context: ToolContext):
        try:
            page = fetch_url(
                args.get("url"),
                max_length=int(args.get("maxLength") or DEFAULT_MAX_LENGTH),
                timeout_ms=int(args.get("timeout") or DEFAULT_TIMEOUT_MS),
                format=args.get("format") or "markdown",
            )
        except (FetchError, ValueError, TypeError) as e:
            return _error(str(e))
        return {"success": True, **page}


def default_tools() -> list[Tool]:
    """Built-in tools in the order they are declared to the model."""
    return [
        ThinkingTool(),
        AgentModeSwitchTool(),
        TaskManagerTool(),
        ProjectStructureTool(),
        ReadFileTool(),
        WriteFileTool(),
        EditFileTool(),
        SearchCodeTool(),
        ExecuteCommandTool(),
        FetchUrlTool(),
        ArchitectTool(),
    ]

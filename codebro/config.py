"""Configuration file loading and merging for codebro.

Reads TOML config from ~/.config/codebro/config.toml (global) and
<project>/codebro.toml (project). Precedence: CLI > project > global > defaults.
Free-form rules for the system prompt come from ``.codebrorules`` files next
to either config.
"""

import os
import sys
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from .consumer import PROVIDERS
from .errors import ConfigError
from .messages import DEFAULT_KEEP_RECENT, DEFAULT_MAX_HISTORY

DEFAULT_MAX_ITERATIONS = 25
RULES_FILE_NAME = ".codebrorules"
PROJECT_DIR_NAME = ".codebro"

API_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "azure": "AZURE_API_KEY",
}


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "stream": bool,
    "tool_protocol": str,
    "mode": str,
    "max_iterations": int,
    "max_history": int,
    "keep_recent": int,
    "exclude_tools": list,
    "temperature": (int, float),
}

_MCP_SERVER_FIELD_TYPES: dict[str, type | tuple[type, ...]] = {
    "command": str,
    "url": str,
    "args": list,
    "env": dict,
    "headers": dict,
}


@dataclass(frozen=True)
class AgentConfig:
    """Everything one agent instance is configured with."""

    model: str | None = None
    provider: str = "openai"
    api_key: str | None = None
    base_url: str | None = None
    stream: bool = True
    tool_protocol: str = "native"
    mode: str = "PLAN"
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_history: int = DEFAULT_MAX_HISTORY
    keep_recent: int = DEFAULT_KEEP_RECENT
    exclude_tools: tuple[str, ...] = ()
    temperature: float | None = None
    working_directory: str = "."
    additional_rules: str = ""
    mcp_servers: dict[str, dict] = field(default_factory=dict)

    def with_overrides(self, **overrides: Any) -> "AgentConfig":
        """Return a copy with every non-None override applied."""
        known = {f.name for f in fields(self)}
        changes = {k: v for k, v in overrides.items() if v is not None and k in known}
        if "exclude_tools" in changes:
            changes["exclude_tools"] = tuple(changes["exclude_tools"])
        return replace(self, **changes)


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "codebro"
    return Path.home() / ".config" / "codebro"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if expected is list:
        return "list"
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types of a parsed config dict.

    Raises ConfigError for type mismatches or bad values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject it for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    if "exclude_tools" in config:
        for i, item in enumerate(config["exclude_tools"]):
            if not isinstance(item, str):
                raise ConfigError(
                    f"{source}: 'exclude_tools[{i}]' expected str, got {type(item).__name__}"
                )
    if "provider" in config and config["provider"] not in PROVIDERS:
        raise ConfigError(
            f"{source}: 'provider' must be one of {', '.join(PROVIDERS)}, got {config['provider']!r}"
        )
    if "tool_protocol" in config and config["tool_protocol"] not in ("native", "inline"):
        raise ConfigError(f"{source}: 'tool_protocol' must be 'native' or 'inline'")
    if "mode" in config and config["mode"].upper() not in ("PLAN", "EXECUTE"):
        raise ConfigError(f"{source}: 'mode' must be 'PLAN' or 'EXECUTE'")
    for key in ("max_iterations", "max_history", "keep_recent"):
        if key in config and config[key] < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1")


def _validate_mcp_server_configs(servers: dict, source: str) -> None:
    """Validate structure and field types of MCP server configurations."""
    from .mcp_bridge import validate_server_name

    for name, cfg in servers.items():
        validate_server_name(name)
        if not isinstance(cfg, dict):
            raise ConfigError(f"{source}: mcp_servers.{name} must be a table")
        has_command = "command" in cfg
        has_url = "url" in cfg
        if has_command == has_url:
            raise ConfigError(
                f"{source}: mcp_servers.{name} needs exactly one of 'command' or 'url'"
            )
        prefix = f"{source}: mcp_servers.{name}"
        for fname, expected in _MCP_SERVER_FIELD_TYPES.items():
            if fname in cfg and not isinstance(cfg[fname], expected):
                raise ConfigError(
                    f"{prefix}.{fname}: expected {_type_name(expected)}, "
                    f"got {type(cfg[fname]).__name__}"
                )
        for i, elem in enumerate(cfg.get("args", [])):
            if not isinstance(elem, str):
                raise ConfigError(
                    f"{prefix}.args[{i}]: expected string, got {type(elem).__name__}"
                )
        for dict_field in ("env", "headers"):
            for k, v in cfg.get(dict_field, {}).items():
                if not isinstance(v, str):
                    raise ConfigError(
                        f"{prefix}.{dict_field}.{k}: expected string, got {type(v).__name__}"
                    )


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    mcp_servers = config.pop("mcp_servers", None)

    _validate_config(config, label)
    known = {k: v for k, v in config.items() if k in CONFIG_KEYS}

    if mcp_servers is not None:
        if not isinstance(mcp_servers, dict):
            raise ConfigError(f"{label}: 'mcp_servers' must be a table")
        _validate_mcp_server_configs(mcp_servers, label)
        known["mcp_servers"] = mcp_servers

    return known


def _read_rules(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace").strip()
    except FileNotFoundError:
        return ""
    except OSError as e:
        raise ConfigError(f"{path}: cannot read rules: {e}") from e


def load_rules(project_dir: Path, config_dir: Path | None = None) -> str:
    """Concatenate global and project ``.codebrorules``."""
    config_dir = config_dir or global_config_dir()
    sections = [
        _read_rules(config_dir / RULES_FILE_NAME),
        _read_rules(Path(project_dir) / PROJECT_DIR_NAME / RULES_FILE_NAME),
    ]
    return "\n\n".join(s for s in sections if s)


# --- Public API ---


def load_config(project_dir: Path | str = ".", config_dir: Path | None = None) -> dict:
    """Load and merge global + project config.

    Returns a flat dict holding only keys that were set in config files.
    ``mcp_servers`` is merged by server name, project entries winning.
    """
    config_dir = config_dir or global_config_dir()
    global_path = config_dir / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(project_dir).resolve() / "codebro.toml"
    project_config = _load_single(project_path, str(project_path))

    global_mcp = global_config.pop("mcp_servers", None) or {}
    project_mcp = project_config.pop("mcp_servers", None) or {}
    merged = {**global_config, **project_config}
    mcp_servers = {**global_mcp, **project_mcp}
    if mcp_servers:
        merged["mcp_servers"] = mcp_servers
    return merged


def build_agent_config(
    project_dir: Path | str = ".",
    *,
    config_dir: Path | None = None,
    environ: dict | None = None,
    **overrides: Any,
) -> AgentConfig:
    """Resolve the final AgentConfig from files, rules, environment and CLI overrides."""
    environ = os.environ if environ is None else environ
    file_config = load_config(project_dir, config_dir)
    project_dir = str(Path(project_dir).resolve())

    config = AgentConfig(working_directory=project_dir).with_overrides(**file_config)
    config = config.with_overrides(**overrides)
    if config.mode:
        config = replace(config, mode=config.mode.upper())

    if not config.model:
        raise ConfigError("no model configured: pass --model or set 'model' in codebro.toml")
    if config.keep_recent >= config.max_history:
        raise ConfigError("'keep_recent' must be smaller than 'max_history'")

    if not config.api_key and config.provider in API_KEY_ENV:
        key = environ.get(API_KEY_ENV[config.provider])
        if not key:
            raise ConfigError(
                f"--api-key or {API_KEY_ENV[config.provider]} env var required "
                f"for {config.provider} provider"
            )
        config = replace(config, api_key=key)

    rules = load_rules(Path(project_dir), config_dir)
    if rules:
        config = replace(config, additional_rules=rules)
    return config


def generate_config() -> str:
    """Return a commented starter codebro.toml."""
    return (
        "# codebro configuration\n"
        '# provider = "openai"          # openai, openrouter, azure, lmstudio\n'
        '# model = "gpt-4o"\n'
        '# base_url = "https://..."\n'
        "# stream = true\n"
        '# tool_protocol = "native"     # or "inline" for models without tool calling\n'
        '# mode = "PLAN"\n'
        f"# max_iterations = {DEFAULT_MAX_ITERATIONS}\n"
        f"# max_history = {DEFAULT_MAX_HISTORY}\n"
        f"# keep_recent = {DEFAULT_KEEP_RECENT}\n"
        "# exclude_tools = []\n"
        "\n"
        "# [mcp_servers.filesystem]\n"
        '# command = "npx"\n'
        '# args = ["-y", "@modelcontextprotocol/server-filesystem", "."]\n'
    )

"""Tests for codebro.config: TOML loading, merging, rules, and the resolved AgentConfig."""

import pytest

from codebro.config import (
    AgentConfig,
    ConfigError,
    build_agent_config,
    generate_config,
    global_config_dir,
    load_config,
    load_rules,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


@pytest.fixture
def dirs(tmp_path, monkeypatch):
    """An isolated global config dir and an empty project dir."""
    global_dir = tmp_path / "xdg"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
    project = tmp_path / "project"
    project.mkdir()
    return global_dir / "codebro", project


# ===========================================================================
# Config loading
# ===========================================================================


class TestLoadConfig:
    def test_missing_files_returns_empty(self, dirs):
        _, project = dirs
        assert load_config(project) == {}

    def test_global_dir_respects_xdg(self, dirs):
        global_dir, _ = dirs
        assert global_config_dir() == global_dir

    def test_project_overrides_global(self, dirs):
        global_dir, project = dirs
        _write_toml(global_dir / "config.toml", 'model = "a"\nmax_iterations = 10\n')
        _write_toml(project / "codebro.toml", "max_iterations = 50\n")
        result = load_config(project)
        assert result == {"model": "a", "max_iterations": 50}

    def test_mcp_servers_merged_by_name(self, dirs):
        global_dir, project = dirs
        _write_toml(
            global_dir / "config.toml",
            '[mcp_servers.fs]\ncommand = "fs-global"\n[mcp_servers.web]\nurl = "http://x/sse"\n',
        )
        _write_toml(project / "codebro.toml", '[mcp_servers.fs]\ncommand = "fs-project"\n')
        servers = load_config(project)["mcp_servers"]
        assert servers["fs"] == {"command": "fs-project"}
        assert servers["web"] == {"url": "http://x/sse"}

    def test_unknown_key_warns(self, dirs, capsys):
        _, project = dirs
        _write_toml(project / "codebro.toml", "colour = true\n")
        assert load_config(project) == {}
        assert "unknown config key 'colour'" in capsys.readouterr().err

    @pytest.mark.parametrize(
        "content",
        [
            'max_iterations = "ten"\n',
            "stream = 1\n",
            "max_history = true\n",
            'provider = "carrier-pigeon"\n',
            'tool_protocol = "smoke"\n',
            'mode = "DREAM"\n',
            "max_iterations = 0\n",
            "exclude_tools = [1]\n",
            "model = [\n",
        ],
    )
    def test_invalid_values(self, dirs, content):
        _, project = dirs
        _write_toml(project / "codebro.toml", content)
        with pytest.raises(ConfigError):
            load_config(project)

    @pytest.mark.parametrize(
        "content",
        [
            '[mcp_servers."bad name"]\ncommand = "x"\n',
            '[mcp_servers.a__b]\ncommand = "x"\n',
            "[mcp_servers.none]\n",
            '[mcp_servers.both]\ncommand = "x"\nurl = "http://y"\n',
            '[mcp_servers.args]\ncommand = "x"\nargs = [1]\n',
            '[mcp_servers.env]\ncommand = "x"\nenv = { A = 1 }\n',
        ],
    )
    def test_invalid_mcp_servers(self, dirs, content):
        _, project = dirs
        _write_toml(project / "codebro.toml", content)
        with pytest.raises(ConfigError):
            load_config(project)


# ===========================================================================
# Rules
# ===========================================================================


class TestLoadRules:
    def test_global_and_project_rules_concatenated(self, dirs):
        global_dir, project = dirs
        _write_toml(global_dir / ".codebrorules", "Use tabs.\n")
        _write_toml(project / ".codebro" / ".codebrorules", "Prefer pathlib.\n")
        assert load_rules(project) == "Use tabs.\n\nPrefer pathlib."

    def test_no_rules(self, dirs):
        _, project = dirs
        assert load_rules(project) == ""


# ===========================================================================
# AgentConfig resolution
# ===========================================================================


class TestBuildAgentConfig:
    def test_defaults(self, dirs):
        _, project = dirs
        cfg = build_agent_config(project, model="gpt-4o", environ={"OPENAI_API_KEY": "sk-env"})
        assert cfg.model == "gpt-4o"
        assert cfg.provider == "openai"
        assert cfg.api_key == "sk-env"
        assert cfg.mode == "PLAN"
        assert cfg.max_iterations == 25
        assert cfg.max_history == 70
        assert cfg.keep_recent == 69
        assert cfg.working_directory == str(project.resolve())

    def test_cli_overrides_file(self, dirs):
        _, project = dirs
        _write_toml(project / "codebro.toml", 'model = "file-model"\nmax_iterations = 5\n')
        cfg = build_agent_config(
            project, model="cli-model", api_key="k", max_iterations=None, environ={}
        )
        assert cfg.model == "cli-model"
        assert cfg.max_iterations == 5

    def test_env_key_per_provider(self, dirs):
        _, project = dirs
        cfg = build_agent_config(
            project, provider="openrouter", model="m", environ={"OPENROUTER_API_KEY": "or"}
        )
        assert cfg.api_key == "or"

    def test_missing_api_key(self, dirs):
        _, project = dirs
        with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
            build_agent_config(project, model="m", environ={})

    def test_lmstudio_needs_no_key(self, dirs):
        _, project = dirs
        cfg = build_agent_config(project, provider="lmstudio", model="m", environ={})
        assert cfg.api_key is None

    def test_missing_model(self, dirs):
        _, project = dirs
        with pytest.raises(ConfigError, match="no model"):
            build_agent_config(project, api_key="k", environ={})

    def test_keep_recent_must_be_below_max_history(self, dirs):
        _, project = dirs
        _write_toml(project / "codebro.toml", "max_history = 10\nkeep_recent = 10\n")
        with pytest.raises(ConfigError):
            build_agent_config(project, model="m", api_key="k", environ={})

    def test_mode_normalized_and_rules_attached(self, dirs):
        _, project = dirs
        _write_toml(project / "codebro.toml", 'mode = "execute"\nexclude_tools = ["fetchUrl"]\n')
        _write_toml(project / ".codebro" / ".codebrorules", "Be brief.\n")
        cfg = build_agent_config(project, model="m", api_key="k", environ={})
        assert cfg.mode == "EXECUTE"
        assert cfg.exclude_tools == ("fetchUrl",)
        assert cfg.additional_rules == "Be brief."


def test_with_overrides_ignores_none_and_unknown():
    cfg = AgentConfig(model="a").with_overrides(model=None, bogus=1, max_iterations=3)
    assert cfg.model == "a"
    assert cfg.max_iterations == 3


def test_generate_config_is_commented_toml():
    import tomllib

    assert tomllib.loads(generate_config()) == {}

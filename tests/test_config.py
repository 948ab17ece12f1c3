"""Tests for gptx.config: Config validation, TOML loading, env vars and CLI merge."""

import argparse
import tomllib

import pytest

from gptx.config import (
    _UNSET,
    DEFAULT_SYSTEM_PROMPT,
    Config,
    ConfigError,
    apply_config_to_args,
    config_from_args,
    generate_config,
    global_config_dir,
    load_config,
    load_env,
    resolve_api_key,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    """Point the global config at an empty dir and clear GPTX_* variables."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    for var in (
        "GPTX_API_KEY",
        "GPTX_MODEL",
        "GPTX_SYS_PROMPT",
        "GPTX_TOOLS",
        "GPTX_MAX_TOKENS",
        "GPTX_TEMPERATURE",
        "GPTX_MAX_ITERATIONS",
        "GPTX_PROVIDER",
        "GPTX_BASE_URL",
        "GPTX_SHELL",
        "GPTX_CHAT",
        "OPENAI_API_KEY",
        "OPENROUTER_API_KEY",
    ):
        monkeypatch.delenv(var, raising=False)


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _global_toml(tmp_path):
    return tmp_path / "xdg" / "gptx" / "config.toml"


def _make_args(**overrides):
    """Build a namespace mimicking build_parser() with _UNSET sentinels."""
    defaults = {
        "provider": _UNSET,
        "model": _UNSET,
        "api_key": _UNSET,
        "base_url": _UNSET,
        "system_prompt": _UNSET,
        "no_system_prompt": _UNSET,
        "tools": _UNSET,
        "max_tokens": _UNSET,
        "temperature": _UNSET,
        "max_iterations": _UNSET,
        "shell": _UNSET,
        "tool_timeout": _UNSET,
        "request_timeout": _UNSET,
        "reasoning_effort": _UNSET,
        "user_id": _UNSET,
        "stream": _UNSET,
        "chat": _UNSET,
        "color": _UNSET,
        "no_color": _UNSET,
        "quiet": _UNSET,
        "base_dir": ".",
    }
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


# ---------------------------------------------------------------------------
# Config object
# ---------------------------------------------------------------------------


class TestConfig:
    def test_defaults(self):
        c = Config()
        assert c.model == "o4-mini"
        assert c.max_iterations == 10
        assert c.stream is True
        assert c.tools == ()
        assert c.system_prompt == DEFAULT_SYSTEM_PROMPT

    def test_frozen(self):
        c = Config()
        with pytest.raises(AttributeError):
            c.model = "other"

    def test_tools_become_tuple(self):
        assert Config(tools=["shell"]).tools == ("shell",)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"temperature": -0.1},
            {"max_tokens": 0},
            {"max_iterations": 0},
            {"tool_timeout": 0},
            {"model": ""},
            {"provider": "acme"},
            {"reasoning_effort": "extreme"},
            {"request_timeout": 0},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigError):
            Config(**kwargs)

    def test_zero_temperature_allowed(self):
        assert Config(temperature=0.0).temperature == 0.0

    def test_redacted_masks_key(self):
        data = Config(api_key="sk-secret-value").redacted()
        assert data["api_key"] == "sk-s..."
        assert data["tools"] == []


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_no_files(self, tmp_path):
        assert load_config(tmp_path) == {}

    def test_global_dir_respects_xdg(self, tmp_path):
        assert global_config_dir() == tmp_path / "xdg" / "gptx"

    def test_project_overrides_global(self, tmp_path):
        _write_toml(_global_toml(tmp_path), 'model = "global"\nmax_iterations = 4\n')
        _write_toml(tmp_path / ".gptx.toml", 'model = "project"\n')
        config = load_config(tmp_path)
        assert config == {"model": "project", "max_iterations": 4}

    def test_env_overrides_project(self, tmp_path, monkeypatch):
        _write_toml(tmp_path / ".gptx.toml", 'model = "project"\n')
        monkeypatch.setenv("GPTX_MODEL", "from-env")
        assert load_config(tmp_path)["model"] == "from-env"

    def test_invalid_toml(self, tmp_path):
        _write_toml(tmp_path / ".gptx.toml", "model = \n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(tmp_path)

    def test_wrong_type(self, tmp_path):
        _write_toml(tmp_path / ".gptx.toml", 'max_iterations = "ten"\n')
        with pytest.raises(ConfigError, match="max_iterations"):
            load_config(tmp_path)

    def test_bool_is_not_int(self, tmp_path):
        _write_toml(tmp_path / ".gptx.toml", "max_tokens = true\n")
        with pytest.raises(ConfigError, match="got bool"):
            load_config(tmp_path)

    def test_tools_must_be_strings(self, tmp_path):
        _write_toml(tmp_path / ".gptx.toml", 'tools = ["shell", 3]\n')
        with pytest.raises(ConfigError, match=r"tools\[1\]"):
            load_config(tmp_path)

    def test_unknown_key_warns(self, tmp_path, capsys):
        _write_toml(tmp_path / ".gptx.toml", "colour = true\n")
        assert load_config(tmp_path) == {}
        assert "unknown config key 'colour'" in capsys.readouterr().err

    def test_system_prompt_exclusive(self, tmp_path):
        _write_toml(
            tmp_path / ".gptx.toml", 'system_prompt = "x"\nno_system_prompt = true\n'
        )
        with pytest.raises(ConfigError, match="mutually exclusive"):
            load_config(tmp_path)

    def test_custom_tools_merged_by_name(self, tmp_path):
        _write_toml(
            _global_toml(tmp_path),
            '[custom_tools.a]\ncommand = "echo global-a"\n'
            '[custom_tools.b]\ncommand = "echo global-b"\n',
        )
        _write_toml(tmp_path / ".gptx.toml", '[custom_tools.a]\ncommand = "echo project-a"\n')
        tools = load_config(tmp_path)["custom_tools"]
        assert tools["a"]["command"] == "echo project-a"
        assert tools["b"]["command"] == "echo global-b"

    def test_custom_tool_needs_command(self, tmp_path):
        _write_toml(tmp_path / ".gptx.toml", '[custom_tools.a]\ndescription = "x"\n')
        with pytest.raises(ConfigError, match="must have 'command'"):
            load_config(tmp_path)

    def test_api_key_in_git_project_warns(self, tmp_path, capsys):
        (tmp_path / ".git").mkdir()
        _write_toml(tmp_path / ".gptx.toml", 'api_key = "sk-x"\n')
        load_config(tmp_path)
        assert "git-tracked" in capsys.readouterr().err


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


class TestEnv:
    def test_parses_types(self):
        env = {
            "GPTX_MODEL": "gpt-4o",
            "GPTX_MAX_TOKENS": "256",
            "GPTX_TEMPERATURE": "0.5",
            "GPTX_MAX_ITERATIONS": "4",
            "GPTX_TOOLS": "shell, repo",
            "GPTX_SYS_PROMPT": "be brief",
            "GPTX_REASON": "high",
            "GPTX_TIMEOUT": "90",
        }
        assert load_env(env) == {
            "model": "gpt-4o",
            "max_tokens": 256,
            "temperature": 0.5,
            "max_iterations": 4,
            "tools": ["shell", "repo"],
            "system_prompt": "be brief",
            "reasoning_effort": "high",
            "request_timeout": 90.0,
        }

    def test_bad_number(self):
        with pytest.raises(ConfigError, match="GPTX_MAX_TOKENS"):
            load_env({"GPTX_MAX_TOKENS": "lots"})

    def test_empty_values_ignored(self):
        assert load_env({"GPTX_MODEL": ""}) == {}

    def test_api_key_fallback_per_provider(self):
        env = {"OPENAI_API_KEY": "sk-o", "OPENROUTER_API_KEY": "sk-r"}
        assert resolve_api_key("openai", None, env) == "sk-o"
        assert resolve_api_key("openrouter", None, env) == "sk-r"
        assert resolve_api_key("lmstudio", None, env) is None
        assert resolve_api_key("openai", "explicit", env) == "explicit"


# ---------------------------------------------------------------------------
# CLI merge
# ---------------------------------------------------------------------------


class TestApplyConfig:
    def test_cli_wins(self):
        args = _make_args(model="cli-model")
        apply_config_to_args(args, {"model": "file-model", "max_iterations": 2})
        assert args.model == "cli-model"
        assert args.max_iterations == 2

    def test_defaults_fill_unset(self):
        args = _make_args()
        apply_config_to_args(args, {})
        assert args.provider == "openai"
        assert args.max_iterations == 10
        assert args.stream is True
        assert args.tools == []
        assert args.quiet is False

    def test_color_key(self):
        args = _make_args()
        apply_config_to_args(args, {"color": False})
        assert args.color is False
        assert args.no_color is True

    def test_config_from_args(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        args = _make_args(tools=["shell,repo", "repo"], temperature=0.2)
        apply_config_to_args(args, {"custom_tools": {"w": {"command": "true"}}})
        config = config_from_args(args)
        assert config.api_key == "sk-env"
        assert config.tools == ("shell", "repo")
        assert config.temperature == 0.2
        assert config.custom_tools == {"w": {"command": "true"}}
        assert config.system_prompt == DEFAULT_SYSTEM_PROMPT

    def test_reasoning_effort_and_timeout_from_file(self):
        args = _make_args(api_key="k")
        apply_config_to_args(args, {"reasoning_effort": "low", "request_timeout": 45})
        config = config_from_args(args)
        assert config.reasoning_effort == "low"
        assert config.request_timeout == 45

    def test_reasoning_effort_unset_by_default(self):
        args = _make_args(api_key="k")
        apply_config_to_args(args, {})
        config = config_from_args(args)
        assert config.reasoning_effort is None
        assert config.request_timeout is None

    def test_no_system_prompt(self):
        args = _make_args(no_system_prompt=True, api_key="k")
        apply_config_to_args(args, {})
        assert config_from_args(args).system_prompt is None

    def test_missing_api_key(self):
        args = _make_args()
        apply_config_to_args(args, {})
        with pytest.raises(ConfigError, match="no API key"):
            config_from_args(args)

    def test_lmstudio_needs_no_key(self):
        args = _make_args(provider="lmstudio")
        apply_config_to_args(args, {})
        assert config_from_args(args).api_key is None

    def test_invalid_value_from_cli(self):
        args = _make_args(api_key="k", max_iterations=0)
        apply_config_to_args(args, {})
        with pytest.raises(ConfigError, match="max_iterations"):
            config_from_args(args)


class TestGenerateConfig:
    def test_template_is_valid_toml_when_uncommented(self):
        text = generate_config()
        lines = [
            line[2:]
            for line in text.splitlines()
            if line.startswith("# ") and "=" in line and not line.startswith("# -")
        ]
        # Every commented assignment parses on its own
        for line in lines:
            tomllib.loads(line.split("  #")[0])

    def test_project_variant(self):
        assert ".gptx.toml" in generate_config(project=True)

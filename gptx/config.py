"""Configuration for gptx: the Config object, TOML files and environment.

Reads TOML config from ~/.config/gptx/config.toml (global) and
<base_dir>/.gptx.toml (project), then GPTX_* environment variables.
Precedence: CLI > environment > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .report import ConfigError

APP_NAME = "gptx"

DEFAULT_MODEL = "o4-mini"
DEFAULT_PROVIDER = "openai"
DEFAULT_MAX_ITERATIONS = 10
DEFAULT_TOOL_TIMEOUT = 30
DEFAULT_SYSTEM_PROMPT = (
    f"You are '{APP_NAME}', a CLI app. You are an extension of the command line.\n"
    "You behave and respond like a command line tool. Be concise."
)

PROVIDERS = ("openai", "openrouter", "lmstudio")
REASONING_EFFORTS = ("minimal", "low", "medium", "high")

_UNSET = object()  # Sentinel for "not set by CLI"


@dataclass(frozen=True)
class Config:
    """Per-conversation settings. Read-only once constructed."""

    model: str = DEFAULT_MODEL
    api_key: str | None = None
    system_prompt: str | None = DEFAULT_SYSTEM_PROMPT
    tools: tuple[str, ...] = ()
    temperature: float | None = None
    max_tokens: int | None = None
    reasoning_effort: str | None = None
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    provider: str = DEFAULT_PROVIDER
    base_url: str | None = None
    user_id: str | None = None
    stream: bool = True
    shell: str | None = None
    base_dir: str = "."
    tool_timeout: int = DEFAULT_TOOL_TIMEOUT
    request_timeout: float | None = None
    custom_tools: dict[str, dict] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "tools", tuple(self.tools))
        if not self.model:
            raise ConfigError("model must not be empty")
        if self.provider not in PROVIDERS:
            raise ConfigError(
                f"unknown provider {self.provider!r} (expected one of: {', '.join(PROVIDERS)})"
            )
        if self.temperature is not None and self.temperature < 0:
            raise ConfigError(f"temperature must be >= 0, got {self.temperature}")
        if self.max_tokens is not None and self.max_tokens < 1:
            raise ConfigError(f"max_tokens must be >= 1, got {self.max_tokens}")
        if self.max_iterations < 1:
            raise ConfigError(
                f"max_iterations must be >= 1, got {self.max_iterations}"
            )
        if self.tool_timeout < 1:
            raise ConfigError(f"tool_timeout must be >= 1, got {self.tool_timeout}")
        if self.request_timeout is not None and self.request_timeout <= 0:
            raise ConfigError(
                f"request_timeout must be > 0, got {self.request_timeout}"
            )
        if (
            self.reasoning_effort is not None
            and self.reasoning_effort not in REASONING_EFFORTS
        ):
            raise ConfigError(
                f"unknown reasoning effort {self.reasoning_effort!r} "
                f"(expected one of: {', '.join(REASONING_EFFORTS)})"
            )

    def redacted(self) -> dict:
        """Settings as a dict with the API key masked, for display and reports."""
        data = asdict(self)
        if data["api_key"]:
            data["api_key"] = data["api_key"][:4] + "..."
        data["tools"] = list(self.tools)
        return data


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "system_prompt": str,
    "no_system_prompt": bool,
    "tools": list,
    "max_tokens": int,
    "temperature": (int, float),
    "reasoning_effort": str,
    "max_iterations": int,
    "shell": str,
    "tool_timeout": int,
    "request_timeout": (int, float),
    "user_id": str,
    "stream": bool,
    "chat": str,
    "color": bool,
    "quiet": bool,
}

_LIST_OF_STR_KEYS = {"tools"}

_CUSTOM_TOOL_FIELD_TYPES: dict[str, type | tuple[type, ...]] = {
    "command": str,
    "description": str,
    "parameters": dict,
    "timeout": int,
}

# Config key -> environment variables, first match wins.
ENV_VARS: dict[str, tuple[str, ...]] = {
    "api_key": ("GPTX_API_KEY",),
    "model": ("GPTX_MODEL",),
    "system_prompt": ("GPTX_SYS_PROMPT",),
    "tools": ("GPTX_TOOLS",),
    "max_tokens": ("GPTX_MAX_TOKENS",),
    "temperature": ("GPTX_TEMPERATURE",),
    "reasoning_effort": ("GPTX_REASON",),
    "max_iterations": ("GPTX_MAX_ITERATIONS",),
    "provider": ("GPTX_PROVIDER",),
    "base_url": ("GPTX_BASE_URL",),
    "shell": ("GPTX_SHELL",),
    "chat": ("GPTX_CHAT",),
    "request_timeout": ("GPTX_TIMEOUT",),
}

# Provider -> conventional API key variable, used when api_key is unset.
PROVIDER_KEY_VARS: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": DEFAULT_PROVIDER,
    "model": DEFAULT_MODEL,
    "api_key": None,
    "base_url": None,
    "system_prompt": None,
    "no_system_prompt": False,
    "tools": [],
    "max_tokens": None,
    "temperature": None,
    "reasoning_effort": None,
    "max_iterations": DEFAULT_MAX_ITERATIONS,
    "shell": None,
    "tool_timeout": DEFAULT_TOOL_TIMEOUT,
    "request_timeout": None,
    "user_id": None,
    "stream": True,
    "chat": None,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / APP_NAME
    return Path.home() / ".config" / APP_NAME


def _type_name(expected: type | tuple[type, ...]) -> str:
    """Format an expected type spec as a human-readable string."""
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _check_type(value: Any, expected, label: str) -> None:
    # bool is a subclass of int in Python; reject bools for non-bool fields.
    if isinstance(value, bool) and expected is not bool:
        raise ConfigError(f"{label}: expected {_type_name(expected)}, got bool")
    if not isinstance(value, expected):
        raise ConfigError(
            f"{label}: expected {_type_name(expected)}, got {type(value).__name__}"
        )


def _validate_config(config: dict, source: str) -> None:
    """Validate types and mutual exclusions in a parsed config dict.

    Raises ConfigError for type mismatches or invalid combinations.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        _check_type(value, CONFIG_KEYS[key], f"{source}: {key!r}")

        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )

    if config.get("system_prompt") and config.get("no_system_prompt"):
        raise ConfigError(
            f"{source}: 'system_prompt' and 'no_system_prompt' are mutually exclusive"
        )


def _validate_custom_tools(tools: dict, source: str) -> None:
    """Validate [custom_tools.<name>] tables."""
    for name, spec in tools.items():
        prefix = f"{source}: custom_tools.{name}"
        if not isinstance(spec, dict):
            raise ConfigError(f"{prefix} must be a table")
        if "command" not in spec:
            raise ConfigError(f"{prefix} must have 'command'")
        for key, expected in _CUSTOM_TOOL_FIELD_TYPES.items():
            if key in spec:
                _check_type(spec[key], expected, f"{prefix}.{key}")


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    # custom_tools is a nested table, not a flat key
    custom_tools = config.pop("custom_tools", None)

    _validate_config(config, label)
    known = {k: v for k, v in config.items() if k in CONFIG_KEYS}

    if custom_tools is not None:
        if not isinstance(custom_tools, dict):
            raise ConfigError(f"{label}: 'custom_tools' must be a table")
        _validate_custom_tools(custom_tools, label)
        known["custom_tools"] = custom_tools

    return known


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _parse_env_value(key: str, raw: str, var: str) -> Any:
    expected = CONFIG_KEYS[key]
    if key in _LIST_OF_STR_KEYS:
        return [item.strip() for item in raw.split(",") if item.strip()]
    try:
        if expected is int:
            return int(raw)
        if expected == (int, float):
            return float(raw)
    except ValueError:
        raise ConfigError(f"{var}: expected {_type_name(expected)}, got {raw!r}")
    return raw


# --- Public API ---


def load_env(environ: dict[str, str] | None = None) -> dict:
    """Read config values from the GPTX_* environment variables."""
    environ = os.environ if environ is None else environ
    config = {}
    for key, names in ENV_VARS.items():
        for var in names:
            raw = environ.get(var)
            if raw:
                config[key] = _parse_env_value(key, raw, var)
                break
    return config


def load_config(base_dir: Path | str, environ: dict[str, str] | None = None) -> dict:
    """Load and merge global config, project config and environment.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set are included (no defaults injected). Custom tools are
    merged by name, project over global.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / f".{APP_NAME}.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    global_tools = global_config.pop("custom_tools", None) or {}
    project_tools = project_config.pop("custom_tools", None) or {}
    merged = {**global_config, **project_config, **load_env(environ)}

    custom_tools = {**global_tools, **project_tools}
    if custom_tools:
        merged["custom_tools"] = custom_tools

    if merged.get("system_prompt") and merged.get("no_system_prompt"):
        raise ConfigError(
            "'system_prompt' and 'no_system_prompt' are mutually exclusive "
            "(set across config files and environment)"
        )
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    After processing all config keys, sweeps remaining _UNSET sentinels and
    replaces them with hardcoded defaults from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the mutually exclusive color pair
    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def resolve_api_key(provider: str, api_key: str | None, environ=None) -> str | None:
    """Fall back to the provider's conventional key variable."""
    if api_key:
        return api_key
    environ = os.environ if environ is None else environ
    var = PROVIDER_KEY_VARS.get(provider)
    return environ.get(var) if var else None


def config_from_args(args: argparse.Namespace) -> Config:
    """Build the Config for a run from a fully resolved namespace."""
    if args.no_system_prompt:
        system_prompt = None
    else:
        system_prompt = args.system_prompt or DEFAULT_SYSTEM_PROMPT

    tools: list[str] = []
    for item in args.tools or []:
        tools.extend(t.strip() for t in item.split(",") if t.strip())

    api_key = resolve_api_key(args.provider, args.api_key)
    if not api_key and args.provider != "lmstudio":
        env_hint = PROVIDER_KEY_VARS.get(args.provider, "GPTX_API_KEY")
        raise ConfigError(
            f"no API key for provider {args.provider!r}: "
            f"use --api-key, GPTX_API_KEY or {env_hint}"
        )

    return Config(
        model=args.model,
        api_key=api_key,
        system_prompt=system_prompt,
        tools=tuple(dict.fromkeys(tools)),
        temperature=args.temperature,
        max_tokens=args.max_tokens,
        reasoning_effort=args.reasoning_effort,
        max_iterations=args.max_iterations,
        provider=args.provider,
        base_url=args.base_url,
        user_id=args.user_id,
        stream=args.stream,
        shell=args.shell,
        base_dir=args.base_dir,
        tool_timeout=args.tool_timeout,
        request_timeout=args.request_timeout,
        custom_tools=getattr(args, "custom_tools", None) or {},
    )


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# gptx configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/.gptx.toml' if project else '~/.config/gptx/config.toml'}",
        "#",
        "# CLI flags and GPTX_* environment variables override these values.",
        "",
        "# --- Provider / model ---",
        '# provider = "openai"            # "openai" | "openrouter" | "lmstudio"',
        '# model = "o4-mini"',
        '# api_key = "sk-..."              # prefer OPENAI_API_KEY; this is a fallback',
        '# base_url = "https://..."',
        '# user_id = "me@example.com"',
        "",
        "# --- Generation parameters ---",
        "# max_tokens = 4096",
        "# temperature = 1.0",
        '# reasoning_effort = "medium"  # "minimal" | "low" | "medium" | "high"',
        "# stream = true",
        "# request_timeout = 120          # seconds per model request",
        "",
        "# --- Conversation ---",
        '# system_prompt = "You are a helpful assistant."',
        "# no_system_prompt = false",
        "# max_iterations = 10",
        '# chat = "~/.local/share/gptx/chat.json"',
        "",
        "# --- Tools ---",
        '# tools = ["shell", "repo"]',
        '# shell = "bash"',
        "# tool_timeout = 30",
        "",
        "# [custom_tools.weather]",
        '# command = "./scripts/weather.sh"',
        '# description = "Current weather for a city."',
        '# parameters = { type = "object", properties = { city = { type = "string" } }, required = ["city"] }',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)

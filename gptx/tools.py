"""Tool registry and built-in tool implementations."""

import json
import os
import shutil
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from .report import (
    ConfigError,
    ToolExecutionError,
    ToolValidationError,
    UnknownToolError,
)

Executor = Callable[[dict], str]

SHELL_TOOL_NAME = "shell"
REPO_TOOL_NAME = "repo"
BUILTIN_TOOLS = (SHELL_TOOL_NAME, REPO_TOOL_NAME)

# JSON schema primitive -> accepted Python types
_JSON_TYPES: dict[str, type | tuple[type, ...]] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
    "null": type(None),
}


@dataclass(frozen=True)
class ToolDef:
    name: str
    description: str
    parameters: dict
    executor: Executor = field(compare=False, repr=False)

    def to_openai(self) -> dict:
        """Function-calling schema in the OpenAI chat completions format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(frozen=True)
class ToolCall:
    name: str
    arguments: str = "{}"
    id: str = ""


@dataclass(frozen=True)
class ToolResult:
    name: str
    output: str
    call_id: str = ""
    elapsed: float = 0.0


# ---------------------------------------------------------------------------
# Schema validation
# ---------------------------------------------------------------------------


def _type_matches(value: Any, expected: str) -> bool:
    # bool is a subclass of int; reject it for numeric fields.
    if isinstance(value, bool) and expected not in ("boolean",):
        return False
    return isinstance(value, _JSON_TYPES[expected])


def validate_schema(name: str, schema: dict) -> None:
    """Check a tool parameter schema at registration time.

    Raises ConfigError if the schema is not an object schema with typed
    properties and a consistent ``required`` list.
    """
    if not isinstance(schema, dict) or schema.get("type") != "object":
        raise ConfigError(f"tool {name}: parameters must be an object schema")
    props = schema.get("properties", {})
    if not isinstance(props, dict):
        raise ConfigError(f"tool {name}: 'properties' must be a mapping")
    for prop, spec in props.items():
        if not isinstance(spec, dict):
            raise ConfigError(f"tool {name}: property {prop!r} must be a mapping")
        ptype = spec.get("type")
        if ptype is not None and ptype not in _JSON_TYPES:
            raise ConfigError(
                f"tool {name}: property {prop!r} has unknown type {ptype!r}"
            )
    required = schema.get("required", [])
    if not isinstance(required, list):
        raise ConfigError(f"tool {name}: 'required' must be a list")
    for prop in required:
        if prop not in props:
            raise ConfigError(
                f"tool {name}: required property {prop!r} is not declared"
            )


def validate_arguments(tool: ToolDef, params: Any, call_id: str = "") -> dict:
    """Check parsed arguments against the tool's schema before execution."""
    if not isinstance(params, dict):
        raise ToolValidationError(
            tool.name,
            f"arguments must be a JSON object, got {type(params).__name__}",
            call_id,
        )
    props = tool.parameters.get("properties", {})
    for prop in tool.parameters.get("required", []):
        if prop not in params or params[prop] is None:
            raise ToolValidationError(
                tool.name, f"missing required parameter {prop!r}", call_id
            )
    for prop, value in params.items():
        expected = props.get(prop, {}).get("type")
        if expected is None or value is None:
            continue
        if not _type_matches(value, expected):
            raise ToolValidationError(
                tool.name,
                f"parameter {prop!r} expected {expected}, got {type(value).__name__}",
                call_id,
            )
    return params


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Named tool definitions. Registration is expected before any run starts.

    The lock guards the name map only; tool execution runs unlocked.
    """

    def __init__(self, tools: list[ToolDef] | None = None):
        self._tools: dict[str, ToolDef] = {}
        self._lock = threading.RLock()
        for tool in tools or ():
            self.register(tool)

    def register(self, tool: ToolDef) -> None:
        """Insert or replace a tool by name. The last registration wins."""
        validate_schema(tool.name, tool.parameters)
        with self._lock:
            self._tools[tool.name] = tool

    def get(self, name: str) -> ToolDef | None:
        with self._lock:
            return self._tools.get(name)

    def definitions(self) -> list[ToolDef]:
        """Snapshot of all registered tools, sorted by name."""
        with self._lock:
            return [self._tools[name] for name in sorted(self._tools)]

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._tools

    def __len__(self) -> int:
        with self._lock:
            return len(self._tools)

    def execute(self, call: ToolCall) -> str:
        """Run a tool call and return its textual output.

        Raises:
            UnknownToolError: no tool is registered under call.name.
            ToolValidationError: arguments are not valid JSON or don't match the schema.
            ToolExecutionError: the executor raised.
        """
        tool = self.get(call.name)
        if tool is None:
            raise UnknownToolError(call.name, call.id)

        try:
            params = json.loads(call.arguments) if call.arguments else {}
        except (json.JSONDecodeError, TypeError) as e:
            raise ToolValidationError(
                call.name, f"invalid JSON in arguments: {e}", call.id
            ) from e
        validate_arguments(tool, params, call.id)

        try:
            result = tool.executor(params)
        except ToolExecutionError:
            raise
        except Exception as e:
            raise ToolExecutionError(call.name, str(e) or type(e).__name__, call.id) from e
        return "" if result is None else str(result)


# ---------------------------------------------------------------------------
# Process helpers
# ---------------------------------------------------------------------------

MAX_INLINE_OUTPUT = 10 * 1024  # 10KB returned to the model
MAX_CAPTURE_OUTPUT = 1 * 1024 * 1024  # 1MB read from the process
MAX_TIMEOUT = 120
DEFAULT_TIMEOUT = 30
_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


def default_shell() -> str:
    """The user's shell from $SHELL, falling back to sh (cmd.exe on Windows)."""
    shell = os.environ.get("SHELL")
    if shell:
        return Path(shell).name
    if sys.platform == "win32":
        return "cmd.exe"
    return "sh"


def _shell_argv(shell: str, command: str) -> list[str]:
    if Path(shell).name.lower() in ("cmd", "cmd.exe"):
        return [shell, "/c", command]
    return [shell, "-c", command]


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F to kill the process tree.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable


def _capture_process(
    proc: subprocess.Popen, timeout: int
) -> tuple[str, int | None, bool]:
    """Drain a running subprocess with timeout enforcement.

    Returns (output, returncode, timed_out). returncode is None on timeout.
    """
    output_chunks: list[bytes] = []
    output_total = 0
    output_truncated = False

    def _reader():
        nonlocal output_total, output_truncated
        try:
            while True:
                chunk = proc.stdout.read(4096)
                if not chunk:
                    break
                if output_truncated:
                    continue  # keep draining to prevent pipe backpressure
                remaining = MAX_CAPTURE_OUTPUT - output_total
                output_chunks.append(chunk[:remaining])
                output_total += len(output_chunks[-1])
                if output_total >= MAX_CAPTURE_OUTPUT:
                    output_truncated = True
        except (OSError, ValueError):
            pass  # pipe closed after kill

    reader_thread = threading.Thread(target=_reader, daemon=True)
    reader_thread.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)

    reader_thread.join(timeout=2)
    proc.stdout.close()

    output = b"".join(output_chunks).decode("utf-8", errors="replace")
    if output_truncated:
        output += "\n[output truncated at 1MB]"
    return output, (None if timed_out else proc.returncode), timed_out


def _truncate_inline(output: str) -> str:
    encoded = output.encode("utf-8")
    if len(encoded) <= MAX_INLINE_OUTPUT:
        return output
    head = encoded[:MAX_INLINE_OUTPUT].decode("utf-8", errors="replace")
    return head + f"\n[output truncated: {len(encoded) / 1024:.1f}KB total]"


def _spawn(argv: list[str], base_dir: str, stdin_data: bytes | None = None):
    base_path = Path(base_dir)
    if not base_path.is_dir():
        raise NotADirectoryError(f"base directory is not a directory: {base_dir}")

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.PIPE if stdin_data is not None else subprocess.DEVNULL,
        cwd=base_dir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True
    proc = subprocess.Popen(argv, **popen_kwargs)

    if stdin_data is not None:
        try:
            proc.stdin.write(stdin_data)
        except (BrokenPipeError, OSError):
            pass  # process exited without reading its input
        finally:
            proc.stdin.close()
    return proc


def run_shell_command(
    command: str, shell: str, base_dir: str, timeout: int = DEFAULT_TIMEOUT
) -> str:
    """Execute a command string through ``shell -c``.

    A non-zero exit status is reported in the returned text. A timeout, a
    missing shell or a spawn failure raises.
    """
    if shutil.which(shell) is None:
        raise FileNotFoundError(f"shell not found: {shell}")

    timeout = max(1, min(timeout, MAX_TIMEOUT))
    proc = _spawn(_shell_argv(shell, command), base_dir)
    output, returncode, timed_out = _capture_process(proc, timeout)

    if timed_out:
        raise TimeoutError(
            f"command timed out after {timeout}s\n{_truncate_inline(output)}".rstrip()
        )

    parts: list[str] = []
    if returncode != 0:
        parts.append(f"Exit code: {returncode}")
    if output:
        parts.append(output)
    return _truncate_inline("\n".join(parts)) if parts else "(no output)"


# ---------------------------------------------------------------------------
# Built-in tools
# ---------------------------------------------------------------------------

SHELL_TOOL_DESCRIPTION = (
    "Execute a shell command and return its combined stdout and stderr. "
    "Use this for file operations, system information, or any command-line task."
)


def shell_tool(
    shell: str | None = None,
    base_dir: str = ".",
    timeout: int = DEFAULT_TIMEOUT,
) -> ToolDef:
    shell = shell or default_shell()

    def _execute(params: dict) -> str:
        return run_shell_command(
            params["command"],
            shell,
            base_dir,
            params.get("timeout") or timeout,
        )

    return ToolDef(
        name=SHELL_TOOL_NAME,
        description=SHELL_TOOL_DESCRIPTION,
        parameters={
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The command to execute.",
                },
                "timeout": {
                    "type": "integer",
                    "description": f"Timeout in seconds (1-{MAX_TIMEOUT}). Defaults to {timeout}.",
                },
            },
            "required": ["command"],
        },
        executor=_execute,
    )


MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB

REPO_TOOL_DESCRIPTION = (
    "Inspect the repository. Lists a directory (subdirectories end with /) "
    "or, with contents=true, returns a file's lines prefixed with line numbers."
)


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve a path against base_dir, following symlinks.

    Raises:
        ValueError: If the resolved path escapes base_dir.
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()

    if not resolved.is_relative_to(base):
        raise ValueError(
            f"path {file_path!r} resolves to {resolved}, "
            f"which is outside base directory {base}"
        )
    return resolved


def _list_dir(resolved: Path) -> str:
    output_parts = []
    total_bytes = 0
    truncated = False
    for child in sorted(resolved.iterdir()):
        name = child.name + ("/" if child.is_dir() else "")
        encoded_len = len(name.encode("utf-8")) + 1
        if total_bytes + encoded_len > MAX_OUTPUT_BYTES:
            truncated = True
            break
        output_parts.append(name)
        total_bytes += encoded_len
    result = "\n".join(output_parts)
    if truncated:
        result += "\n[truncated at 50KB]"
    return result or "(empty directory)"


def _read_lines(resolved: Path, display: str) -> str:
    with open(resolved, "rb") as f:
        chunk = f.read(BINARY_CHECK_BYTES)
    if b"\x00" in chunk:
        raise ValueError(f"binary file detected: {display}")

    try:
        text = resolved.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"failed to decode {display} as UTF-8: {e}") from e

    lines = text.splitlines()
    output_parts = []
    total_bytes = 0
    for i, line in enumerate(lines, start=1):
        numbered = f"{i}: {line[:MAX_LINE_LENGTH]}"
        encoded_len = len(numbered.encode("utf-8")) + 1
        if total_bytes + encoded_len > MAX_OUTPUT_BYTES:
            output_parts.append(f"[{len(lines) - i + 1} more lines not shown]")
            break
        output_parts.append(numbered)
        total_bytes += encoded_len
    return "\n".join(output_parts)


def inspect_path(path: str, base_dir: str, contents: bool = False) -> str:
    """List a directory or read a file inside base_dir."""
    resolved = safe_resolve(path, base_dir)
    if not resolved.exists():
        raise FileNotFoundError(f"path does not exist: {path}")
    if resolved.is_dir():
        return _list_dir(resolved)
    if not contents:
        return resolved.name
    return _read_lines(resolved, path)


def repo_tool(base_dir: str = ".") -> ToolDef:
    def _execute(params: dict) -> str:
        return inspect_path(
            params["path"], base_dir, contents=params.get("contents", False)
        )

    return ToolDef(
        name=REPO_TOOL_NAME,
        description=REPO_TOOL_DESCRIPTION,
        parameters={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Directory or file path, relative to the repository root.",
                },
                "contents": {
                    "type": "boolean",
                    "description": "Return the file's contents instead of its name.",
                },
            },
            "required": ["path"],
        },
        executor=_execute,
    )


def command_tool(
    name: str,
    command: str,
    description: str = "",
    parameters: dict | None = None,
    shell: str | None = None,
    base_dir: str = ".",
    timeout: int = DEFAULT_TIMEOUT,
) -> ToolDef:
    """A user-defined tool backed by a shell command.

    The call's arguments are written to the command's stdin as JSON.
    """
    shell = shell or default_shell()

    def _execute(params: dict) -> str:
        if shutil.which(shell) is None:
            raise FileNotFoundError(f"shell not found: {shell}")
        proc = _spawn(
            _shell_argv(shell, command),
            base_dir,
            stdin_data=json.dumps(params).encode("utf-8"),
        )
        limit = max(1, min(timeout, MAX_TIMEOUT))
        output, returncode, timed_out = _capture_process(proc, limit)
        if timed_out:
            raise TimeoutError(f"command timed out after {limit}s")
        if returncode != 0:
            raise RuntimeError(
                f"command exited with status {returncode}: {_truncate_inline(output).strip()}"
            )
        return _truncate_inline(output)

    return ToolDef(
        name=name,
        description=description or f"Run the {name!r} command.",
        parameters=parameters or {"type": "object", "properties": {}},
        executor=_execute,
    )


def build_registry(config) -> ToolRegistry:
    """Create a registry holding the tools enabled in config.

    Built-ins are enabled by listing their names in ``config.tools``.
    Custom command tools from ``config.custom_tools`` are always registered.
    """
    registry = ToolRegistry()
    for name in config.tools:
        if name == SHELL_TOOL_NAME:
            registry.register(
                shell_tool(config.shell, config.base_dir, config.tool_timeout)
            )
        elif name == REPO_TOOL_NAME:
            registry.register(repo_tool(config.base_dir))
        elif name not in config.custom_tools:
            known = ", ".join(sorted({*BUILTIN_TOOLS, *config.custom_tools}))
            raise ConfigError(f"unknown tool: {name!r} (available: {known})")

    for name, spec in config.custom_tools.items():
        registry.register(
            command_tool(
                name,
                spec["command"],
                description=spec.get("description", ""),
                parameters=spec.get("parameters"),
                shell=config.shell,
                base_dir=config.base_dir,
                timeout=spec.get("timeout", config.tool_timeout),
            )
        )
    return registry

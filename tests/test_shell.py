"""Tests for the shell tool and user-defined command tools."""

import json
import shutil
import sys
import time

import pytest

from gptx.report import ToolExecutionError
from gptx.tools import (
    MAX_INLINE_OUTPUT,
    ToolCall,
    ToolRegistry,
    command_tool,
    default_shell,
    run_shell_command,
    shell_tool,
)

pytestmark = pytest.mark.skipif(
    sys.platform == "win32" or shutil.which("sh") is None,
    reason="needs a POSIX sh",
)


@pytest.fixture
def tmp_base(tmp_path):
    """Provide a temporary base directory."""
    return str(tmp_path)


def test_runs_in_base_dir(tmp_base, tmp_path):
    (tmp_path / "marker.txt").write_text("x")
    assert "marker.txt" in run_shell_command("ls", "sh", tmp_base)


def test_stderr_is_merged(tmp_base):
    out = run_shell_command("echo out; echo err 1>&2", "sh", tmp_base)
    assert "out" in out
    assert "err" in out


def test_nonzero_exit_is_reported_not_raised(tmp_base):
    out = run_shell_command("echo nope; exit 3", "sh", tmp_base)
    assert out.startswith("Exit code: 3")
    assert "nope" in out


def test_no_output(tmp_base):
    assert run_shell_command("true", "sh", tmp_base) == "(no output)"


def test_stdin_is_closed(tmp_base):
    # cat would block forever on an inherited terminal
    assert run_shell_command("cat", "sh", tmp_base, timeout=5) == "(no output)"


def test_timeout_kills_process(tmp_base):
    start = time.monotonic()
    with pytest.raises(TimeoutError, match="timed out after 1s"):
        run_shell_command("sleep 30", "sh", tmp_base, timeout=1)
    assert time.monotonic() - start < 10


def test_missing_shell(tmp_base):
    with pytest.raises(FileNotFoundError, match="shell not found"):
        run_shell_command("echo hi", "no-such-shell-xyz", tmp_base)


def test_bad_base_dir(tmp_path):
    with pytest.raises(NotADirectoryError):
        run_shell_command("echo hi", "sh", str(tmp_path / "missing"))


def test_large_output_truncated_inline(tmp_base):
    out = run_shell_command(
        f"head -c {MAX_INLINE_OUTPUT * 2} /dev/zero | tr '\\0' 'a'", "sh", tmp_base
    )
    assert "[output truncated:" in out
    assert len(out) < MAX_INLINE_OUTPUT + 200


def test_default_shell_from_env(monkeypatch):
    monkeypatch.setenv("SHELL", "/usr/local/bin/zsh")
    assert default_shell() == "zsh"
    monkeypatch.delenv("SHELL")
    assert default_shell() == "sh"


class TestShellTool:
    def test_through_registry(self, tmp_base):
        reg = ToolRegistry([shell_tool("sh", tmp_base)])
        out = reg.execute(ToolCall("shell", json.dumps({"command": "echo hi"})))
        assert out.strip() == "hi"

    def test_missing_command_fails_fast(self, tmp_base):
        reg = ToolRegistry([shell_tool("sh", tmp_base)])
        with pytest.raises(ToolExecutionError, match="missing required parameter 'command'"):
            reg.execute(ToolCall("shell", "{}"))

    def test_command_must_be_string(self, tmp_base):
        reg = ToolRegistry([shell_tool("sh", tmp_base)])
        with pytest.raises(ToolExecutionError, match="expected string"):
            reg.execute(ToolCall("shell", json.dumps({"command": ["ls"]})))

    def test_missing_shell_is_execution_error(self, tmp_base):
        reg = ToolRegistry([shell_tool("no-such-shell-xyz", tmp_base)])
        with pytest.raises(ToolExecutionError, match="tool shell: shell not found"):
            reg.execute(ToolCall("shell", json.dumps({"command": "echo hi"})))


class TestCommandTool:
    def test_arguments_on_stdin(self, tmp_base):
        tool = command_tool(
            "weather",
            "cat",
            parameters={
                "type": "object",
                "properties": {"city": {"type": "string"}},
                "required": ["city"],
            },
            shell="sh",
            base_dir=tmp_base,
        )
        reg = ToolRegistry([tool])
        out = reg.execute(ToolCall("weather", json.dumps({"city": "Paris"})))
        assert json.loads(out) == {"city": "Paris"}

    def test_failure_raises(self, tmp_base):
        tool = command_tool("fail", "echo broken; exit 2", shell="sh", base_dir=tmp_base)
        reg = ToolRegistry([tool])
        with pytest.raises(ToolExecutionError, match="exited with status 2: broken"):
            reg.execute(ToolCall("fail", "{}"))

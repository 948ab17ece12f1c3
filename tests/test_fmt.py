"""Tests for the fmt module (Rich-formatted output helpers)."""

import types
from io import StringIO

from rich.console import Console

from gptx import fmt
from gptx.client import Usage
from gptx.events import EventBus, EventType
from gptx.model import StopReason, Summary
from gptx.report import TransportError, UnknownToolError
from gptx.tools import ToolCall, ToolResult


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


class TestStart:
    def test_model_and_tools(self):
        config = types.SimpleNamespace(provider="openai", model="gpt-4o", tools=("shell",))
        out = _capture(fmt.start, config)
        assert "openai/gpt-4o" in out
        assert "tools: shell" in out


class TestCompletion:
    def test_complete(self):
        out = _capture(fmt.completion, 2, "complete")
        assert "Finished: 2 iterations" in out
        assert "stop=" not in out

    def test_max_iterations(self):
        out = _capture(fmt.completion, 10, "max_iterations")
        assert "stop=max_iterations" in out


class TestToolCall:
    def test_basic(self):
        out = _capture(fmt.tool_call, "shell", '{\n  "command": "ls"\n}')
        assert "shell" in out
        assert '"command": "ls"' in out

    def test_empty_args(self):
        out = _capture(fmt.tool_call, "repo", "{}")
        assert out.strip().endswith("repo")


class TestToolResult:
    def test_basic(self):
        out = _capture(fmt.tool_result, "repo", 0.25, "README.md")
        assert "repo" in out
        assert "0.2s" in out or "0.3s" in out
        assert "README.md" in out


class TestToolError:
    def test_basic(self):
        out = _capture(fmt.tool_error, "shell", "tool shell: timed out")
        assert "shell" in out
        assert "timed out" in out


class TestReasoning:
    def test_basic(self):
        assert "[reasoning] weighing options" in _capture(fmt.reasoning, "weighing options")


class TestUsage:
    def test_rows(self):
        out = _capture(fmt.usage, "total tokens usage:", Usage(100, 20, 120, 7, 50))
        assert "total tokens usage:" in out
        assert "input: 100" in out
        assert "output: 20" in out
        assert "total: 120" in out
        assert "reasoning: 7" in out
        assert "cached: 50" in out


class TestMarkupEscaping:
    def test_brackets_in_tool_call_args(self):
        out = _capture(fmt.tool_call, "shell", '{"command": "echo [bold]x[/bold]"}')
        assert "[bold]x[/bold]" in out

    def test_brackets_in_error(self):
        assert "[red]" in _capture(fmt.error, "bad [red] value")

    def test_brackets_in_model_name(self):
        config = types.SimpleNamespace(provider="openai", model="m[1]", tools=())
        assert "m[1]" in _capture(fmt.start, config)


class TestDiagnostics:
    def test_error_prefix(self):
        assert _capture(fmt.error, "boom").startswith("Error: boom")

    def test_warning(self):
        assert "Warning: careful" in _capture(fmt.warning, "careful")


class TestReply:
    def test_goes_to_stdout_unstyled(self, capsys):
        fmt.reply("Hello")
        fmt.reply(", world")
        assert capsys.readouterr().out == "Hello, world"


class TestAttach:
    def _run(self, verbose, emit):
        buf = StringIO()
        old = fmt._console
        fmt._console = Console(file=buf, no_color=True, width=120)
        bus = EventBus()
        try:
            fmt.attach(bus, verbose=verbose)
            emit(bus)
            assert bus.flush(timeout=5)
        finally:
            bus.close(timeout=1)
            fmt._console = old
        return buf.getvalue()

    def test_verbose_renders_tools(self, capsys):
        def emit(bus):
            bus.emit(EventType.TOOL_CALL, ToolCall("repo", '{"path": "."}', "c1"))
            bus.emit(EventType.TOOL_RESULT, ToolResult("repo", "a.py\nb.py", "c1", 0.1))
            bus.emit(EventType.REPLY, "hi")
            bus.emit(
                EventType.DONE,
                Summary(Usage(), iterations=1, stop_reason=StopReason.COMPLETE),
            )

        err = self._run(True, emit)
        assert "repo" in err
        assert '"path": "."' in err
        assert "a.py" in err
        assert "b.py" not in err  # preview is the first line
        assert "Finished: 1 iterations" in err
        assert capsys.readouterr().out == "hi"

    def test_quiet_shows_only_errors(self, capsys):
        def emit(bus):
            bus.emit(EventType.TOOL_CALL, ToolCall("repo", "{}", "c1"))
            bus.emit(EventType.ERROR, UnknownToolError("nope"))
            bus.emit(EventType.ERROR, TransportError("connection reset"))
            bus.emit(EventType.REPLY, "answer")

        err = self._run(False, emit)
        assert "▶" not in err
        assert "unknown tool: nope" in err
        assert "Error: connection reset" in err
        assert capsys.readouterr().out == "answer"

    def test_tool_lines_render_in_emission_order(self):
        def emit(bus):
            for i in range(50):
                bus.emit(EventType.TOOL_CALL, ToolCall(f"t{i}", "{}", f"c{i}"))
                bus.emit(EventType.TOOL_RESULT, ToolResult(f"t{i}", "", f"c{i}", 0.0))

        lines = [
            line.strip()
            for line in self._run(True, emit).splitlines()
            if line.strip().startswith(("▶", "✓"))
        ]
        expected = []
        for i in range(50):
            expected += [f"▶ t{i}", f"✓ t{i}  0.0s"]
        assert lines == expected

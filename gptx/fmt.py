"""Terminal output using Rich: diagnostics on stderr, model replies on stdout."""

import json
import sys

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

from .events import EventBus, EventType

_console = Console(stderr=True)

MAX_PREVIEW = 200


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


def console() -> Console:
    return _console


# -- Run structure -----------------------------------------------------------


def start(config) -> None:
    title = f"{config.provider}/{config.model}"
    if config.tools:
        title += f" tools: {', '.join(config.tools)}"
    _console.print(Rule(escape(title), style="cyan"))


def completion(iterations: int, stop_reason: str) -> None:
    if stop_reason == "complete":
        _console.print(
            Text(f"  ✓ Finished: {iterations} iterations", style="bold green")
        )
    else:
        _console.print(
            Text(
                f"  Finished: {iterations} iterations, stop={stop_reason}",
                style="bold red",
            )
        )


def reply(text: str) -> None:
    """Stream a reply fragment to stdout, unstyled."""
    sys.stdout.write(text)
    sys.stdout.flush()


def reasoning(text: str) -> None:
    line = Text()
    line.append("  [reasoning] ", style="magenta")
    line.append(text, style="dim italic")
    _console.print(line)


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json and args_json != "{}":
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def _preview(output: str) -> str:
    first = output.strip().split("\n", 1)[0]
    if len(first) > MAX_PREVIEW:
        return first[:MAX_PREVIEW] + "..."
    return first


def _pretty_args(arguments: str) -> str:
    try:
        return json.dumps(json.loads(arguments), indent=2)
    except ValueError:
        return arguments


# -- Usage -------------------------------------------------------------------


def usage(label: str, usage) -> None:
    _console.print(Text(label, style="bold"))
    for key, value, style in [
        ("    input:", usage.input_tokens, "red"),
        ("   output:", usage.output_tokens, "green"),
        ("    total:", usage.total_tokens, "blue"),
        ("reasoning:", usage.reasoning_tokens, "dim"),
        ("   cached:", usage.cached_tokens, "dim"),
    ]:
        row = Text()
        row.append(key, style=style)
        row.append(f" {value}", style="bold")
        _console.print(row)


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(Text("Interactive mode. Type /help for commands, /exit or Ctrl-D to quit.", style="dim"))


# -- Event rendering ---------------------------------------------------------


def _on_error(exc: Exception) -> None:
    tool_name = getattr(exc, "tool_name", None)
    if tool_name is not None:
        tool_error(tool_name, str(exc))
    else:
        error(str(exc))


def attach(bus: EventBus, *, verbose: bool = True) -> None:
    """Render a conversation's events. Replies always go to stdout.

    With verbose off, only replies and errors are shown.
    """
    handlers = {EventType.REPLY: reply, EventType.ERROR: _on_error}
    if verbose:
        handlers.update(
            {
                EventType.START: start,
                EventType.REASONING: reasoning,
                EventType.TOOL_CALL: lambda call: tool_call(
                    call.name, _pretty_args(call.arguments)
                ),
                EventType.TOOL_RESULT: lambda result: tool_result(
                    result.name, result.elapsed, _preview(result.output)
                ),
                EventType.DONE: lambda summary: completion(
                    summary.iterations,
                    getattr(summary.stop_reason, "value", summary.stop_reason),
                ),
            }
        )
    bus.subscribe_many(handlers)

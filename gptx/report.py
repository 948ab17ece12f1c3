"""Error taxonomy and JSON run reports."""

import json
import threading
from datetime import datetime, timezone

from .events import EventBus, EventType


class AgentError(Exception):
    """Raised by the conversation loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


class NotConfiguredError(ConfigError):
    """Raised when a conversation is started without a model client attached."""


class TagError(AgentError):
    """Raised when a prompt tag cannot be expanded."""


class UnknownToolError(AgentError):
    """Raised when the model requests a tool that is not registered."""

    def __init__(self, tool_name: str, call_id: str | None = None):
        super().__init__(f"unknown tool: {tool_name}")
        self.tool_name = tool_name
        self.call_id = call_id


class ToolExecutionError(AgentError):
    """Raised when a registered tool fails. The message carries the tool name."""

    def __init__(self, tool_name: str, message: str, call_id: str | None = None):
        super().__init__(f"tool {tool_name}: {message}")
        self.tool_name = tool_name
        self.call_id = call_id


class ToolValidationError(ToolExecutionError):
    """Raised before execution when tool arguments don't match the schema."""


class TransportError(AgentError):
    """Raised when the model client call fails or returns an unusable response."""


class CancelledError(TransportError):
    """Raised when the caller's cancel signal is set mid-conversation."""

    def __init__(self, message: str = "context cancelled"):
        super().__init__(message)


class IterationLimitExceeded(AgentError):
    """The tool loop stopped at max_iterations before a final answer."""

    def __init__(self, iterations: int):
        super().__init__(
            f"model did not finish within {iterations} iterations"
        )
        self.iterations = iterations


class ReportCollector:
    """Accumulates events during a conversation for JSON report output.

    Call attach() with the model's event bus before the run starts.
    """

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.errors: list[str] = []
        self.reply_chars = 0
        self.reasoning_steps = 0
        self.total_tool_time = 0.0
        self.iterations = 0
        self.stop_reason: str | None = None
        self.usage: dict | None = None
        self._last_report: dict | None = None
        self._lock = threading.Lock()

    def attach(self, bus: EventBus) -> None:
        """Subscribe on one ordered worker so the timeline follows emission order."""
        bus.subscribe_many(
            {
                EventType.REPLY: self._on_reply,
                EventType.REASONING: self._on_reasoning,
                EventType.TOOL_CALL: self._on_tool_call,
                EventType.TOOL_RESULT: self._on_tool_result,
                EventType.ERROR: self._on_error,
                EventType.DONE: self._on_done,
            }
        )

    def _on_reply(self, text: str) -> None:
        self.reply_chars += len(text)

    def _on_reasoning(self, text: str) -> None:
        self.reasoning_steps += 1

    def _on_tool_call(self, call) -> None:
        try:
            arguments = json.loads(call.arguments or "{}")
        except json.JSONDecodeError:
            arguments = call.arguments
        with self._lock:
            self.events.append(
                {
                    "type": "tool_call",
                    "name": call.name,
                    "call_id": call.id,
                    "arguments": arguments,
                }
            )

    def _on_tool_result(self, result) -> None:
        self.record_tool_result(
            result.name, True, result.elapsed, len(result.output)
        )

    def _on_error(self, error: Exception) -> None:
        tool_name = getattr(error, "tool_name", None)
        if tool_name is not None:
            self.record_tool_result(tool_name, False, 0.0, 0, error=str(error))
            return
        with self._lock:
            self.errors.append(str(error))
            self.events.append({"type": "error", "message": str(error)})

    def _on_done(self, summary) -> None:
        self.iterations = summary.iterations
        self.stop_reason = getattr(summary.stop_reason, "value", summary.stop_reason)
        self.usage = summary.usage.as_dict()

    def record_tool_result(
        self,
        name: str,
        succeeded: bool,
        duration: float,
        result_length: int,
        error: str | None = None,
    ):
        event: dict = {
            "type": "tool_result",
            "name": name,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
            "result_length": result_length,
        }
        if error is not None:
            event["error"] = error
        with self._lock:
            self.total_tool_time += duration
            stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
            if succeeded:
                stats["succeeded"] += 1
            else:
                stats["failed"] += 1
            self.events.append(event)

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        error_message: str | None = None,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "iterations": self.iterations,
                "stop_reason": self.stop_reason,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "reply_chars": self.reply_chars,
                "reasoning_steps": self.reasoning_steps,
                "total_tool_time_s": round(self.total_tool_time, 3),
                "usage": self.usage,
            },
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")

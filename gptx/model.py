"""The conversation loop: prompt in, bounded model/tool cycles, events out."""

import enum
import logging
import threading
import time
from dataclasses import dataclass

from .client import (
    Fragment,
    FragmentKind,
    Message,
    ModelClient,
    Request,
    Usage,
    check_cancel,
)
from .events import EventBus, EventType, Subscription
from .history import ChatHistory
from .report import (
    CancelledError,
    IterationLimitExceeded,
    NotConfiguredError,
    ToolExecutionError,
    UnknownToolError,
)
from .tags import expand_tags
from .tools import ToolCall, ToolDef, ToolRegistry, ToolResult

logger = logging.getLogger(__name__)


class StopReason(str, enum.Enum):
    COMPLETE = "complete"
    MAX_ITERATIONS = "max_iterations"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Summary:
    """Payload of the DONE event."""

    usage: Usage
    iterations: int
    stop_reason: StopReason
    error: str | None = None


@dataclass(frozen=True)
class Result:
    answer: str
    stop_reason: StopReason
    usage: Usage
    iterations: int
    messages: tuple[Message, ...]

    @property
    def exhausted(self) -> bool:
        """True when the loop hit max_iterations instead of finishing."""
        return self.stop_reason is StopReason.MAX_ITERATIONS

    def raise_for_status(self) -> "Result":
        if self.exhausted:
            raise IterationLimitExceeded(self.iterations)
        return self


class Model:
    """Owns a config, a tool registry and an event bus; drives one conversation.

    ``message()`` runs synchronously. Observers subscribe to the event bus;
    their handlers run on the bus's worker threads.
    """

    def __init__(
        self,
        config,
        client: ModelClient | None = None,
        tools: ToolRegistry | None = None,
        events: EventBus | None = None,
        history: ChatHistory | None = None,
    ):
        self.config = config
        self.client = client
        self.tools = tools if tools is not None else ToolRegistry()
        self.events = events if events is not None else EventBus()
        self.chat = history
        self._messages: list[Message] = list(history.messages) if history else []
        self._usage = Usage()

    @property
    def history(self) -> list[Message]:
        return list(self._messages)

    @property
    def usage(self) -> Usage:
        """Usage of every message() call on this instance."""
        return self._usage

    def subscribe(
        self,
        event_type: EventType | str,
        handler,
        cancel: threading.Event | None = None,
    ) -> Subscription:
        return self.events.subscribe(event_type, handler, cancel)

    def register_tool(self, tool: ToolDef) -> None:
        self.tools.register(tool)

    def clear(self) -> int:
        """Drop the conversation so far. Returns the number of messages removed."""
        dropped = len(self._messages)
        self._messages.clear()
        if self.chat is not None:
            self._persist(self.chat.clear)
        return dropped

    def message(self, prompt: str, cancel: threading.Event | None = None) -> Result:
        """Run one user turn to completion.

        Tool failures are reported (ERROR event plus a system message) and
        the loop continues. Transport failures and cancellation emit ERROR
        and DONE, then propagate. DONE follows START on every path.
        """
        if self.client is None:
            raise NotConfiguredError("no model client attached")

        self.events.emit(EventType.START, self.config)
        usage = Usage()
        iterations = 0
        answer = ""
        try:
            text, attachments = expand_tags(prompt, self.config.base_dir)
            if attachments:
                logger.debug("attached %s", ", ".join(attachments))
            self._append(Message("user", text))

            while True:
                check_cancel(cancel)
                iterations += 1
                answer, calls, turn_usage = self._request(cancel)
                usage = usage + turn_usage
                self._append(Message("assistant", answer, tool_calls=calls))
                if not calls:
                    stop_reason = StopReason.COMPLETE
                    break
                self._run_tools(calls, cancel)
                if iterations >= self.config.max_iterations:
                    stop_reason = StopReason.MAX_ITERATIONS
                    break
        except (CancelledError, KeyboardInterrupt) as e:
            error = e if isinstance(e, CancelledError) else CancelledError("interrupted")
            self.events.emit(EventType.ERROR, error)
            self._finish(StopReason.CANCELLED, usage, iterations, str(error))
            raise
        except Exception as e:
            self.events.emit(EventType.ERROR, e)
            self._finish(StopReason.ERROR, usage, iterations, str(e))
            raise

        if stop_reason is StopReason.MAX_ITERATIONS:
            logger.info("stopped after %d iterations with tool calls pending", iterations)
        self._finish(stop_reason, usage, iterations)
        return Result(
            answer=answer,
            stop_reason=stop_reason,
            usage=usage,
            iterations=iterations,
            messages=tuple(self._messages),
        )

    def build_request(self) -> Request:
        return Request(
            model=self.config.model,
            messages=tuple(self._messages),
            system_prompt=self.config.system_prompt,
            tools=tuple(self.tools.definitions()),
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            user_id=self.config.user_id,
            reasoning_effort=self.config.reasoning_effort,
        )

    def _request(self, cancel) -> tuple[str, list[ToolCall], Usage]:
        text: list[str] = []
        calls: list[ToolCall] = []
        usage = Usage()
        fragments = self.client.generate(self.build_request(), cancel)
        try:
            for fragment in fragments:
                check_cancel(cancel)
                usage = usage + self._handle_fragment(fragment, text, calls)
        finally:
            close = getattr(fragments, "close", None)
            if callable(close):
                close()
        return "".join(text), calls, usage

    def _handle_fragment(
        self, fragment: Fragment, text: list[str], calls: list[ToolCall]
    ) -> Usage:
        kind = fragment.kind
        if kind is FragmentKind.TEXT:
            text.append(fragment.text)
            self.events.emit(EventType.REPLY, fragment.text)
        elif kind is FragmentKind.REASONING:
            self.events.emit(EventType.REASONING, fragment.text)
        elif kind is FragmentKind.TOOL_CALL:
            calls.append(fragment.tool_call)
        elif kind is FragmentKind.COMPLETION and fragment.usage is not None:
            return fragment.usage
        return Usage()

    def _run_tools(self, calls: list[ToolCall], cancel) -> None:
        for i, call in enumerate(calls):
            try:
                check_cancel(cancel)
            except CancelledError:
                self._cancel_pending(calls[i:])
                raise

            self.events.emit(EventType.TOOL_CALL, call)
            started = time.monotonic()
            try:
                output = self.tools.execute(call)
            except (UnknownToolError, ToolExecutionError) as e:
                logger.debug("tool call %s failed: %s", call.name, e)
                self.events.emit(EventType.ERROR, e)
                self._append(
                    Message(
                        "system",
                        f"Error: {e}",
                        tool_name=call.name,
                        tool_call_id=call.id,
                    )
                )
                continue
            except BaseException:
                # Ctrl-C inside a tool: this call and the rest stay answered.
                self._cancel_pending(calls[i:])
                raise

            result = ToolResult(call.name, output, call.id, time.monotonic() - started)
            self.events.emit(EventType.TOOL_RESULT, result)
            self._append(
                Message("tool", output, tool_name=call.name, tool_call_id=call.id)
            )

    def _cancel_pending(self, calls: list[ToolCall]) -> None:
        # Unanswered calls would make the next request invalid.
        for pending in calls:
            self._append(
                Message(
                    "system",
                    "Error: tool call cancelled",
                    tool_name=pending.name,
                    tool_call_id=pending.id,
                )
            )

    def _append(self, message: Message) -> None:
        self._messages.append(message)
        if self.chat is not None:
            self._persist(self.chat.append, message)

    def _persist(self, fn, *args) -> None:
        try:
            fn(*args)
        except OSError as e:
            logger.warning("could not save chat history to %s: %s", self.chat.path, e)

    def _finish(self, stop_reason, usage, iterations, error=None) -> None:
        self._usage = self._usage + usage
        if self.chat is not None:
            self._persist(self.chat.add_usage, usage)
        self.events.emit(
            EventType.DONE,
            Summary(
                usage=usage,
                iterations=iterations,
                stop_reason=stop_reason,
                error=error,
            ),
        )

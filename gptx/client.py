"""Model client boundary: request/fragment types and the litellm implementation."""

import abc
import enum
import functools
import json
import logging
import queue
import threading
from dataclasses import asdict, dataclass
from typing import Iterator

from .report import CancelledError, TransportError
from .tools import ToolCall, ToolDef

logger = logging.getLogger(__name__)

DEFAULT_LMSTUDIO_URL = "http://127.0.0.1:1234"

# Finish reasons that mean the backend stopped before producing an answer.
_INCOMPLETE_FINISH = ("length", "content_filter")
_CANCEL_POLL = 0.05  # seconds between cancellation checks while a read blocks


@functools.lru_cache(maxsize=1)
def _encoder():
    import tiktoken

    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(text: str) -> int:
    """Approximate token count, used when the backend reports no usage."""
    if not text:
        return 0
    return len(_encoder().encode(text))


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    reasoning_tokens: int = 0
    cached_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        if not isinstance(other, Usage):
            return NotImplemented
        return Usage(
            self.input_tokens + other.input_tokens,
            self.output_tokens + other.output_tokens,
            self.total_tokens + other.total_tokens,
            self.reasoning_tokens + other.reasoning_tokens,
            self.cached_tokens + other.cached_tokens,
        )

    def __bool__(self) -> bool:
        return self.total_tokens > 0 or self.input_tokens > 0 or self.output_tokens > 0

    def as_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> "Usage":
        data = data or {}
        return cls(**{k: int(data.get(k, 0) or 0) for k in cls.__dataclass_fields__})

    @classmethod
    def from_response(cls, usage) -> "Usage":
        """Build from an OpenAI-style usage object as returned by litellm."""
        if usage is None:
            return cls()
        prompt = getattr(usage, "prompt_tokens", 0) or 0
        completion = getattr(usage, "completion_tokens", 0) or 0
        total = getattr(usage, "total_tokens", 0) or prompt + completion
        completion_details = getattr(usage, "completion_tokens_details", None)
        prompt_details = getattr(usage, "prompt_tokens_details", None)
        return cls(
            input_tokens=prompt,
            output_tokens=completion,
            total_tokens=total,
            reasoning_tokens=getattr(completion_details, "reasoning_tokens", 0) or 0,
            cached_tokens=getattr(prompt_details, "cached_tokens", 0) or 0,
        )


@dataclass(frozen=True)
class Message:
    """One history entry. Roles: user, assistant, tool, system."""

    role: str
    content: str = ""
    tool_name: str | None = None
    tool_call_id: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    def to_dict(self) -> dict:
        data: dict = {"role": self.role, "content": self.content}
        if self.tool_name is not None:
            data["tool_name"] = self.tool_name
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            data["tool_calls"] = [
                {"id": c.id, "name": c.name, "arguments": c.arguments}
                for c in self.tool_calls
            ]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            role=data["role"],
            content=data.get("content") or "",
            tool_name=data.get("tool_name"),
            tool_call_id=data.get("tool_call_id"),
            tool_calls=tuple(
                ToolCall(c["name"], c.get("arguments", "{}"), c.get("id", ""))
                for c in data.get("tool_calls") or []
            ),
        )


def to_wire(message: Message) -> dict:
    """Convert a history message to an OpenAI chat-completions message dict.

    A system message answering a tool call is sent as a tool message, so
    every assistant tool call has a reply on the wire.
    """
    if message.role in ("tool", "system") and message.tool_call_id:
        return {
            "role": "tool",
            "tool_call_id": message.tool_call_id,
            "content": message.content,
        }
    if message.role == "assistant" and message.tool_calls:
        return {
            "role": "assistant",
            "content": message.content or None,
            "tool_calls": [
                {
                    "id": c.id,
                    "type": "function",
                    "function": {"name": c.name, "arguments": c.arguments},
                }
                for c in message.tool_calls
            ],
        }
    return {"role": message.role, "content": message.content}


@dataclass(frozen=True)
class Request:
    model: str
    messages: tuple[Message, ...]
    system_prompt: str | None = None
    tools: tuple[ToolDef, ...] = ()
    temperature: float | None = None
    max_tokens: int | None = None
    user_id: str | None = None
    reasoning_effort: str | None = None

    def wire_messages(self) -> list[dict]:
        out = []
        if self.system_prompt:
            out.append({"role": "system", "content": self.system_prompt})
        out.extend(to_wire(m) for m in self.messages)
        return out


class FragmentKind(str, enum.Enum):
    TEXT = "text"
    REASONING = "reasoning"
    TOOL_CALL = "tool_call"
    COMPLETION = "completion"


@dataclass(frozen=True)
class Fragment:
    kind: FragmentKind
    text: str = ""
    tool_call: ToolCall | None = None
    usage: Usage | None = None
    finish_reason: str | None = None


def check_cancel(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise CancelledError()


class ModelClient(abc.ABC):
    """Network boundary to a language-model provider."""

    @abc.abstractmethod
    def generate(
        self, request: Request, cancel: threading.Event | None = None
    ) -> Iterator[Fragment]:
        """Yield TEXT/REASONING deltas, then TOOL_CALLs, then one COMPLETION.

        The returned iterator must release its network resources when closed.
        """


class LiteLLMClient(ModelClient):
    """OpenAI-compatible chat completions through litellm."""

    def __init__(
        self,
        provider: str = "openai",
        api_key: str | None = None,
        base_url: str | None = None,
        stream: bool = True,
        timeout: float | None = None,
    ):
        self.provider = provider
        self.api_key = api_key
        self.base_url = base_url
        self.stream = stream
        self.timeout = timeout

    @classmethod
    def from_config(cls, config) -> "LiteLLMClient":
        return cls(
            provider=config.provider,
            api_key=config.api_key,
            base_url=config.base_url,
            stream=config.stream,
            timeout=config.request_timeout,
        )

    def route(self, model_id: str) -> tuple[str, dict]:
        """Return the litellm model string and provider kwargs."""
        if self.provider == "lmstudio":
            base_url = (self.base_url or DEFAULT_LMSTUDIO_URL).rstrip("/")
            return f"openai/{model_id}", {
                "api_base": f"{base_url}/v1",
                "api_key": self.api_key or "lm-studio",
            }
        if self.provider == "openrouter":
            # Only strip the prefix if the user already included the litellm
            # "openrouter/" prefix; org names like "openrouter/free" stay.
            bare_id = (
                model_id[len("openrouter/") :]
                if model_id.startswith("openrouter/openrouter/")
                else model_id
            )
            model_str = f"openrouter/{bare_id}"
        elif self.provider == "openai":
            model_str = model_id if model_id.startswith("openai/") else f"openai/{model_id}"
        else:
            raise TransportError(f"unknown provider {self.provider!r}")
        kwargs = {"api_key": self.api_key}
        if self.base_url:
            kwargs["api_base"] = self.base_url
        return model_str, kwargs

    def completion_kwargs(self, request: Request) -> dict:
        model_str, kwargs = self.route(request.model)
        completion_kwargs = dict(
            model=model_str,
            messages=request.wire_messages(),
            stream=self.stream,
            **kwargs,
        )
        if request.tools:
            completion_kwargs["tools"] = [t.to_openai() for t in request.tools]
            completion_kwargs["tool_choice"] = "auto"
        if self.stream:
            completion_kwargs["stream_options"] = {"include_usage": True}
        for key, val in [
            ("temperature", request.temperature),
            ("max_tokens", request.max_tokens),
            ("reasoning_effort", request.reasoning_effort),
            ("user", request.user_id),
            ("timeout", self.timeout),
        ]:
            if val is not None:
                completion_kwargs[key] = val
        return completion_kwargs

    def generate(self, request, cancel=None):
        import litellm

        litellm.suppress_debug_info = True

        check_cancel(cancel)
        kwargs = self.completion_kwargs(request)
        logger.debug(
            "calling %s (stream=%s, %d messages, %d tools)",
            kwargs["model"],
            self.stream,
            len(kwargs["messages"]),
            len(kwargs.get("tools", ())),
        )
        try:
            response = litellm.completion(**kwargs)
        except Exception as e:
            raise TransportError(f"LLM call failed: {e}") from e

        if self.stream:
            fragments = self._stream(response, cancel)
        else:
            fragments = self._one_shot(response)

        produced = []
        try:
            for fragment in fragments:
                if fragment.kind is FragmentKind.TEXT:
                    produced.append(fragment.text)
                elif fragment.kind is FragmentKind.COMPLETION and not fragment.usage:
                    fragment = Fragment(
                        FragmentKind.COMPLETION,
                        usage=self._estimate_usage(kwargs["messages"], "".join(produced)),
                        finish_reason=fragment.finish_reason,
                    )
                yield fragment
        finally:
            fragments.close()

    @staticmethod
    def _estimate_usage(messages: list[dict], output: str) -> Usage:
        prompt = sum(estimate_tokens(m.get("content") or "") + 4 for m in messages)
        completion = estimate_tokens(output)
        return Usage(prompt, completion, prompt + completion)

    def _stream(self, response, cancel) -> Iterator[Fragment]:
        calls: dict[int, dict] = {}
        usage = Usage()
        finish_reason = None
        has_text = False
        try:
            for chunk in _read_chunks(response, cancel):
                chunk_usage = getattr(chunk, "usage", None)
                if chunk_usage:
                    usage = Usage.from_response(chunk_usage)
                if not getattr(chunk, "choices", None):
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    yield Fragment(FragmentKind.REASONING, text=reasoning)
                content = getattr(delta, "content", None)
                if content:
                    has_text = True
                    yield Fragment(FragmentKind.TEXT, text=content)
                for tc in getattr(delta, "tool_calls", None) or []:
                    index = getattr(tc, "index", None)
                    if index is None:
                        index = len(calls)
                    entry = calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
                    if getattr(tc, "id", None):
                        entry["id"] = tc.id
                    fn = getattr(tc, "function", None)
                    if fn is not None:
                        if fn.name:
                            entry["name"] = fn.name
                        if fn.arguments:
                            entry["arguments"] += fn.arguments
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
            check_cancel(cancel)
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(f"stream failed: {e}") from e
        finally:
            close = getattr(response, "close", None)
            if callable(close):
                close()

        tool_calls = [
            _make_call(calls[i]["name"], calls[i]["arguments"], calls[i]["id"], i)
            for i in sorted(calls)
        ]
        _check_finish(finish_reason, has_text or bool(tool_calls))
        for call in tool_calls:
            yield Fragment(FragmentKind.TOOL_CALL, tool_call=call)
        yield Fragment(FragmentKind.COMPLETION, usage=usage, finish_reason=finish_reason)

    def _one_shot(self, response) -> Iterator[Fragment]:
        try:
            choice = response.choices[0]
            message = choice.message
        except (AttributeError, IndexError, TypeError) as e:
            raise TransportError(f"malformed response: {e}") from e

        reasoning = getattr(message, "reasoning_content", None)
        if reasoning:
            yield Fragment(FragmentKind.REASONING, text=reasoning)
        if message.content:
            yield Fragment(FragmentKind.TEXT, text=message.content)

        tool_calls = []
        for i, tc in enumerate(getattr(message, "tool_calls", None) or []):
            fn = getattr(tc, "function", None)
            if fn is None:
                raise TransportError("malformed response: tool call without function")
            tool_calls.append(_make_call(fn.name, fn.arguments, tc.id, i))

        _check_finish(choice.finish_reason, bool(message.content or tool_calls))
        for call in tool_calls:
            yield Fragment(FragmentKind.TOOL_CALL, tool_call=call)
        yield Fragment(
            FragmentKind.COMPLETION,
            usage=Usage.from_response(getattr(response, "usage", None)),
            finish_reason=choice.finish_reason,
        )


def _read_chunks(response, cancel: threading.Event | None) -> Iterator:
    """Iterate a streaming response, giving up as soon as cancel is set.

    With a cancel event the blocking reads run on a daemon thread, so a
    stalled connection cannot delay CancelledError. The caller closes the
    response, which also ends the reader.
    """
    if cancel is None:
        yield from response
        return

    chunks: queue.Queue = queue.Queue()

    def reader():
        try:
            for chunk in response:
                chunks.put(("chunk", chunk))
                if cancel.is_set():
                    break
        except Exception as e:
            chunks.put(("error", e))
        else:
            chunks.put(("end", None))

    threading.Thread(target=reader, name="gptx-stream-reader", daemon=True).start()
    while True:
        check_cancel(cancel)
        try:
            kind, item = chunks.get(timeout=_CANCEL_POLL)
        except queue.Empty:
            continue
        if kind == "end":
            return
        if kind == "error":
            raise item
        yield item


def _make_call(name: str | None, arguments: str | None, call_id: str | None, index: int) -> ToolCall:
    if not name:
        raise TransportError(f"malformed response: tool call #{index} has no name")
    if isinstance(arguments, dict):
        arguments = json.dumps(arguments)
    return ToolCall(name, arguments or "{}", call_id or f"call_{index}")


def _check_finish(finish_reason: str | None, produced: bool) -> None:
    if finish_reason in _INCOMPLETE_FINISH and not produced:
        raise TransportError(
            f"incomplete response from model (finish_reason={finish_reason})"
        )

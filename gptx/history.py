"""Chat history persistence: one JSON file per conversation."""

import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from .client import Message, Usage
from .report import AgentError

MAX_TITLE_CHARS = 60


@dataclass
class ChatHistory:
    """A conversation stored as ``{title, messages, usage}`` JSON.

    Every append rewrites the file, so an interrupted run keeps what it
    had produced so far.
    """

    path: Path | None = None
    title: str = ""
    messages: list[Message] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)

    @classmethod
    def load(cls, path: str | Path) -> "ChatHistory":
        """Load history from path. A missing file gives an empty history."""
        path = Path(path).expanduser()
        if not path.exists():
            return cls(path=path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return cls(
                path=path,
                title=data.get("title", ""),
                messages=[Message.from_dict(m) for m in data.get("messages", [])],
                usage=Usage.from_dict(data.get("usage")),
            )
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise AgentError(f"cannot load chat history {path}: {e}") from e

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "usage": self.usage.as_dict(),
        }

    def append(self, message: Message) -> None:
        self.messages.append(message)
        if not self.title and message.role == "user":
            first_line = message.content.strip().split("\n", 1)[0]
            self.title = first_line[:MAX_TITLE_CHARS]
        self.save()

    def add_usage(self, usage: Usage) -> None:
        self.usage = self.usage + usage
        self.save()

    def clear(self) -> None:
        self.title = ""
        self.messages.clear()
        self.usage = Usage()
        self.save()

    def save(self) -> None:
        """Write atomically (temp file + rename). No-op without a path."""
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".chat-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2)
                f.write("\n")
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

"""Public library API for gptx: the conversation model and its collaborators."""

from .client import LiteLLMClient, Message, ModelClient, Usage
from .config import Config
from .events import EventBus, EventType
from .model import Model, Result, StopReason, Summary
from .tools import ToolCall, ToolDef, ToolRegistry, ToolResult

__all__ = [
    "Config",
    "EventBus",
    "EventType",
    "LiteLLMClient",
    "Message",
    "Model",
    "ModelClient",
    "Result",
    "StopReason",
    "Summary",
    "ToolCall",
    "ToolDef",
    "ToolRegistry",
    "ToolResult",
    "Usage",
]

"""Completion client, note tools, and tool call gating."""

from .client import AIClient, AIStreamEvent, ClientSettings
from .note_tools import NOTE_TOOLS, NoteToolExecutor, openai_tools
from .tool_gate import ToolCallBusyError, ToolCallGate, ToolCallStateError

__all__ = [
    "AIClient",
    "AIStreamEvent",
    "ClientSettings",
    "NOTE_TOOLS",
    "NoteToolExecutor",
    "openai_tools",
    "ToolCallBusyError",
    "ToolCallGate",
    "ToolCallStateError",
]

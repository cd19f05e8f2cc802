"""Conversation messages exchanged with the agent.

AgentMessage is a closed union of four variants. Every function that takes
one handles all four and raises TypeError for anything else.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class UserMessage:
    content: str


@dataclass(frozen=True)
class AssistantMessage:
    content: str


@dataclass(frozen=True)
class ToolCallMessage:
    """The model asked for a tool to be run."""
    call_id: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultMessage:
    """Result of a tool call, as a JSON string."""
    call_id: str
    tool_name: str
    result: str


AgentMessage = Union[UserMessage, AssistantMessage, ToolCallMessage, ToolResultMessage]


def _unknown(message: Any) -> TypeError:
    return TypeError(f"Not an agent message: {type(message).__name__}")


def message_to_dict(message: AgentMessage) -> dict[str, Any]:
    """Tagged dict form used for persistence."""
    if isinstance(message, UserMessage):
        return {"type": "user", "content": message.content}
    if isinstance(message, AssistantMessage):
        return {"type": "assistant", "content": message.content}
    if isinstance(message, ToolCallMessage):
        return {
            "type": "toolCall",
            "tool_call_id": message.call_id,
            "tool_name": message.tool_name,
            "arguments": message.arguments,
        }
    if isinstance(message, ToolResultMessage):
        return {
            "type": "toolResult",
            "tool_call_id": message.call_id,
            "tool_name": message.tool_name,
            "result": message.result,
        }
    raise _unknown(message)


def message_from_dict(data: dict[str, Any]) -> AgentMessage:
    """Inverse of message_to_dict.

    Raises:
        TypeError: unknown ``type`` tag
        KeyError: a field of the variant is missing
    """
    kind = data.get("type")
    if kind == "user":
        return UserMessage(data["content"])
    if kind == "assistant":
        return AssistantMessage(data["content"])
    if kind == "toolCall":
        return ToolCallMessage(data["tool_call_id"], data["tool_name"], dict(data.get("arguments") or {}))
    if kind == "toolResult":
        return ToolResultMessage(data["tool_call_id"], data["tool_name"], data["result"])
    raise TypeError(f"Unknown message type: {kind!r}")


def to_openai_message(message: AgentMessage) -> dict[str, Any]:
    """Chat-completions wire format of a message."""
    if isinstance(message, UserMessage):
        return {"role": "user", "content": message.content}
    if isinstance(message, AssistantMessage):
        return {"role": "assistant", "content": message.content}
    if isinstance(message, ToolCallMessage):
        # The API wants arguments as a JSON string
        return {
            "role": "assistant",
            "content": None,
            "tool_calls": [{
                "id": message.call_id,
                "type": "function",
                "function": {
                    "name": message.tool_name,
                    "arguments": json.dumps(message.arguments),
                },
            }],
        }
    if isinstance(message, ToolResultMessage):
        return {
            "role": "tool",
            "tool_call_id": message.call_id,
            "name": message.tool_name,
            "content": message.result,
        }
    raise _unknown(message)


def messages_from_openai_response(message: dict[str, Any]) -> list[AgentMessage]:
    """Split an assistant response into text and tool-call messages.

    Tool-call arguments that are not valid JSON become an empty dict; the
    dispatcher then reports the missing arguments back to the model.
    """
    result: list[AgentMessage] = []
    content = message.get("content")
    if content:
        result.append(AssistantMessage(content))
    for call in message.get("tool_calls") or []:
        function = call.get("function", {})
        try:
            arguments = json.loads(function.get("arguments") or "{}")
        except ValueError:
            arguments = {}
        if not isinstance(arguments, dict):
            arguments = {}
        result.append(ToolCallMessage(call["id"], function.get("name", ""), arguments))
    return result


def display_text(message: AgentMessage) -> str:
    if isinstance(message, (UserMessage, AssistantMessage)):
        return message.content
    if isinstance(message, ToolCallMessage):
        return f"[Calling tool: {message.tool_name}]"
    if isinstance(message, ToolResultMessage):
        return f"[Result from: {message.tool_name}]"
    raise _unknown(message)

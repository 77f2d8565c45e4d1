"""Conversation log: messages, tool calls and the append-only message store."""

import json
import uuid
from dataclasses import dataclass, field
from typing import Any

import tiktoken

_encoder = tiktoken.get_encoding("cl100k_base")

DEFAULT_MAX_HISTORY = 70
DEFAULT_KEEP_RECENT = 69

ROLES = ("system", "user", "assistant", "tool")


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class ToolCallResult:
    """A dispatched call paired with its result, kept for introspection only."""

    call: ToolCall
    result: Any


@dataclass(frozen=True)
class Message:
    role: str
    content: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"unknown message role {self.role!r}")
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("tool messages require a tool_call_id")

    def to_dict(self) -> dict:
        d: dict = {"role": self.role, "content": self.content}
        if self.tool_calls:
            d["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            d["tool_call_id"] = self.tool_call_id
        return d


def system_message(content: str) -> Message:
    return Message(role="system", content=content)


def user_message(content: str) -> Message:
    return Message(role="user", content=content)


def assistant_message(content: str, tool_calls=()) -> Message:
    return Message(role="assistant", content=content, tool_calls=tuple(tool_calls))


def tool_message(call_id: str, result: Any) -> Message:
    return Message(
        role="tool",
        content=json.dumps(result, ensure_ascii=False, default=str),
        tool_call_id=call_id,
    )


@dataclass
class MessageStore:
    """Ordered conversation log. Insertion order is never changed.

    Messages are only ever appended, except for the leading system message,
    which is regenerated in place whenever the prompt it carries changes.
    """

    _messages: list[Message] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(self._messages)

    def __getitem__(self, index):
        return self._messages[index]

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def append(self, message: Message) -> None:
        if message.role == "system" and self._messages:
            raise ValueError("system message can only be set via set_system()")
        if message.role == "tool":
            self._check_tool_result(message)
        self._messages.append(message)

    def extend(self, messages) -> None:
        for m in messages:
            self.append(m)

    def set_system(self, content: str) -> None:
        """Regenerate message 0, or insert it if the store has no system message."""
        msg = system_message(content)
        if self._messages and self._messages[0].role == "system":
            self._messages[0] = msg
        else:
            self._messages.insert(0, msg)

    def clear(self) -> None:
        self._messages.clear()

    def to_wire(self) -> list[dict]:
        return [m.to_dict() for m in self._messages]

    def _check_tool_result(self, message: Message) -> None:
        # Walk back over sibling tool results to the requesting assistant turn.
        for prev in reversed(self._messages):
            if prev.role == "tool":
                if prev.tool_call_id == message.tool_call_id:
                    raise ValueError(
                        f"duplicate tool result for call {message.tool_call_id!r}"
                    )
                continue
            if prev.role == "assistant" and any(
                tc.id == message.tool_call_id for tc in prev.tool_calls
            ):
                return
            break
        raise ValueError(
            f"tool result {message.tool_call_id!r} does not answer the preceding assistant turn"
        )


def compact_history(
    store: MessageStore,
    system_content: str,
    *,
    max_messages: int = DEFAULT_MAX_HISTORY,
    keep_recent: int = DEFAULT_KEEP_RECENT,
) -> bool:
    """Bound the store to a fresh system message plus the last keep_recent entries.

    Returns True when the store was truncated. Leading tool results whose
    assistant request fell outside the window are dropped with it.
    """
    if len(store) <= max_messages:
        return False

    body = store.messages
    if body and body[0].role == "system":
        body = body[1:]
    tail = body[-keep_recent:] if keep_recent > 0 else []
    while tail and tail[0].role == "tool":
        tail.pop(0)

    store.clear()
    store.set_system(system_content)
    store.extend(tail)
    return True


def estimate_tokens(messages, tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    total = 0
    for m in messages:
        d = m.to_dict() if isinstance(m, Message) else m
        content = d.get("content") or ""
        for tc in d.get("tool_calls") or ():
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments", "") or "")
        total += len(_encoder.encode(content))
    if tools:
        total += len(_encoder.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total

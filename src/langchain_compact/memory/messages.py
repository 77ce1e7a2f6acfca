"""
Message and history types for the compaction engine.

History is an ordered, append-only arena of immutable messages with an
id → position index, so lookups by id and backward scans are cheap.
Compaction never edits a History in place; it builds a new one.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, Optional

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

from .token_budget import estimate_message_tokens

# Id prefix of the system message that carries a materialized snapshot
SNAPSHOT_ID_PREFIX = "snapshot-"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    DIFF = "diff"
    DECISION = "decision"
    SYSTEM = "system"


@dataclass(frozen=True)
class Message:
    """A single history entry. Immutable once created."""

    id: str
    role: Role
    content: str
    provider_id: Optional[str] = None
    tokens: int = field(default=0, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "role", Role(self.role))
        if not self.tokens:
            object.__setattr__(self, "tokens", estimate_message_tokens(self.content))

    @classmethod
    def create(
        cls,
        role,
        content: str,
        provider_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> "Message":
        return cls(
            id=message_id or uuid.uuid4().hex,
            role=Role(role),
            content=content,
            provider_id=provider_id,
        )

    @property
    def is_snapshot(self) -> bool:
        return self.role is Role.SYSTEM and self.id.startswith(SNAPSHOT_ID_PREFIX)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "provider_id": self.provider_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            id=str(data["id"]),
            role=Role(data["role"]),
            content=str(data.get("content", "")),
            provider_id=data.get("provider_id"),
        )


class History:
    """Ordered, indexable sequence of messages keyed by id."""

    def __init__(self, messages: Iterable[Message] = ()):
        self._messages: list[Message] = []
        self._index: dict[str, int] = {}
        for msg in messages:
            self.append(msg)

    def append(self, msg: Message) -> Message:
        if msg.id in self._index:
            raise ValueError(f"duplicate message id: {msg.id}")
        self._index[msg.id] = len(self._messages)
        self._messages.append(msg)
        return msg

    def get(self, message_id: str) -> Optional[Message]:
        pos = self._index.get(message_id)
        return None if pos is None else self._messages[pos]

    def position(self, message_id: str) -> Optional[int]:
        return self._index.get(message_id)

    def __contains__(self, message_id) -> bool:
        return message_id in self._index

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self._messages)

    def __getitem__(self, item):
        return self._messages[item]

    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def ids(self) -> list[str]:
        return [m.id for m in self._messages]

    def total_tokens(self) -> int:
        return sum(m.tokens for m in self._messages)

    def last_with_provider_id(self) -> Optional[Message]:
        """Most recent message that carries an external provider id."""
        for pos in range(len(self._messages) - 1, -1, -1):
            msg = self._messages[pos]
            if msg.provider_id:
                return msg
        return None


# ── LangChain conversion ──


def content_text(content) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict):
                # thinking blocks are not part of the visible transcript
                if block.get("type") in ("thinking", "reasoning"):
                    continue
                text = block.get("text") or ""
                if text:
                    parts.append(text)
        return "\n".join(parts)
    return str(content) if content else ""


def from_langchain(msg: BaseMessage) -> Message:
    """Convert a LangChain message into a history Message."""
    if isinstance(msg, SystemMessage):
        role = Role.SYSTEM
    elif isinstance(msg, AIMessage):
        role = Role.ASSISTANT
    elif isinstance(msg, ToolMessage):
        role = Role.TOOL
    else:
        role = Role.USER
    return Message.create(
        role,
        content_text(msg.content),
        provider_id=getattr(msg, "id", None),
    )


def to_langchain(msg: Message) -> BaseMessage:
    """Convert a history Message into the LangChain message the LLM sees."""
    if msg.role is Role.SYSTEM:
        return SystemMessage(content=msg.content, id=msg.id)
    if msg.role is Role.ASSISTANT:
        return AIMessage(content=msg.content, id=msg.id)
    if msg.role is Role.TOOL and msg.provider_id:
        return ToolMessage(content=msg.content, tool_call_id=msg.provider_id, id=msg.id)
    if msg.role in (Role.TOOL, Role.DIFF, Role.DECISION):
        return HumanMessage(content=f"[{msg.role.value}]\n{msg.content}", id=msg.id)
    return HumanMessage(content=msg.content, id=msg.id)

"""Canonical data models."""

import time
from dataclasses import dataclass, field
from typing import Any

from welfare_chat.timeutil import EPOCH_MILLIS_THRESHOLD, latest_timestamp


@dataclass(frozen=True)
class LocalId:
    """Client-minted id (millisecond timestamp) for an unconfirmed message."""

    value: int

    @classmethod
    def mint(cls) -> "LocalId":
        return cls(int(time.time() * 1000))

    @property
    def is_local(self) -> bool:
        return True

    def to_wire(self) -> int:
        return self.value


@dataclass(frozen=True)
class ServerId:
    """Backend-assigned (or normalizer-synthesized) message id."""

    value: int | str

    @property
    def is_local(self) -> bool:
        return False

    def to_wire(self) -> int | str:
        return self.value


MessageId = LocalId | ServerId


def message_id_from_wire(value: Any, id_space: str | None = None) -> MessageId:
    """Rebuild a tagged id from its serialized form.

    When the id space was recorded alongside the value it is used as is.
    Untagged numeric values at or above the millisecond epoch threshold
    are assumed to be client-minted.
    """
    if id_space == "local":
        return LocalId(int(value))
    if id_space == "server":
        return ServerId(value)
    if isinstance(value, int) and not isinstance(value, bool) and value >= EPOCH_MILLIS_THRESHOLD:
        return LocalId(value)
    return ServerId(value)


@dataclass
class CanonicalMessage:
    """A normalized chat message from any channel (app, WhatsApp, auto reply)."""

    id: MessageId
    user_id: int | str
    text: str
    timestamp: str  # ISO 8601
    sender: str  # user, admin, or a channel sender type such as whatsapp
    source: str | None = None  # app, whatsapp, auto; labelling only
    user_name: str = "Unknown"
    phone: str = ""

    @property
    def is_local(self) -> bool:
        return self.id.is_local

    def to_dict(self) -> dict[str, Any]:
        """Convert to the message shape the webhook workflows emit."""
        doc: dict[str, Any] = {
            "id": self.id.to_wire(),
            "text": self.text,
            "timestamp": self.timestamp,
            "sender": self.sender,
        }
        if self.source is not None:
            doc["source"] = self.source
        return doc


@dataclass
class Conversation:
    """All messages between one user and the organization."""

    user_id: int | str
    user_name: str = "Unknown"
    phone: str = ""
    last_message_time: str | None = None
    messages: list[CanonicalMessage] = field(default_factory=list)

    @property
    def key(self) -> str:
        """Aggregation key; 7 and "7" address the same conversation."""
        return str(self.user_id)

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def append(self, message: CanonicalMessage) -> None:
        """Append a message and fold its timestamp into last_message_time."""
        self.messages.append(message)
        self.last_message_time = latest_timestamp(
            [ts for ts in (self.last_message_time, message.timestamp) if ts is not None]
        )

    def recompute_last_message_time(self) -> None:
        self.last_message_time = latest_timestamp([m.timestamp for m in self.messages])

    def preview(self, length: int = 50) -> str:
        """Text of the last message in arrival order, truncated for listings."""
        if not self.messages:
            return "No messages"
        text = self.messages[-1].text
        if len(text) > length:
            return text[:length] + "..."
        return text

    def to_dict(self) -> dict[str, Any]:
        """Convert to the conversation shape the webhook workflows emit."""
        return {
            "user_id": self.user_id,
            "user_name": self.user_name,
            "phone": self.phone,
            "last_message_time": self.last_message_time,
            "messages": [m.to_dict() for m in self.messages],
        }

"""Fold raw message records into per-user conversations."""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from welfare_chat.logging import get_logger
from welfare_chat.models import Conversation
from welfare_chat.normalizer import DEFAULT_ALIASES, AliasTable, normalize_record, unwrap_envelope
from welfare_chat.timeutil import parse_timestamp

logger = get_logger("aggregator")


@dataclass
class AggregationResult:
    """Conversations keyed by str(user_id), in first-seen order."""

    conversations: dict[str, Conversation] = field(default_factory=dict)
    dropped: int = 0  # records with no resolvable owner
    unparsable_timestamps: int = 0

    def __len__(self) -> int:
        return len(self.conversations)

    def get(self, user_id: int | str) -> Conversation | None:
        return self.conversations.get(str(user_id))

    def to_list(self) -> list[Conversation]:
        return list(self.conversations.values())

    def to_payload(self) -> dict[str, Any]:
        """Serialize as {"conversations": [...]}."""
        return {"conversations": [c.to_dict() for c in self.conversations.values()]}


def aggregate(
    records: Iterable[Any],
    aliases: AliasTable = DEFAULT_ALIASES,
    *,
    now: datetime | None = None,
) -> AggregationResult:
    """Group raw records into one Conversation per user.

    Records are processed in order; each message is appended to its owner's
    conversation and last_message_time is kept at the chronological maximum.
    Records without an owner are skipped and counted, never fatal.

    Args:
        records: Raw records, optionally {"json": {...}} wrapped
        aliases: Alias table for field resolution
        now: Timestamp for records that carry none

    Returns:
        AggregationResult with conversations and data-quality counters
    """
    result = AggregationResult()

    for raw in records:
        message = normalize_record(raw, aliases, now=now)
        if message is None:
            result.dropped += 1
            logger.debug("Skipping record with no user id: keys=%s", _keys(raw))
            continue

        if parse_timestamp(message.timestamp) is None:
            result.unparsable_timestamps += 1

        key = str(message.user_id)
        conversation = result.conversations.get(key)
        if conversation is None:
            conversation = Conversation(
                user_id=message.user_id,
                user_name=message.user_name,
                phone=message.phone,
                last_message_time=message.timestamp,
            )
            result.conversations[key] = conversation
        else:
            # Later records may fill in details the first one lacked
            if conversation.user_name == "Unknown" and message.user_name != "Unknown":
                conversation.user_name = message.user_name
            if not conversation.phone and message.phone:
                conversation.phone = message.phone

        conversation.append(message)

    return result


def flatten_conversations(items: Iterable[Any]) -> list[dict[str, Any]]:
    """Expand pre-aggregated conversation objects into per-message records.

    Admin workflows may return conversations that are already grouped
    ({user_id, user_name, phone, messages: [...]}), sometimes with several
    entries for one user. Each message is copied with its owner's details
    so that aggregate() folds them back into one conversation per user.
    Items without a messages list are passed through unchanged.
    """
    flat: list[dict[str, Any]] = []
    for item in items:
        record = unwrap_envelope(item)
        if record is None:
            continue
        messages = record.get("messages")
        if not isinstance(messages, list):
            flat.append(record)
            continue

        owner = {
            "user_id": record.get("user_id", record.get("userId")),
            "user_name": record.get("user_name", record.get("name")),
            "user_phone": record.get("phone", record.get("user_phone")),
        }
        for message in messages:
            message = unwrap_envelope(message)
            if message is None:
                continue
            expanded = {k: v for k, v in owner.items() if v is not None}
            expanded.update(message)
            # The message's own owner fields must not be shadowed by None
            for key in ("user_id", "user_name", "user_phone"):
                if expanded.get(key) is None and owner[key] is not None:
                    expanded[key] = owner[key]
            flat.append(expanded)
    return flat


def _keys(raw: Any) -> list[str]:
    if isinstance(raw, dict):
        return sorted(str(k) for k in raw)
    return []

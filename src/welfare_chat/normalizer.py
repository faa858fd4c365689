"""Normalization of raw webhook records into canonical messages.

Records arrive from several workflows (app chat, WhatsApp relay, admin
listings) and disagree on field names:

- owner: user_id, userId, or only id
- body: message, text, msg, or content
- time: created_at, createdAt, timestamp, or date
- role: sender_type, senderType, type, or sender

An AliasTable lists, per canonical field, the raw keys to try in order.
resolve_first() returns the first non-empty value, and normalize_record()
applies the table to one record.
"""

import hashlib
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from welfare_chat.models import CanonicalMessage, ServerId
from welfare_chat.timeutil import epoch_to_iso, utc_now_iso

__all__ = [
    "AliasTable",
    "DEFAULT_ALIASES",
    "SENDER_ROLES",
    "is_empty",
    "normalize_record",
    "resolve_first",
    "synthesize_message_id",
    "unwrap_envelope",
]

# Values of a raw "sender" key that name a role rather than a person
SENDER_ROLES = frozenset({"user", "admin", "whatsapp", "auto", "system"})


@dataclass(frozen=True)
class AliasTable:
    """Ordered raw keys to try for each canonical field."""

    user_id: tuple[str, ...] = ("user_id", "userId")
    # Last-resort owner keys; replaced by the caller's user id in
    # conversation-scoped normalization
    identity_fallbacks: tuple[str, ...] = ("id",)
    user_name: tuple[str, ...] = ("user_name", "sender", "name")
    phone: tuple[str, ...] = ("user_phone", "phone", "telephone")
    timestamp: tuple[str, ...] = ("created_at", "createdAt", "timestamp", "date")
    text: tuple[str, ...] = ("message", "text", "msg", "content")
    sender: tuple[str, ...] = ("sender_type", "senderType", "type", "sender")
    source: tuple[str, ...] = ("source", "channel")
    message_id: tuple[str, ...] = ("id",)

    def with_overrides(self, **fields: tuple[str, ...]) -> "AliasTable":
        """Return a copy with some alias lists replaced.

        Raises:
            TypeError: If a field name is not part of the table
        """
        return replace(self, **fields)


DEFAULT_ALIASES = AliasTable()


def is_empty(value: Any) -> bool:
    """True for None, blank strings, and empty containers. Numbers are values."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def resolve_first(record: dict[str, Any], keys: tuple[str, ...], accept=None) -> Any:
    """Return the first non-empty value among keys, or None.

    Args:
        record: Raw record
        keys: Keys to try, highest priority first
        accept: Optional predicate a value must also satisfy to be chosen

    Returns:
        The resolved value, or None if no key yields one
    """
    for key in keys:
        value = record.get(key)
        if is_empty(value):
            continue
        if accept is not None and not accept(key, value):
            continue
        return value
    return None


def unwrap_envelope(record: Any) -> dict[str, Any] | None:
    """Unwrap one level of {"json": {...}} item envelope."""
    if not isinstance(record, dict):
        return None
    inner = record.get("json")
    if isinstance(inner, dict):
        return inner
    return record


def _is_role(value: Any) -> bool:
    return isinstance(value, str) and value.strip().lower() in SENDER_ROLES


def _name_value(key: str, value: Any) -> bool:
    # "sender" doubles as a role field in some workflows
    return not (key == "sender" and _is_role(value))


def _role_value(key: str, value: Any) -> bool:
    return key != "sender" or _is_role(value)


def _normalize_timestamp(value: Any, now: datetime | None) -> str:
    if is_empty(value):
        return utc_now_iso(now)
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, (int, float)):
        try:
            return epoch_to_iso(value)
        except (OverflowError, OSError, ValueError):
            return str(value)
    if isinstance(value, datetime):
        return utc_now_iso(value)
    return str(value)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def synthesize_message_id(user_id: Any, timestamp: Any, text: str, sender: str) -> ServerId:
    """Derive a stable id for a record that carries none.

    The id is a hash of the record's own fields so that refetching the same
    record yields the same id. Two id-less records identical in owner, time,
    text, and sender collapse into one.
    """
    basis = f"{user_id}|{'' if timestamp is None else timestamp}|{text}|{sender}"
    digest = hashlib.sha256(basis.encode()).hexdigest()[:16]
    return ServerId(f"syn-{digest}")


def normalize_record(
    raw: Any,
    aliases: AliasTable = DEFAULT_ALIASES,
    *,
    user_id: int | str | None = None,
    now: datetime | None = None,
) -> CanonicalMessage | None:
    """Normalize one raw record into a CanonicalMessage.

    Args:
        raw: Raw record (dict, optionally wrapped as {"json": {...}})
        aliases: Alias table to resolve fields with
        user_id: Owner id for conversation-scoped batches whose records may
                 omit the owner; used instead of the identity fallbacks
        now: Time to stamp records that carry no timestamp (defaults to now)

    Returns:
        CanonicalMessage, or None if the record has no resolvable owner
    """
    record = unwrap_envelope(raw)
    if record is None:
        return None

    owner = resolve_first(record, aliases.user_id)
    if owner is None:
        if user_id is not None and not is_empty(user_id):
            owner = user_id
        else:
            owner = resolve_first(record, aliases.identity_fallbacks)
    if owner is None:
        return None

    raw_timestamp = resolve_first(record, aliases.timestamp)
    text = _as_text(resolve_first(record, aliases.text))
    sender = resolve_first(record, aliases.sender, accept=_role_value)
    sender = _as_text(sender).strip() if sender is not None else "user"
    source = resolve_first(record, aliases.source)

    raw_id = resolve_first(record, aliases.message_id)
    if raw_id is not None:
        if isinstance(raw_id, bool) or not isinstance(raw_id, (int, float, str)):
            raw_id = str(raw_id)
        message_id = ServerId(raw_id)
    else:
        message_id = synthesize_message_id(owner, raw_timestamp, text, sender)

    user_name = resolve_first(record, aliases.user_name, accept=_name_value)
    phone = resolve_first(record, aliases.phone)

    return CanonicalMessage(
        id=message_id,
        user_id=owner,
        text=text,
        timestamp=_normalize_timestamp(raw_timestamp, now),
        sender=sender,
        source=_as_text(source) if source is not None else None,
        user_name=_as_text(user_name) if user_name is not None else "Unknown",
        phone=_as_text(phone) if phone is not None else "",
    )

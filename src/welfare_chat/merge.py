"""Incremental merge of fetched messages into held conversation state."""

import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime

from welfare_chat.aggregator import AggregationResult
from welfare_chat.logging import get_logger
from welfare_chat.models import CanonicalMessage, Conversation, LocalId, MessageId
from welfare_chat.timeutil import latest_timestamp, parse_timestamp, utc_now_iso

logger = get_logger("merge")


@dataclass
class MergeResult:
    """Outcome of merging one fetched batch."""

    messages: list[CanonicalMessage]
    added: list[CanonicalMessage] = field(default_factory=list)
    last_message_time: str | None = None

    @property
    def changed(self) -> bool:
        return bool(self.added)


def known_ids(messages: Iterable[CanonicalMessage]) -> tuple[set[MessageId], set[MessageId]]:
    """Partition message ids into (local-space, server-space) sets."""
    local: set[MessageId] = set()
    server: set[MessageId] = set()
    for message in messages:
        (local if message.id.is_local else server).add(message.id)
    return local, server


def merge_messages(
    existing: list[CanonicalMessage],
    fetched: Sequence[CanonicalMessage],
) -> MergeResult:
    """Append fetched messages whose ids are not already held.

    Ids are compared only within their own space: a fetched server id never
    matches a client-minted local id, even if the raw values are equal.
    New messages keep their fetch order and go after all existing ones.
    When nothing is new, the returned list is the existing list object.

    Args:
        existing: Held messages, already free of duplicate ids
        fetched: Freshly fetched batch for the same conversation

    Returns:
        MergeResult with the merged list, the added messages, and the
        recomputed last message time
    """
    local, server = known_ids(existing)
    added: list[CanonicalMessage] = []

    for message in fetched:
        seen = local if message.id.is_local else server
        if message.id in seen:
            continue
        seen.add(message.id)
        added.append(message)

    if not added:
        return MergeResult(
            messages=existing,
            last_message_time=latest_timestamp([m.timestamp for m in existing]),
        )

    merged = [*existing, *added]
    return MergeResult(
        messages=merged,
        added=added,
        last_message_time=latest_timestamp([m.timestamp for m in merged]),
    )


def merge_into(conversation: Conversation, fetched: Sequence[CanonicalMessage]) -> MergeResult:
    """Merge a fetched batch into a conversation in place."""
    result = merge_messages(conversation.messages, fetched)
    if result.changed:
        conversation.messages = result.messages
    conversation.last_message_time = result.last_message_time

    # Fill in owner details from the batch where the conversation has none
    for message in result.added:
        if conversation.user_name == "Unknown" and message.user_name != "Unknown":
            conversation.user_name = message.user_name
        if not conversation.phone and message.phone:
            conversation.phone = message.phone
    return result


def _sort_key(conversation: Conversation) -> float:
    dt = parse_timestamp(conversation.last_message_time)
    return dt.timestamp() if dt is not None else float("-inf")


def _detached(conversation: Conversation) -> Conversation:
    return replace(conversation, messages=list(conversation.messages))


class ConversationStore:
    """The shared map of conversations, keyed by str(user_id).

    All mutation goes through apply_aggregation(), merge(), and
    append_local(), which are serialized by one lock so that a manual sync
    and a poll tick can run their fetches concurrently and apply their
    merges one after the other. Readers get copies taken under the lock.
    """

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._conversations)

    def get(self, user_id: int | str) -> Conversation | None:
        with self._lock:
            conversation = self._conversations.get(str(user_id))
            return _detached(conversation) if conversation is not None else None

    def snapshot(self) -> list[Conversation]:
        """Conversations ordered by most recent activity first."""
        with self._lock:
            conversations = [_detached(c) for c in self._conversations.values()]
        return sorted(conversations, key=_sort_key, reverse=True)

    def messages(self, user_id: int | str) -> list[CanonicalMessage]:
        """Current message list for a user (empty if unknown)."""
        with self._lock:
            conversation = self._conversations.get(str(user_id))
            return list(conversation.messages) if conversation is not None else []

    def _ensure(self, user_id: int | str, user_name: str = "Unknown", phone: str = "") -> Conversation:
        key = str(user_id)
        conversation = self._conversations.get(key)
        if conversation is None:
            conversation = Conversation(user_id=user_id, user_name=user_name, phone=phone)
            self._conversations[key] = conversation
        return conversation

    def merge(self, user_id: int | str, fetched: Sequence[CanonicalMessage]) -> MergeResult:
        """Merge a fetched batch into one user's conversation."""
        with self._lock:
            conversation = self._ensure(user_id)
            result = merge_into(conversation, fetched)
        if result.changed:
            logger.debug("Merged messages: user_id=%s added=%d", user_id, len(result.added))
        return result

    def apply_aggregation(self, aggregation: AggregationResult) -> dict[str, MergeResult]:
        """Merge every conversation of an aggregation pass into the store.

        Held messages are never removed; conversations absent from the pass
        are left as they are.

        Returns:
            MergeResult per conversation key
        """
        results: dict[str, MergeResult] = {}
        with self._lock:
            for key, incoming in aggregation.conversations.items():
                conversation = self._ensure(incoming.user_id, incoming.user_name, incoming.phone)
                results[key] = merge_into(conversation, incoming.messages)
        added = sum(len(r.added) for r in results.values())
        if added:
            logger.debug("Applied aggregation: conversations=%d added=%d", len(results), added)
        return results

    def append_local(
        self,
        user_id: int | str,
        text: str,
        sender: str = "user",
        source: str | None = "app",
        now: datetime | None = None,
    ) -> CanonicalMessage:
        """Optimistically append a client-side message with a local id."""
        message = CanonicalMessage(
            id=LocalId.mint(),
            user_id=user_id,
            text=text,
            timestamp=utc_now_iso(now),
            sender=sender,
            source=source,
        )
        with self._lock:
            conversation = self._ensure(user_id)
            # Keep local ids unique when two messages land in the same millisecond
            local, _ = known_ids(conversation.messages)
            while message.id in local:
                message.id = LocalId(message.id.value + 1)
            conversation.messages = [*conversation.messages, message]
            conversation.recompute_last_message_time()
        return message

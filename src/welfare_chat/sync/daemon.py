"""Chat sync: initial load, manual sync, and the polling loop."""

import threading
import time
from collections.abc import Callable
from datetime import datetime

from welfare_chat.aggregator import AggregationResult, aggregate, flatten_conversations
from welfare_chat.client import WebhookClient
from welfare_chat.exceptions import FetchError, WelfareChatError
from welfare_chat.logging import get_logger, setup_logging
from welfare_chat.merge import ConversationStore, MergeResult
from welfare_chat.models import CanonicalMessage
from welfare_chat.normalizer import normalize_record
from welfare_chat.session import Session
from welfare_chat.timeutil import utc_now_iso

logger = get_logger("sync")

# Global flag for graceful shutdown
_shutdown_requested = False


def request_shutdown() -> None:
    """Request graceful shutdown of the sync daemon."""
    global _shutdown_requested
    _shutdown_requested = True


def is_shutdown_requested() -> bool:
    """Check if shutdown has been requested."""
    return _shutdown_requested


def reset_shutdown() -> None:
    """Reset shutdown flag (useful for testing)."""
    global _shutdown_requested
    _shutdown_requested = False


class ChatSync:
    """Fetches chat state from the webhooks and merges it into a store.

    initial load, manual sync, and poll ticks all call sync(). Fetches may
    overlap; their merges are serialized by the store.
    """

    def __init__(self, client: WebhookClient, store: ConversationStore, session: Session) -> None:
        self._client = client
        self._store = store
        self._session = session
        self.last_sync: str | None = None

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def session(self) -> Session:
        return self._session

    def sync_history(self) -> MergeResult:
        """Fetch the member's own history and merge it.

        Raises:
            NotLoggedInError: If the session has no user
            FetchError: If the fetch fails; the store is left untouched
        """
        user = self._session.require_user()
        records = self._client.fetch_chat_history(user.id)

        aliases = self._session.config.aliases
        fetched: list[CanonicalMessage] = []
        dropped = 0
        for record in records:
            message = normalize_record(record, aliases, user_id=user.id)
            if message is None:
                dropped += 1
                continue
            fetched.append(message)
        if dropped:
            logger.debug("Dropped history records without identity: count=%d", dropped)

        result = self._store.merge(user.id, fetched)
        self.last_sync = utc_now_iso()
        if result.changed:
            logger.info("History synced: user_id=%s new_messages=%d", user.id, len(result.added))
        return result

    def sync_conversations(self) -> AggregationResult:
        """Fetch every conversation of the organization and merge them.

        Raises:
            MissingOrgIdError: If neither the user nor the tenant has an org id
            FetchError: If the fetch fails; the store is left untouched
        """
        records = self._client.fetch_conversations(self._session.org_id)
        aggregation = aggregate(flatten_conversations(records), self._session.config.aliases)

        if aggregation.dropped:
            logger.debug("Dropped conversation records without user id: count=%d", aggregation.dropped)
        if aggregation.unparsable_timestamps:
            logger.warning("Records with unparsable timestamps: count=%d", aggregation.unparsable_timestamps)

        results = self._store.apply_aggregation(aggregation)
        self.last_sync = utc_now_iso()
        added = sum(len(r.added) for r in results.values())
        if added:
            logger.info("Conversations synced: conversations=%d new_messages=%d", len(results), added)
        return aggregation

    def sync(self) -> None:
        """Sync the view that matches the session's role."""
        if self._session.is_admin:
            self.sync_conversations()
        else:
            self.sync_history()

    def send(self, text: str, now: datetime | None = None) -> tuple[CanonicalMessage, CanonicalMessage]:
        """Send a member message and record it with the workflow's reply.

        The member's message is appended before the request is made. If the
        request fails, a fallback acknowledgement is recorded instead of the
        workflow's reply and the error is logged.

        Returns:
            Tuple of (sent message, reply message)

        Raises:
            NotLoggedInError: If the session has no user
        """
        user = self._session.require_user()
        sent = self._store.append_local(user.id, text, sender="user", source="app", now=now)

        try:
            reply_text = self._client.send_chat_message(
                org_id=self._session.org_id,
                user_id=user.id,
                user_name=user.full_name or user.first_name,
                phone=user.phone,
                message=text,
                timestamp=sent.timestamp,
            )
        except FetchError as e:
            logger.error("Chat send failed: user_id=%s error=%s", user.id, e)
            reply_text = (
                "Thanks for your message! For urgent matters, please use WhatsApp. "
                "We'll respond shortly."
            )

        reply = self._store.append_local(user.id, reply_text, sender="admin", source="auto")
        return sent, reply

    def reply(self, user_id: int | str, text: str) -> bool:
        """Send an admin reply, then refresh that conversation on success.

        Raises:
            NotLoggedInError: If the session has no user
            FetchError: If the reply or the refresh fails
        """
        admin = self._session.require_user()
        ok = self._client.send_chat_reply(
            org_id=self._session.org_id,
            user_id=user_id,
            admin_id=admin.id,
            admin_name=admin.full_name or admin.first_name,
            message=text,
            timestamp=utc_now_iso(),
        )
        if not ok:
            logger.warning("Chat reply not accepted: user_id=%s", user_id)
            return False

        records = self._client.fetch_conversation_messages(user_id)
        aliases = self._session.config.aliases
        fetched = [
            m for m in (normalize_record(r, aliases, user_id=user_id) for r in records) if m is not None
        ]
        self._store.merge(user_id, fetched)
        return True


class Poller:
    """Runs a tick function on a fixed interval in a background thread.

    start() and stop() bound the polling lifetime. Ticks run one at a time
    on the poller thread; a FetchError (or any other WelfareChatError) from
    a tick is logged and the next tick retries.
    """

    def __init__(self, tick: Callable[[], object], interval_seconds: float, name: str = "poller") -> None:
        self._tick = tick
        self._interval = interval_seconds
        self._name = name
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.ticks = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start polling. The first tick runs one interval after start."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        logger.debug("Poller started: name=%s interval=%.1fs", self._name, self._interval)

    def stop(self, timeout: float | None = None) -> None:
        """Stop polling and wait for an in-flight tick to finish."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.debug("Poller stopped: name=%s ticks=%d failures=%d", self._name, self.ticks, self.failures)

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            self.ticks += 1
            try:
                self._tick()
            except WelfareChatError as e:
                # Keep last-known state; retry next tick
                self.failures += 1
                logger.warning("Poll failed, will retry: name=%s error=%s", self._name, e)
            except Exception:
                self.failures += 1
                logger.exception("Unexpected error during poll: name=%s", self._name)

    def __enter__(self) -> "Poller":
        self.start()
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.stop()


def run_sync(
    session: Session,
    client: WebhookClient | None = None,
    store: ConversationStore | None = None,
    on_change: Callable[[ConversationStore], None] | None = None,
) -> ConversationStore:
    """Run the sync daemon until shutdown is requested.

    Loads chat state once eagerly (a failure here propagates), then polls
    on the configured interval until request_shutdown() is called.

    Args:
        session: Current session (config and logged-in user)
        client: Webhook client (created from config if omitted)
        store: Conversation store to fill (created if omitted)
        on_change: Called with the store after every successful sync

    Returns:
        The conversation store as of shutdown

    Raises:
        FetchError: If the initial load fails
    """
    reset_shutdown()

    config = session.config
    setup_logging("sync", log_dir=config.logging.log_dir, level=config.logging.level)

    owns_client = client is None
    if client is None:
        client = WebhookClient(config)
    if store is None:
        store = ConversationStore()

    chat_sync = ChatSync(client, store, session)

    def tick() -> None:
        chat_sync.sync()
        if on_change is not None:
            on_change(store)

    interval = config.polling.interval_seconds
    logger.info(
        "Starting sync daemon: org_id=%s admin=%s interval=%.0fs",
        session.org_id,
        session.is_admin,
        interval,
    )

    try:
        tick()
        with Poller(tick, interval, name="chat-sync"):
            # Sleep in small increments to allow graceful shutdown
            while not is_shutdown_requested():
                time.sleep(min(1.0, interval))
    finally:
        if owns_client:
            client.close()

    logger.info("Sync daemon stopped")
    return store

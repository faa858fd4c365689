"""Tests for the chat sync daemon module."""

import json
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest

from welfare_chat.client import WebhookClient
from welfare_chat.config import Config, LoggingConfig, PollingConfig, TenantConfig
from welfare_chat.exceptions import FetchError, MissingOrgIdError, NotLoggedInError, RequestTimeout
from welfare_chat.merge import ConversationStore
from welfare_chat.models import LocalId, ServerId
from welfare_chat.session import Session, SessionUser
from welfare_chat.sync.daemon import (
    ChatSync,
    Poller,
    is_shutdown_requested,
    request_shutdown,
    reset_shutdown,
    run_sync,
)

HISTORY = [
    {"id": 100, "message": "Hello", "created_at": "2024-01-01T10:00:00Z", "sender": "user"},
    {"id": 101, "message": "Hi Mary", "created_at": "2024-01-01T10:05:00Z", "sender": "admin",
     "source": "whatsapp"},
]


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Create a test configuration."""
    return Config(
        tenant=TenantConfig(org_id=3),
        polling=PollingConfig(interval_seconds=0.05),
        logging=LoggingConfig(log_dir=tmp_path / "logs"),
    )


@pytest.fixture
def member_session(test_config: Config) -> Session:
    return Session(test_config, SessionUser(id=12, full_name="Mary Wanjiku", phone="0711"))


@pytest.fixture
def admin_session(test_config: Config) -> Session:
    return Session(test_config, SessionUser(id=1, full_name="Pastor John", role="admin"))


@pytest.fixture
def client() -> MagicMock:
    return MagicMock()


class TestShutdownFlags:
    """Tests for shutdown flag management."""

    def test_initial_state_not_shutdown(self) -> None:
        reset_shutdown()
        assert is_shutdown_requested() is False

    def test_request_shutdown_sets_flag(self) -> None:
        reset_shutdown()
        request_shutdown()
        assert is_shutdown_requested() is True

    def test_reset_shutdown_clears_flag(self) -> None:
        request_shutdown()
        reset_shutdown()
        assert is_shutdown_requested() is False


class TestSyncHistory:
    """Tests for ChatSync.sync_history."""

    def test_merges_history(self, client: MagicMock, member_session: Session) -> None:
        client.fetch_chat_history.return_value = HISTORY
        chat_sync = ChatSync(client, ConversationStore(), member_session)

        result = chat_sync.sync_history()

        client.fetch_chat_history.assert_called_once_with(12)
        assert [m.id for m in result.added] == [ServerId(100), ServerId(101)]
        messages = chat_sync.store.messages(12)
        assert [m.sender for m in messages] == ["user", "admin"]
        assert messages[1].source == "whatsapp"
        assert chat_sync.store.get(12).last_message_time == "2024-01-01T10:05:00Z"
        assert chat_sync.last_sync is not None

    def test_records_without_owner_are_scoped_to_user(self, client: MagicMock, member_session: Session) -> None:
        """History records carry no user id; they belong to the session user."""
        client.fetch_chat_history.return_value = [{"id": 7, "message": "x"}]
        chat_sync = ChatSync(client, ConversationStore(), member_session)

        chat_sync.sync_history()

        assert chat_sync.store.messages(12)[0].user_id == 12
        assert chat_sync.store.get(7) is None

    def test_repeated_sync_is_idempotent(self, client: MagicMock, member_session: Session) -> None:
        client.fetch_chat_history.return_value = HISTORY
        chat_sync = ChatSync(client, ConversationStore(), member_session)

        chat_sync.sync_history()
        second = chat_sync.sync_history()

        assert second.changed is False
        assert len(chat_sync.store.messages(12)) == 2

    def test_fetch_failure_leaves_store_untouched(self, client: MagicMock, member_session: Session) -> None:
        client.fetch_chat_history.return_value = HISTORY
        chat_sync = ChatSync(client, ConversationStore(), member_session)
        chat_sync.sync_history()
        before = chat_sync.store.messages(12)

        client.fetch_chat_history.side_effect = RequestTimeout("https://hooks.example.org/chat-history")
        with pytest.raises(FetchError):
            chat_sync.sync_history()

        assert chat_sync.store.messages(12) == before

    def test_requires_login(self, client: MagicMock, test_config: Config) -> None:
        chat_sync = ChatSync(client, ConversationStore(), Session(test_config))
        with pytest.raises(NotLoggedInError):
            chat_sync.sync_history()
        client.fetch_chat_history.assert_not_called()


class TestSyncConversations:
    """Tests for ChatSync.sync_conversations."""

    def test_groups_flat_records(self, client: MagicMock, admin_session: Session) -> None:
        client.fetch_conversations.return_value = [
            {"id": 1, "user_id": 5, "user_name": "Ann", "message": "a", "created_at": "2024-01-01T00:00:00Z"},
            {"id": 2, "user_id": 6, "user_name": "Ben", "message": "b", "created_at": "2024-01-03T00:00:00Z"},
            {"id": 3, "user_id": 5, "message": "c", "created_at": "2024-01-02T00:00:00Z"},
            {"message": "orphan", "created_at": "2024-01-04T00:00:00Z"},
        ]
        chat_sync = ChatSync(client, ConversationStore(), admin_session)

        aggregation = chat_sync.sync_conversations()

        client.fetch_conversations.assert_called_once_with(3)
        assert len(aggregation) == 2
        snapshot = chat_sync.store.snapshot()
        assert [c.user_id for c in snapshot] == [6, 5]
        assert snapshot[1].message_count == 2
        assert aggregation.dropped == 1

    def test_flattens_pre_grouped_conversations(self, client: MagicMock, admin_session: Session) -> None:
        """Duplicate grouped entries for one user fold into one conversation."""
        client.fetch_conversations.return_value = [
            {"user_id": 5, "user_name": "Ann", "phone": "0722",
             "messages": [{"id": 1, "message": "a", "created_at": "2024-01-01T00:00:00Z"}]},
            {"user_id": 5, "user_name": "Ann",
             "messages": [{"id": 2, "message": "b", "created_at": "2024-01-02T00:00:00Z"}]},
        ]
        chat_sync = ChatSync(client, ConversationStore(), admin_session)

        chat_sync.sync_conversations()

        conversation = chat_sync.store.get(5)
        assert conversation.user_name == "Ann"
        assert conversation.phone == "0722"
        assert [m.id for m in conversation.messages] == [ServerId(1), ServerId(2)]

    def test_missing_org_id_leaves_store_untouched(self, client: MagicMock) -> None:
        session = Session(Config(), SessionUser(id=1, role="admin"))
        client.fetch_conversations.side_effect = MissingOrgIdError()
        chat_sync = ChatSync(client, ConversationStore(), session)

        with pytest.raises(MissingOrgIdError):
            chat_sync.sync_conversations()

        client.fetch_conversations.assert_called_once_with(None)
        assert len(chat_sync.store) == 0

    def test_logs_unparsable_timestamps(
        self, client: MagicMock, admin_session: Session, caplog: pytest.LogCaptureFixture
    ) -> None:
        client.fetch_conversations.return_value = [
            {"id": 1, "user_id": 5, "message": "a", "created_at": "yesterday"},
        ]
        ChatSync(client, ConversationStore(), admin_session).sync_conversations()
        assert "unparsable timestamps" in caplog.text


class TestSyncDispatch:
    """Tests for ChatSync.sync role dispatch."""

    def test_member_syncs_history(self, client: MagicMock, member_session: Session) -> None:
        client.fetch_chat_history.return_value = []
        ChatSync(client, ConversationStore(), member_session).sync()
        client.fetch_chat_history.assert_called_once()
        client.fetch_conversations.assert_not_called()

    def test_admin_syncs_conversations(self, client: MagicMock, admin_session: Session) -> None:
        client.fetch_conversations.return_value = []
        ChatSync(client, ConversationStore(), admin_session).sync()
        client.fetch_conversations.assert_called_once()
        client.fetch_chat_history.assert_not_called()


class TestSend:
    """Tests for ChatSync.send."""

    def test_records_message_and_reply(self, client: MagicMock, member_session: Session) -> None:
        client.send_chat_message.return_value = "We will call you"
        chat_sync = ChatSync(client, ConversationStore(), member_session)

        sent, reply = chat_sync.send("Need help")

        assert isinstance(sent.id, LocalId)
        assert sent.sender == "user"
        assert reply.text == "We will call you"
        assert reply.sender == "admin"
        assert reply.source == "auto"
        assert chat_sync.store.messages(12) == [sent, reply]

        kwargs = client.send_chat_message.call_args.kwargs
        assert kwargs["org_id"] == 3
        assert kwargs["user_name"] == "Mary Wanjiku"
        assert kwargs["timestamp"] == sent.timestamp

    def test_fallback_reply_on_failure(
        self, client: MagicMock, member_session: Session, caplog: pytest.LogCaptureFixture
    ) -> None:
        client.send_chat_message.side_effect = FetchError("down")
        chat_sync = ChatSync(client, ConversationStore(), member_session)

        sent, reply = chat_sync.send("Need help")

        assert "WhatsApp" in reply.text
        assert chat_sync.store.messages(12) == [sent, reply]
        assert "Chat send failed" in caplog.text

    def test_sent_message_survives_later_sync(self, client: MagicMock, member_session: Session) -> None:
        client.send_chat_message.return_value = "ok"
        chat_sync = ChatSync(client, ConversationStore(), member_session)
        sent, _ = chat_sync.send("Need help")

        client.fetch_chat_history.return_value = [{"id": 900, "message": "Need help"}]
        chat_sync.sync_history()

        ids = [m.id for m in chat_sync.store.messages(12)]
        assert sent.id in ids
        assert ServerId(900) in ids


class TestReply:
    """Tests for ChatSync.reply."""

    def test_refreshes_conversation_on_success(self, client: MagicMock, admin_session: Session) -> None:
        client.send_chat_reply.return_value = True
        client.fetch_conversation_messages.return_value = [
            {"id": 55, "message": "Noted", "sender": "admin", "created_at": "2024-01-01T00:00:00Z"},
        ]
        chat_sync = ChatSync(client, ConversationStore(), admin_session)

        assert chat_sync.reply(5, "Noted") is True

        client.fetch_conversation_messages.assert_called_once_with(5)
        assert [m.id for m in chat_sync.store.messages(5)] == [ServerId(55)]
        assert client.send_chat_reply.call_args.kwargs["admin_name"] == "Pastor John"

    def test_request_bodies_carry_int_user_id(self, admin_session: Session) -> None:
        """A user id typed on the command line reaches both webhooks as an int."""
        bodies: list[tuple[str, dict]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append((request.url.path, json.loads(request.content)))
            if request.url.path.endswith("/chat-reply"):
                return httpx.Response(200, json=[{"success": True}])
            return httpx.Response(200, json={"messages": [{"id": 9, "message": "hi", "sender": "admin"}]})

        client = WebhookClient(admin_session.config, http_client=httpx.Client(transport=httpx.MockTransport(handler)))
        chat_sync = ChatSync(client, ConversationStore(), admin_session)

        assert chat_sync.reply("7", "hi") is True

        assert [path.rsplit("/", 1)[-1] for path, _ in bodies] == ["chat-reply", "chat-messages"]
        assert all(body["user_id"] == 7 for _, body in bodies)
        assert all(type(body["user_id"]) is int for _, body in bodies)
        assert [m.id for m in chat_sync.store.messages(7)] == [ServerId(9)]

    def test_rejected_reply_skips_refresh(self, client: MagicMock, admin_session: Session) -> None:
        client.send_chat_reply.return_value = False
        chat_sync = ChatSync(client, ConversationStore(), admin_session)

        assert chat_sync.reply(5, "Noted") is False
        client.fetch_conversation_messages.assert_not_called()


class TestPoller:
    """Tests for Poller."""

    def test_ticks_until_stopped(self) -> None:
        ticked = threading.Event()
        calls = []

        def tick() -> None:
            calls.append(1)
            if len(calls) >= 3:
                ticked.set()

        poller = Poller(tick, interval_seconds=0.01)
        poller.start()
        assert poller.running
        assert ticked.wait(5)
        poller.stop(timeout=5)

        assert not poller.running
        count = len(calls)
        assert count >= 3
        assert poller.ticks == count

    def test_no_ticks_after_stop(self) -> None:
        calls = []
        with Poller(lambda: calls.append(1), interval_seconds=10):
            pass
        assert calls == []

    def test_fetch_error_retries_next_tick(self, caplog: pytest.LogCaptureFixture) -> None:
        """A failed tick is logged and the following tick still runs."""
        recovered = threading.Event()
        calls = []

        def tick() -> None:
            calls.append(1)
            if len(calls) == 1:
                raise FetchError("timeout")
            recovered.set()

        with Poller(tick, interval_seconds=0.01) as poller:
            assert recovered.wait(5)

        assert poller.failures == 1
        assert "Poll failed, will retry" in caplog.text

    def test_configuration_error_retries_next_tick(self, caplog: pytest.LogCaptureFixture) -> None:
        recovered = threading.Event()
        calls = []

        def tick() -> None:
            calls.append(1)
            if len(calls) == 1:
                raise MissingOrgIdError()
            recovered.set()

        with Poller(tick, interval_seconds=0.01) as poller:
            assert recovered.wait(5)

        assert poller.failures == 1
        assert "Poll failed, will retry" in caplog.text

    def test_unexpected_error_does_not_stop_polling(self) -> None:
        recovered = threading.Event()
        calls = []

        def tick() -> None:
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            recovered.set()

        with Poller(tick, interval_seconds=0.01):
            assert recovered.wait(5)

    def test_start_is_idempotent(self) -> None:
        poller = Poller(lambda: None, interval_seconds=10)
        poller.start()
        thread = poller._thread
        poller.start()
        assert poller._thread is thread
        poller.stop(timeout=5)


class TestRunSync:
    """Tests for run_sync main loop."""

    def test_loads_then_runs_until_shutdown(
        self, client: MagicMock, member_session: Session, caplog: pytest.LogCaptureFixture
    ) -> None:
        client.fetch_chat_history.return_value = HISTORY
        changes = []

        def on_change(store: ConversationStore) -> None:
            changes.append(len(store.messages(12)))
            request_shutdown()

        store = run_sync(member_session, client=client, on_change=on_change)

        assert changes[0] == 2
        assert len(store.messages(12)) == 2
        assert "Starting sync daemon" in caplog.text
        assert "Sync daemon stopped" in caplog.text
        client.close.assert_not_called()

    def test_initial_load_failure_propagates(self, client: MagicMock, member_session: Session) -> None:
        client.fetch_chat_history.side_effect = FetchError("down")
        with patch("welfare_chat.sync.daemon.Poller") as mock_poller:
            with pytest.raises(FetchError):
                run_sync(member_session, client=client)
        mock_poller.assert_not_called()

    def test_closes_owned_client(self, member_session: Session) -> None:
        with patch("welfare_chat.sync.daemon.WebhookClient") as mock_client_cls:
            mock_client = mock_client_cls.return_value
            mock_client.fetch_chat_history.return_value = []
            run_sync(member_session, on_change=lambda store: request_shutdown())
        mock_client.close.assert_called_once()


class TestMainModule:
    """Tests for __main__ module."""

    def test_main_loads_session_and_runs(self, member_session: Session) -> None:
        mock_store = MagicMock()
        mock_store.__enter__.return_value.load_session.return_value = member_session

        with patch(
            "welfare_chat.sync.__main__.load_config",
            return_value=member_session.config,
        ), patch(
            "welfare_chat.sync.__main__.SessionStore",
            return_value=mock_store,
        ), patch(
            "welfare_chat.sync.__main__.run_sync"
        ) as mock_run, patch(
            "welfare_chat.sync.__main__.signal.signal"
        ), patch(
            "welfare_chat.sync.__main__.sys.exit"
        ) as mock_exit:
            from welfare_chat.sync.__main__ import main

            main()

        mock_run.assert_called_once_with(member_session)
        mock_exit.assert_called_once_with(0)

    def test_main_exits_nonzero_on_failure(self, member_session: Session) -> None:
        mock_store = MagicMock()
        mock_store.__enter__.return_value.load_session.return_value = member_session

        with patch(
            "welfare_chat.sync.__main__.load_config",
            return_value=member_session.config,
        ), patch(
            "welfare_chat.sync.__main__.SessionStore",
            return_value=mock_store,
        ), patch(
            "welfare_chat.sync.__main__.run_sync",
            side_effect=FetchError("down"),
        ), patch(
            "welfare_chat.sync.__main__.signal.signal"
        ), patch(
            "welfare_chat.sync.__main__.sys.exit"
        ) as mock_exit:
            from welfare_chat.sync.__main__ import main

            main()

        mock_exit.assert_any_call(1)

    def test_signal_handler_requests_shutdown(self) -> None:
        import signal as sig

        from welfare_chat.sync.__main__ import signal_handler

        reset_shutdown()
        signal_handler(sig.SIGTERM, None)
        assert is_shutdown_requested() is True
        reset_shutdown()

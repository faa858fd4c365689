"""CLI entry point for the chat client.

Allows logging in, reading and sending chat messages, and watching
conversations from the command line:
    python -m welfare_chat.cli
"""

import signal
import sys
from pathlib import Path
from types import FrameType

import click

from welfare_chat.client import WebhookClient
from welfare_chat.config import Config, load_config
from welfare_chat.exceptions import FetchError, WelfareChatError
from welfare_chat.logging import setup_logging
from welfare_chat.merge import ConversationStore
from welfare_chat.models import CanonicalMessage, Conversation
from welfare_chat.session import SessionStore, SessionUser
from welfare_chat.sync.daemon import ChatSync, request_shutdown, run_sync
from welfare_chat.timeutil import parse_timestamp

SOURCE_LABELS = {"whatsapp": "WhatsApp", "app": "App"}


def format_timestamp(ts: str | None) -> str:
    """Format an ISO timestamp for display."""
    dt = parse_timestamp(ts)
    if dt is None:
        return "-"
    return dt.astimezone().strftime("%Y-%m-%d %H:%M")


def print_message(message: CanonicalMessage) -> None:
    """Print one chat message."""
    label = SOURCE_LABELS.get(message.source or "", "")
    origin = f" via {label}" if label and message.sender != "user" else ""
    color = "32" if message.sender == "user" else "35"
    click.echo(
        f"\033[36m[{format_timestamp(message.timestamp)}]\033[0m "
        f"\033[{color}m{message.sender}\033[0m{origin}: {message.text}"
    )


def print_conversation(conversation: Conversation, verbose: bool = False) -> None:
    """Print a conversation summary."""
    click.echo(
        f"\033[36m[{format_timestamp(conversation.last_message_time)}]\033[0m "
        f"\033[1m{conversation.user_name}\033[0m ({conversation.user_id})"
    )
    click.echo(f"Phone: {conversation.phone or '-'} | Messages: {conversation.message_count}")
    click.echo(f"Last: {conversation.preview()}")
    if verbose:
        for message in conversation.messages:
            print_message(message)
    click.echo("-" * 40)


class Context:
    """Composition root shared by the commands."""

    def __init__(self, config: Config) -> None:
        self.config = config

    def session_store(self) -> SessionStore:
        return SessionStore(self.config.session.db_path)

    def chat_sync(self) -> tuple[ChatSync, WebhookClient]:
        with self.session_store() as store:
            session = store.load_session(self.config)
        client = WebhookClient(self.config)
        return ChatSync(client, ConversationStore(), session), client


def fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


@click.group()
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Path to config.yaml")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Welfare association chat client."""
    config = load_config(config_path)
    setup_logging("cli", log_dir=config.logging.log_dir, level=config.logging.level, console=False)
    ctx.obj = Context(config)


@cli.command()
@click.argument("phone")
@click.argument("member_id")
@click.pass_obj
def login(obj: Context, phone: str, member_id: str) -> None:
    """Log in with phone number and member id."""
    try:
        with WebhookClient(obj.config) as client:
            data = client.login(phone, member_id)
        user = SessionUser.from_login_response(data)
    except (FetchError, ValueError) as e:
        fail(f"Login failed: {e}")
        return

    with obj.session_store() as store:
        store.save_user(user, data.get("token") or "api_token")
    click.echo(f"Logged in as {user.display_name} ({user.role})")


@cli.command()
@click.pass_obj
def logout(obj: Context) -> None:
    """Forget the stored session."""
    with obj.session_store() as store:
        store.clear()
    click.echo("Logged out")


@cli.command()
@click.pass_obj
def whoami(obj: Context) -> None:
    """Show the logged-in user."""
    with obj.session_store() as store:
        user = store.load_user()
    if user is None:
        fail("Not logged in")
        return
    click.echo(f"{user.display_name} (id={user.id}, role={user.role}, org={user.org_id})")


@cli.command()
@click.pass_obj
def history(obj: Context) -> None:
    """Show your chat history, including WhatsApp messages."""
    chat_sync, client = obj.chat_sync()
    try:
        chat_sync.sync_history()
    except WelfareChatError as e:
        fail(f"Unable to load messages: {e.message}")
        return
    finally:
        client.close()

    user = chat_sync.session.require_user()
    messages = chat_sync.store.messages(user.id)
    if not messages:
        click.echo("No messages yet")
    for message in messages:
        print_message(message)


@cli.command()
@click.option("--limit", "-n", default=20, help="Number of conversations")
@click.option("--verbose", "-v", is_flag=True, help="Show every message")
@click.pass_obj
def conversations(obj: Context, limit: int, verbose: bool) -> None:
    """List all member conversations (admin)."""
    chat_sync, client = obj.chat_sync()
    if not chat_sync.session.is_admin:
        client.close()
        fail("Admin role required")
        return
    try:
        aggregation = chat_sync.sync_conversations()
    except WelfareChatError as e:
        fail(f"Unable to load conversations: {e.message}")
        return
    finally:
        client.close()

    snapshot = chat_sync.store.snapshot()
    click.echo(f"Found {len(snapshot)} conversations (showing {min(limit, len(snapshot))}):\n")
    for conversation in snapshot[:limit]:
        print_conversation(conversation, verbose)
    if aggregation.dropped:
        click.echo(f"Skipped {aggregation.dropped} records without a user id", err=True)


@cli.command()
@click.argument("message")
@click.pass_obj
def send(obj: Context, message: str) -> None:
    """Send a message to the support team."""
    chat_sync, client = obj.chat_sync()
    try:
        sent, reply = chat_sync.send(message)
    except WelfareChatError as e:
        fail(e.message)
        return
    finally:
        client.close()
    print_message(sent)
    print_message(reply)


@cli.command()
@click.argument("user_id")
@click.argument("message")
@click.pass_obj
def reply(obj: Context, user_id: str, message: str) -> None:
    """Reply to a member's conversation (admin)."""
    chat_sync, client = obj.chat_sync()
    try:
        ok = chat_sync.reply(user_id, message)
    except WelfareChatError as e:
        fail(f"Error sending reply: {e.message}")
        return
    finally:
        client.close()

    if not ok:
        fail("Reply was not accepted")
        return
    for item in chat_sync.store.messages(user_id):
        print_message(item)


def _signal_handler(signum: int, frame: FrameType | None) -> None:
    request_shutdown()


@cli.command()
@click.pass_obj
def watch(obj: Context) -> None:
    """Poll for new messages until interrupted."""
    with obj.session_store() as store:
        session = store.load_session(obj.config)
    if session.user is None:
        fail("Not logged in")
        return

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    printed: set[tuple[str, object]] = set()

    def on_change(conversation_store: ConversationStore) -> None:
        for conversation in conversation_store.snapshot():
            for message in conversation.messages:
                if (conversation.key, message.id) in printed:
                    continue
                printed.add((conversation.key, message.id))
                print_message(message)

    click.echo(f"Watching for messages every {obj.config.polling.interval_seconds:.0f}s (Ctrl+C to stop)")
    try:
        run_sync(session, on_change=on_change)
    except WelfareChatError as e:
        fail(e.message)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()

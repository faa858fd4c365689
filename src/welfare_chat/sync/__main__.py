"""CLI entry point for the sync daemon.

Allows running the sync daemon as a module:
    python -m welfare_chat.sync
"""

import signal
import sys
from types import FrameType

from welfare_chat.config import load_config
from welfare_chat.exceptions import WelfareChatError
from welfare_chat.logging import get_logger
from welfare_chat.session import SessionStore
from welfare_chat.sync.daemon import request_shutdown, run_sync

logger = get_logger("sync")


def signal_handler(signum: int, frame: FrameType | None) -> None:
    """Handle shutdown signals gracefully."""
    sig_name = signal.Signals(signum).name
    logger.info("Received signal %s, shutting down", sig_name)
    request_shutdown()


def main() -> None:
    """Main entry point for the sync daemon."""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    config = load_config()
    with SessionStore(config.session.db_path) as store:
        session = store.load_session(config)

    try:
        run_sync(session)
    except WelfareChatError as e:
        logger.error("Sync failed: %s", e.message)
        sys.exit(1)
    except KeyboardInterrupt:
        # Handle case where signal handler didn't catch it
        logger.info("Interrupted, shutting down")
        request_shutdown()

    sys.exit(0)


if __name__ == "__main__":
    main()

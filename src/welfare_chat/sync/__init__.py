"""Chat sync: merges webhook chat state into a local conversation store."""

from .daemon import ChatSync, Poller, request_shutdown, run_sync

__all__ = ["ChatSync", "Poller", "request_shutdown", "run_sync"]

"""Exceptions raised at the webhook boundary.

Only I/O failures propagate to callers. Record-level problems (missing
identity, bad timestamps) are absorbed by the normalizer and aggregator
and reported as counts instead.
"""


class WelfareChatError(Exception):
    """Base class for welfare-chat errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotLoggedInError(WelfareChatError):
    """An operation needs a session user but none is stored."""

    def __init__(self, message: str = "User not logged in") -> None:
        super().__init__(message)


class MissingOrgIdError(WelfareChatError):
    """An organization-wide request has no org id from the user or the tenant."""

    def __init__(self, message: str = "No organization id configured (set tenant.org_id)") -> None:
        super().__init__(message)


class FetchError(WelfareChatError):
    """A webhook request failed; no partial result is available."""

    def __init__(self, message: str, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class RequestTimeout(FetchError):
    """The webhook did not answer within the configured timeout."""

    def __init__(self, url: str | None = None) -> None:
        super().__init__("Request timed out. Please try again.", url)


class NetworkError(FetchError):
    """The webhook could not be reached."""

    def __init__(self, detail: str = "", url: str | None = None) -> None:
        message = "Network error. Please check your connection."
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message, url)


class HTTPStatusError(FetchError):
    """The webhook answered with a non-2xx status."""

    def __init__(self, status_code: int, server_message: str | None = None, url: str | None = None) -> None:
        super().__init__(server_message or f"HTTP Error: {status_code}", url)
        self.status_code = status_code
        self.server_message = server_message


class EmptyResponse(FetchError):
    """The webhook answered with an empty body."""

    def __init__(self, url: str | None = None) -> None:
        super().__init__("Empty response from server", url)


class InvalidJSONResponse(FetchError):
    """The webhook body could not be decoded as JSON."""

    def __init__(self, detail: str, url: str | None = None) -> None:
        super().__init__(f"Invalid JSON response: {detail}", url)


__all__ = [
    "EmptyResponse",
    "FetchError",
    "HTTPStatusError",
    "InvalidJSONResponse",
    "MissingOrgIdError",
    "NetworkError",
    "NotLoggedInError",
    "RequestTimeout",
    "WelfareChatError",
]

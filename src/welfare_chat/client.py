"""HTTP client for the welfare webhook workflows.

Every operation is a JSON POST to an n8n webhook. Responses are loosely
shaped (bare arrays, or objects wrapping an array under one of several
keys), so list-returning operations go through extract_records().
"""

import json
from typing import Any

import httpx

from welfare_chat.config import Config
from welfare_chat.exceptions import (
    EmptyResponse,
    FetchError,
    HTTPStatusError,
    InvalidJSONResponse,
    MissingOrgIdError,
    NetworkError,
    RequestTimeout,
)
from welfare_chat.logging import get_logger

logger = get_logger("client")

# Wrapper keys to look for, in priority order, after a bare array
CONVERSATION_KEYS = ("conversations", "messages", "data")
MESSAGE_KEYS = ("messages", "data")

DEFAULT_AUTO_REPLY = "Thank you for your message. Our church team will respond shortly."


def extract_records(response: Any, keys: tuple[str, ...] = CONVERSATION_KEYS) -> list[Any]:
    """Pull the record list out of a webhook response.

    Accepts a bare array, or an object holding an array under the first
    matching key. Any other shape yields an empty list.

    Args:
        response: Decoded JSON response
        keys: Wrapper keys to try, highest priority first

    Returns:
        List of raw records (possibly empty)
    """
    if isinstance(response, list):
        return response
    if isinstance(response, dict):
        for key in keys:
            value = response.get(key)
            if isinstance(value, list):
                return value
    logger.warning(
        "Unrecognized response shape: type=%s keys=%s",
        type(response).__name__,
        sorted(response) if isinstance(response, dict) else None,
    )
    return []


class WebhookClient:
    """Calls the tenant's webhook workflows.

    Failures of any kind (timeout, connection, non-2xx, empty or non-JSON
    body) raise a FetchError subclass; nothing partial is returned.
    """

    def __init__(self, config: Config, http_client: httpx.Client | None = None) -> None:
        """Initialize the client.

        Args:
            config: Application configuration (webhooks and tenant sections)
            http_client: Optional preconfigured httpx client (for testing)
        """
        self._config = config
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=config.webhooks.timeout_seconds)

    @property
    def config(self) -> Config:
        return self._config

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> "WebhookClient":
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        org_id = self._config.tenant.org_id
        if org_id is not None:
            headers["x-org-id"] = str(org_id)
        return headers

    def request(self, endpoint: str, payload: dict[str, Any]) -> Any:
        """POST a JSON payload to a named webhook and decode the response.

        Args:
            endpoint: Logical endpoint name from the webhooks config
            payload: JSON body

        Returns:
            Decoded JSON response

        Raises:
            FetchError: On timeout, network failure, non-2xx status, or an
                        empty or invalid body
        """
        url = self._config.webhooks.url_for(endpoint)
        logger.debug("POST webhook: endpoint=%s url=%s", endpoint, url)

        try:
            response = self._http.post(
                url,
                json=payload,
                headers=self._headers(),
                timeout=self._config.webhooks.timeout_seconds,
            )
        except httpx.TimeoutException:
            logger.warning("Webhook timed out: endpoint=%s timeout=%.0fs", endpoint, self._config.webhooks.timeout_seconds)
            raise RequestTimeout(url) from None
        except httpx.HTTPError as e:
            logger.warning("Webhook unreachable: endpoint=%s error=%s", endpoint, e)
            raise NetworkError(str(e), url) from e

        if not response.is_success:
            server_message = None
            try:
                error_data = response.json()
                if isinstance(error_data, dict):
                    server_message = error_data.get("message")
            except ValueError:
                pass
            logger.warning("Webhook error status: endpoint=%s status=%d", endpoint, response.status_code)
            raise HTTPStatusError(response.status_code, server_message, url)

        text = response.text
        if not text or not text.strip():
            raise EmptyResponse(url)

        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise InvalidJSONResponse(str(e), url) from e

    def login(self, phone: str, member_id: str) -> dict[str, Any]:
        """Authenticate a member and return the user record.

        Raises:
            FetchError: If the request fails or the response has no user id
        """
        response = self.request("login", {"phone": phone, "identifier": member_id})
        if isinstance(response, list) and response:
            response = response[0]
        if not isinstance(response, dict) or not response.get("id"):
            raise FetchError("Invalid response from server", self._config.webhooks.url_for("login"))
        return response

    def fetch_chat_history(self, user_id: int | str) -> list[Any]:
        """Fetch one member's chat history (app and WhatsApp messages)."""
        response = self.request("chat_history", {"user_id": _as_int(user_id)})
        return extract_records(response, MESSAGE_KEYS)

    def fetch_conversations(self, org_id: int | None, admin: bool = True) -> list[Any]:
        """Fetch all conversations of an organization for the admin view.

        Raises:
            MissingOrgIdError: If org_id is None; nothing is sent
            FetchError: If the request fails
        """
        if org_id is None:
            logger.warning("Refusing to fetch conversations without an org id")
            raise MissingOrgIdError()
        endpoint = "admin_chat_conversations" if admin else "chat_conversations"
        response = self.request(endpoint, {"org_id": org_id})
        return extract_records(response, CONVERSATION_KEYS)

    def fetch_conversation_messages(self, user_id: int | str) -> list[Any]:
        """Fetch the messages of one conversation for the admin view."""
        response = self.request("chat_messages", {"user_id": _as_int(user_id)})
        return extract_records(response, MESSAGE_KEYS)

    def send_chat_message(
        self,
        org_id: int | None,
        user_id: int | str,
        user_name: str | None,
        phone: str | None,
        message: str,
        timestamp: str,
    ) -> str:
        """Send a member's message and return the workflow's auto reply."""
        response = self.request(
            "chat",
            {
                "org_id": org_id,
                "user_id": _as_int(user_id),
                "user_name": user_name,
                "phone": phone,
                "message": message,
                "timestamp": timestamp,
            },
        )
        if isinstance(response, dict):
            if response.get("reply"):
                return str(response["reply"])
            data = response.get("data")
            if isinstance(data, dict) and data.get("reply"):
                return str(data["reply"])
        elif isinstance(response, str) and response:
            return response
        return DEFAULT_AUTO_REPLY

    def send_chat_reply(
        self,
        org_id: int | None,
        user_id: int | str,
        admin_id: int | str | None,
        admin_name: str | None,
        message: str,
        timestamp: str,
    ) -> bool:
        """Send an admin reply; True if the workflow reports success."""
        response = self.request(
            "chat_reply",
            {
                "org_id": org_id,
                "user_id": _as_int(user_id),
                "admin_id": admin_id,
                "admin_name": admin_name,
                "message": message,
                "timestamp": timestamp,
            },
        )
        if isinstance(response, list):
            first = response[0] if response else None
            return bool(isinstance(first, dict) and first.get("success"))
        if isinstance(response, dict):
            return bool(response.get("success"))
        return False


def _as_int(value: int | str) -> int | str:
    try:
        return int(value)
    except (TypeError, ValueError):
        return value

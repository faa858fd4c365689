"""Session user model and its SQLite key-value persistence."""

import json
import sqlite3
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Self

from welfare_chat.config import Config
from welfare_chat.exceptions import NotLoggedInError
from welfare_chat.logging import get_logger

logger = get_logger("session")

ADMIN_ROLES = frozenset({"admin", "treasurer", "secretary", "shop_admin"})

CURRENT_USER_KEY = "current_user"
USER_ID_KEY = "user_id"
AUTH_TOKEN_KEY = "auth_token"


@dataclass(frozen=True)
class SessionUser:
    """The logged-in member as returned by the login workflow."""

    id: int | str
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    full_name: str | None = None
    email: str | None = None
    phone: str | None = None
    role: str = "member"
    org_id: int | None = None
    member_id: str | None = None

    @property
    def display_name(self) -> str:
        return self.full_name or self.first_name or self.username or str(self.id)

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @classmethod
    def from_login_response(cls, data: dict[str, Any]) -> "SessionUser":
        """Build a user from the login workflow's response record.

        When first or last name is missing, both are taken from full_name.

        Raises:
            ValueError: If the record has no id
        """
        if not data.get("id"):
            raise ValueError("Invalid response from server")

        first_name = data.get("first_name")
        last_name = data.get("last_name")
        full_name = data.get("full_name")
        if (not first_name or not last_name) and full_name:
            parts = str(full_name).split(" ")
            first_name = parts[0] or ""
            last_name = " ".join(parts[1:])

        org_id = data.get("org_id")
        try:
            org_id = int(org_id) if org_id is not None else None
        except (TypeError, ValueError):
            org_id = None

        return cls(
            id=data["id"],
            username=data.get("username"),
            first_name=first_name,
            last_name=last_name,
            full_name=full_name,
            email=data.get("email"),
            phone=data.get("phone"),
            role=data.get("role") or "member",
            org_id=org_id,
            member_id=data.get("member_id"),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionUser":
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Session:
    """Configuration plus the current user, passed explicitly to services.

    Built by the command line or daemon at startup and replaced, never
    mutated, on login and logout.
    """

    config: Config
    user: SessionUser | None = None
    token: str | None = field(default=None, repr=False)

    @property
    def org_id(self) -> int | None:
        if self.user is not None and self.user.org_id is not None:
            return self.user.org_id
        return self.config.tenant.org_id

    @property
    def is_admin(self) -> bool:
        return self.user is not None and self.user.is_admin

    def require_user(self) -> SessionUser:
        if self.user is None:
            raise NotLoggedInError()
        return self.user

    def with_user(self, user: SessionUser | None, token: str | None = None) -> "Session":
        return Session(config=self.config, user=user, token=token)


class SessionStore:
    """Key-value store for session data in a SQLite database."""

    def __init__(self, db_path: Path) -> None:
        """Initialize the store with database path.

        Args:
            db_path: Path to SQLite database file. Parent directories
                     will be created if they don't exist.
        """
        self._db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self.ensure_schema()

    def ensure_schema(self) -> None:
        """Create the kv table if it doesn't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        self._conn.commit()

    def get(self, key: str) -> str | None:
        row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return row["value"]

    def set(self, key: str, value: str) -> None:
        self._conn.execute(
            """
            INSERT INTO kv (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )
        self._conn.commit()

    def delete(self, key: str) -> None:
        self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        self._conn.commit()

    def save_user(self, user: SessionUser, token: str | None = None) -> None:
        """Persist the logged-in user (and token, if any)."""
        self.set(CURRENT_USER_KEY, json.dumps(user.to_dict()))
        self.set(USER_ID_KEY, str(user.id))
        if token:
            self.set(AUTH_TOKEN_KEY, token)

    def load_user(self) -> SessionUser | None:
        """Load the stored user, or None if absent or unreadable."""
        raw = self.get(CURRENT_USER_KEY)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return SessionUser.from_dict(data)
        except (json.JSONDecodeError, TypeError, AttributeError):
            logger.exception("Error parsing stored user")
            return None

    def load_session(self, config: Config) -> Session:
        return Session(config=config, user=self.load_user(), token=self.get(AUTH_TOKEN_KEY))

    def clear(self) -> None:
        """Remove all auth data (logout)."""
        for key in (CURRENT_USER_KEY, AUTH_TOKEN_KEY, USER_ID_KEY):
            self.delete(key)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> Self:
        """Enter context manager."""
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        """Exit context manager, closing database connection."""
        self.close()

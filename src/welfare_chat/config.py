"""Configuration loading and management."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from welfare_chat.logging import get_logger
from welfare_chat.normalizer import DEFAULT_ALIASES, AliasTable

logger = get_logger("config")

DEFAULT_BASE_URL = "https://n8n.tenear.com/webhook/welfare"

DEFAULT_ENDPOINTS: dict[str, str] = {
    "login": "login",
    "chat": "chat",
    "chat_history": "chat-history",
    "chat_conversations": "chat-conversations",
    "admin_chat_conversations": "admin-chat-conversations",
    "chat_messages": "chat-messages",
    "chat_reply": "chat-reply",
}


@dataclass(frozen=True)
class TenantConfig:
    org_id: int | None = None
    name: str = "St. Barnabas Church"
    whatsapp_number: str = "+254700000000"


@dataclass(frozen=True)
class WebhookConfig:
    base_url: str = DEFAULT_BASE_URL
    timeout_seconds: float = 30.0
    endpoints: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ENDPOINTS))

    def url_for(self, name: str) -> str:
        """Resolve a logical endpoint name to an absolute webhook URL.

        Endpoint values may be absolute URLs or paths relative to base_url.

        Raises:
            KeyError: If the endpoint name is not configured
        """
        path = self.endpoints[name]
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"


@dataclass(frozen=True)
class PollingConfig:
    interval_seconds: float = 10.0


@dataclass(frozen=True)
class SessionConfig:
    db_path: Path = field(default_factory=lambda: Path.home() / "welfare-chat" / "state" / "session.db")


@dataclass(frozen=True)
class LoggingConfig:
    log_dir: Path = field(default_factory=lambda: Path.home() / "welfare-chat" / "logs")
    level: str = "INFO"


@dataclass(frozen=True)
class Config:
    tenant: TenantConfig = field(default_factory=TenantConfig)
    webhooks: WebhookConfig = field(default_factory=WebhookConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    aliases: AliasTable = DEFAULT_ALIASES


def expand_env_var(value: str) -> str:
    """Expand environment variables in string (e.g. ${VAR})."""
    if value.startswith("${") and value.endswith("}"):
        env_var = value[2:-1]
        return os.environ.get(env_var, value)
    return value


def expand_path(path_str: str) -> Path:
    """Expand ~ and environment variables in path."""
    return Path(os.path.expandvars(os.path.expanduser(path_str)))


def parse_org_id(value: object) -> int | None:
    """Parse a tenant org id, returning None when it is missing or not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(expand_env_var(str(value)).strip())
    except ValueError:
        return None


def parse_aliases(data: dict | None) -> AliasTable:
    """Build an alias table from per-field overrides.

    Each key names a canonical field (user_id, user_name, phone, timestamp,
    text, sender, source, message_id) and maps to the ordered list of raw
    keys to try for it. A single key may be given as a plain string. Fields
    not mentioned keep their defaults; unknown field names are skipped with
    a warning.
    """
    if not data:
        return DEFAULT_ALIASES

    overrides: dict[str, tuple[str, ...]] = {}
    for name, keys in data.items():
        if name not in AliasTable.__dataclass_fields__:
            logger.warning("Ignoring unknown alias field: %s", name)
            continue
        if not keys:
            continue
        if not isinstance(keys, (list, tuple)):
            keys = [keys]
        overrides[name] = tuple(str(key) for key in keys)

    if not overrides:
        return DEFAULT_ALIASES
    return DEFAULT_ALIASES.with_overrides(**overrides)


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from YAML file."""
    if config_path is None:
        # Look for config in standard locations
        search_paths = [
            Path.cwd() / "config.yaml",
            Path.home() / ".config" / "welfare-chat" / "config.yaml",
            Path("/etc/welfare-chat/config.yaml"),
        ]
        for path in search_paths:
            if path.exists():
                config_path = path
                break

    if config_path is None or not config_path.exists():
        return Config()

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    tenant_data = data.get("tenant", {})
    tenant = TenantConfig(
        org_id=parse_org_id(tenant_data.get("org_id")),
        name=tenant_data.get("name", TenantConfig.name),
        whatsapp_number=expand_env_var(
            str(tenant_data.get("whatsapp_number", TenantConfig.whatsapp_number))
        ),
    )

    webhook_data = data.get("webhooks", {})
    endpoints = dict(DEFAULT_ENDPOINTS)
    endpoints.update(webhook_data.get("endpoints", {}) or {})
    webhooks = WebhookConfig(
        base_url=expand_env_var(webhook_data.get("base_url", DEFAULT_BASE_URL)),
        timeout_seconds=float(webhook_data.get("timeout_seconds", 30)),
        endpoints=endpoints,
    )

    polling_data = data.get("polling", {})
    polling = PollingConfig(
        interval_seconds=float(polling_data.get("interval_seconds", 10)),
    )

    session_data = data.get("session", {})
    session = SessionConfig(
        db_path=expand_path(session_data.get("db_path", "~/welfare-chat/state/session.db")),
    )

    logging_data = data.get("logging", {})
    logging_config = LoggingConfig(
        log_dir=expand_path(logging_data.get("log_dir", "~/welfare-chat/logs")),
        level=str(logging_data.get("level", "INFO")).upper(),
    )

    return Config(
        tenant=tenant,
        webhooks=webhooks,
        polling=polling,
        session=session,
        logging=logging_config,
        aliases=parse_aliases(data.get("aliases")),
    )

"""Timestamp parsing and comparison helpers."""

from datetime import datetime, timezone

# Epoch values at or above this are taken to be milliseconds
EPOCH_MILLIS_THRESHOLD = 1_000_000_000_000


def utc_now_iso(now: datetime | None = None) -> str:
    """Render a datetime as an ISO 8601 UTC string with millisecond precision.

    The format matches what the webhook workflows emit, e.g.
    "2024-01-01T10:00:00.000Z".
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def epoch_to_iso(value: int | float) -> str:
    """Convert an epoch number (seconds or milliseconds) to an ISO 8601 string."""
    seconds = value / 1000 if abs(value) >= EPOCH_MILLIS_THRESHOLD else value
    return utc_now_iso(datetime.fromtimestamp(seconds, tz=timezone.utc))


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO 8601 timestamp into an aware datetime.

    Accepts a trailing "Z" and a space instead of "T". Naive values are
    taken to be UTC so that they compare against aware ones.

    Args:
        value: Timestamp string, datetime, or anything else

    Returns:
        Aware datetime, or None if the value cannot be parsed
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def is_newer(candidate: object, current: object) -> bool:
    """Return True if candidate is chronologically later than current.

    An unparsable candidate is never newer. A parsable candidate is newer
    than an unparsable or missing current value.
    """
    candidate_dt = parse_timestamp(candidate)
    if candidate_dt is None:
        return False
    current_dt = parse_timestamp(current)
    if current_dt is None:
        return True
    return candidate_dt > current_dt


def latest_timestamp(timestamps: list[str]) -> str | None:
    """Return the chronologically latest timestamp string.

    Unparsable values are skipped. If none parse, the first value is
    returned unchanged; an empty list gives None.
    """
    latest: str | None = None
    for ts in timestamps:
        if latest is None or is_newer(ts, latest):
            latest = ts
    return latest

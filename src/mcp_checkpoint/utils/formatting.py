"""Display helpers shared by the operation surface."""

import secrets
from datetime import datetime, timezone


def generate_id() -> str:
    """Generate a unique 16-character hex id for checkpoints."""
    return secrets.token_hex(8)


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601."""
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(timestamp: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(timestamp: str) -> str:
    """Format a timestamp for display in local time."""
    return parse_timestamp(timestamp).astimezone().strftime("%Y-%m-%d %H:%M:%S")


def time_ago(from_timestamp: str, to_timestamp: str) -> str:
    """Human readable distance between two timestamps."""
    delta = parse_timestamp(to_timestamp) - parse_timestamp(from_timestamp)
    minutes = int(delta.total_seconds() // 60)
    hours = minutes // 60
    days = hours // 24

    if days > 0:
        return f"{days} day{'s' if days > 1 else ''} ago"
    elif hours > 0:
        return f"{hours} hour{'s' if hours > 1 else ''} ago"
    elif minutes > 0:
        return f"{minutes} minute{'s' if minutes > 1 else ''} ago"
    return "Just now"


def truncate_text(text: str, max_length: int = 100) -> str:
    """Truncate text to max_length characters, ending with an ellipsis."""
    if len(text) <= max_length:
        return text
    return text[:max_length - 3] + "..."

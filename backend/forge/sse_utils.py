import json
from datetime import datetime, timezone


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def sse_event(event_type: str, data: dict) -> str:
    """Format a named Server-Sent Event; every payload carries a timestamp."""
    payload = {**data, "timestamp": data.get("timestamp") or utc_timestamp()}
    return f"event: {event_type}\ndata: {json.dumps(payload)}\n\n"

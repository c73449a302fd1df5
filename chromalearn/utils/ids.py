"""
ChromaLearn ID Utilities
Generate unique request and feedback IDs for tracing.
"""
import uuid
from datetime import datetime


def generate_request_id(prefix: str = "req") -> str:
    """
    Generate a unique ID for tracking.

    Args:
        prefix: Short tag identifying the kind of object ("req", "fb", ...)

    Returns:
        Unique ID string of the form ``<prefix>-<timestamp>-<uuid8>``
    """
    timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
    short_uuid = str(uuid.uuid4())[:8]
    return f"{prefix}-{timestamp}-{short_uuid}"


def extract_timestamp_from_id(request_id: str) -> str:
    """Return the timestamp part of an ID, or "" when the ID is malformed."""
    parts = request_id.split("-")
    if len(parts) >= 3 and parts[1].isdigit():
        return parts[1]
    return ""

"""ID types and generators for the types package.

Provides run and event ID generation, plus type aliases.
"""

from __future__ import annotations

import secrets
import string
import uuid
from datetime import datetime, timezone

# Type aliases
RunId = str
EventId = str


def generate_event_id() -> EventId:
    """Generate a globally unique event ID."""
    return str(uuid.uuid4())


def generate_run_id() -> RunId:
    """Generate a unique run ID.

    Creates IDs in the format: run-YYYYMMDD-HHMMSS-xxxxxx
    where xxxxxx is a random 6-character alphanumeric suffix.

    Example:
        >>> run_id = generate_run_id()
        >>> run_id.startswith("run-")
        True
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(6))
    return f"run-{timestamp}-{suffix}"

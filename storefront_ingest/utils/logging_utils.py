"""
UTC timestamped logging helpers.

Everything is printed to stdout so Lambda ships it to CloudWatch as-is.
"""

import json
from datetime import datetime, UTC
from typing import Any, Optional


def _utc_timestamp() -> str:
    """
    Generate the current UTC timestamp string.

    Returns:
        str: Timestamp formatted as YYYY-MM-DD HH:MM:SS in UTC.
    """
    return datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        return value if value and " " not in value else json.dumps(value)
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str, separators=(",", ":"))
    return str(value)


def log_section_start(section: str) -> None:
    """
    Log the start of a section.

    Args:
        section (str): Description of the section that is beginning.
    """
    print(f"[{_utc_timestamp()}] Starting: {section}")


def log_section_complete(section: str, details: Optional[str] = None) -> None:
    """
    Log the completion of a section.

    Args:
        section (str): Description of the section that finished.
        details (Optional[str]): Optional extra context to append to the message.
    """
    suffix = f" - {details}" if details else ""
    print(f"[{_utc_timestamp()}] Completed: {section}{suffix}")


def log_progress(section: str, message: str) -> None:
    """
    Log an in-progress update for a section.

    Args:
        section (str): Description of the section that is running.
        message (str): Progress message to display for the section.
    """
    print(f"[{_utc_timestamp()}] {section}: {message}", flush=True)


def log_event(section: str, event: str, **fields: Any) -> None:
    """
    Log a named event with key=value fields, e.g. ``ingest:page domain=a.com page=3``.

    Args:
        section (str): Section the event belongs to.
        event (str): Short event name.
        **fields: Values rendered as key=value pairs in insertion order.
    """
    rendered = " ".join(f"{key}={_format_value(value)}" for key, value in fields.items())
    suffix = f" {rendered}" if rendered else ""
    print(f"[{_utc_timestamp()}] {section}: {event}{suffix}", flush=True)


def log_error(section: str, error: Exception | str) -> None:
    """
    Log an error that occurred during a section.

    Args:
        section (str): Description of the section where the error occurred.
        error (Exception | str): Exception instance or error message to record.
    """
    if isinstance(error, Exception):
        error = f"{type(error).__name__}: {error}"
    print(f"[{_utc_timestamp()}] Error in {section}: {error}", flush=True)

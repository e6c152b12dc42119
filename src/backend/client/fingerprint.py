"""
Client-side device attributes and session ids.
"""

import secrets
from typing import Any, Optional

from services.fingerprint import DeviceFingerprint
from services.state_store import now_ms


def collect_fingerprint(user_agent: str, **attributes: Any) -> DeviceFingerprint:
    """
    Build the fingerprint payload sent with every vote.

    Attributes use the snake_case field names (screen_resolution,
    hardware_concurrency, canvas, webgl, ...). Unknown names raise
    ValueError.
    """
    unknown = set(attributes) - set(DeviceFingerprint.model_fields)
    if unknown:
        raise ValueError(f"unknown fingerprint attributes: {', '.join(sorted(unknown))}")
    return DeviceFingerprint(user_agent=user_agent, **attributes)


def new_session_id(timestamp: Optional[int] = None) -> str:
    """Anonymous session id, e.g. "anon_1700000000000_k3j9x0qzp"."""
    return f"anon_{timestamp if timestamp is not None else now_ms()}_{secrets.token_hex(5)[:9]}"

"""
Device fingerprinting for vote requests.

The client collects browser/device attributes, the server hashes them into a
stable identifier. The hash is only a grouping key: several sessions sharing
one fingerprint in a short window is the suspicion signal. It is never used
as an identity or credential.
"""

import json
from typing import Optional

from fastapi import Request
from pydantic import BaseModel, ConfigDict, Field

from core.config import settings
from core.security import sign

# Serialization order is fixed here, not by dict iteration, so the same
# logical fingerprint always hashes identically.
FINGERPRINT_FIELDS = (
    "user_agent",
    "screen_resolution",
    "timezone",
    "language",
    "platform",
    "hardware_concurrency",
    "device_memory",
    "color_depth",
    "pixel_ratio",
    "touch_support",
    "canvas",
    "webgl",
)


class DeviceFingerprint(BaseModel):
    """Device fingerprint data collected from client."""

    model_config = ConfigDict(populate_by_name=True)

    user_agent: str = Field(..., min_length=1, alias="userAgent")
    screen_resolution: Optional[str] = Field(None, alias="screenResolution")  # "1920x1080"
    timezone: Optional[str] = None  # IANA name, e.g. "Europe/Berlin"
    language: Optional[str] = None
    platform: Optional[str] = None  # "Win32", "MacIntel", etc.

    # Hardware
    hardware_concurrency: Optional[int] = Field(None, alias="hardwareConcurrency")
    device_memory: Optional[float] = Field(None, alias="deviceMemory")  # GB
    color_depth: Optional[int] = Field(None, alias="colorDepth")
    pixel_ratio: Optional[float] = Field(None, alias="pixelRatio")
    touch_support: Optional[bool] = Field(None, alias="touchSupport")

    # Canvas rendering snapshot (data URL or its hash)
    canvas: Optional[str] = None
    # WebGL unmasked vendor + renderer
    webgl: Optional[str] = None

    def canonical(self) -> str:
        """Order-stable serialization of every fingerprint attribute."""
        return json.dumps(
            [[name, getattr(self, name)] for name in FINGERPRINT_FIELDS],
            separators=(",", ":"),
            ensure_ascii=False,
        )


def generate_fingerprint(data: DeviceFingerprint, salt: Optional[str] = None) -> str:
    """Compute the fingerprint hash (HMAC-SHA256 hex) for a device."""
    salt = salt if salt is not None else settings.fingerprint_salt
    return sign(data.canonical(), salt)


def get_client_ip(request: Request) -> str:
    """Extract real client IP from request, handling proxies."""
    # Check common proxy headers
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take first IP (original client)
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    cf_ip = request.headers.get("CF-Connecting-IP")
    if cf_ip:
        return cf_ip

    # Fall back to direct connection
    if request.client:
        return request.client.host

    return "unknown"

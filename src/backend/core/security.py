"""Security utilities: privacy-preserving hashes, signatures and caller identity.

Raw IP addresses never leave this module except as a salted hash or a
truncated audit string.
"""

import hashlib
import hmac
from typing import Any

from jose import JWTError, jwt

from core.config import settings


def hash_ip(ip_address: str, salt: str | None = None) -> str:
    """
    Hash an IP address for storage and rate-limit keys.

    The hash uses a server-side salt so the address cannot be recovered
    with a rainbow table.
    """
    salt = salt if salt is not None else settings.ip_hash_salt
    return hashlib.sha256(f"{ip_address}{salt}".encode()).hexdigest()


def partial_ip(ip_address: str) -> str:
    """Truncated IP for audit metadata (first three characters only)."""
    return f"{ip_address[:3]}***"


def sign(message: str, secret: str) -> str:
    """HMAC-SHA256 hex digest of message."""
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def signatures_match(expected: str, provided: str) -> bool:
    return hmac.compare_digest(expected.encode(), provided.encode())


def decode_token(token: str) -> dict[str, Any] | None:
    """
    Decode and validate a caller identity JWT.

    Tokens are issued by the external auth provider; we only verify them.
    Issuer and audience are checked when configured.

    Returns:
        The decoded payload or None if invalid
    """
    options = {"verify_aud": settings.JWT_AUDIENCE is not None}
    try:
        return jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            issuer=settings.JWT_ISSUER,
            audience=settings.JWT_AUDIENCE,
            options=options,
        )
    except JWTError:
        return None

"""Database models module."""

from models.like import AnonymousLike

__all__ = ["AnonymousLike"]

"""Database module."""

from db.session import close_db, init_db

__all__ = ["init_db", "close_db"]

"""
Anonymous like model for PostgreSQL storage.

One row per (post, session) pair. The toggle flips `liked` in place, so a
row's updated_at marks the last vote on it.

PRIVACY DESIGN:
- The raw IP is NEVER stored, only a salted hash
- The audit metadata carries at most a truncated IP
"""

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, Index, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base


class AnonymousLike(Base):
    """Like state for one anonymous (or authenticated) session on one post."""

    __tablename__ = "anonymous_likes"
    __table_args__ = (
        UniqueConstraint("post_id", "session_id", name="uq_anonymous_likes_post_session"),
        Index("ix_anonymous_likes_fingerprint_updated", "device_fingerprint", "updated_at"),
        Index("ix_anonymous_likes_post_updated", "post_id", "updated_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))

    post_id: Mapped[str] = mapped_column(String(64))
    session_id: Mapped[str] = mapped_column(String(128))

    ip_hash: Mapped[str] = mapped_column(String(64))  # SHA-256 hex
    device_fingerprint: Mapped[str] = mapped_column(String(64))
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    liked: Mapped[bool] = mapped_column(Boolean, default=True)

    vote_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self) -> str:
        return f"<AnonymousLike(post_id={self.post_id}, liked={self.liked})>"

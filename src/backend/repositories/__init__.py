"""Repository modules for like storage."""

from repositories.memory_like_repository import InMemoryLikeRepository
from repositories.provider import LikeRepositoryProtocol, RecentVote, create_like_repository

__all__ = [
    "InMemoryLikeRepository",
    "LikeRepositoryProtocol",
    "RecentVote",
    "create_like_repository",
]

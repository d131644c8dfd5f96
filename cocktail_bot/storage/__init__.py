from .base import UserRepository
from .factory import create_repository, get_repository, reset_repository

__all__ = ["UserRepository", "create_repository", "get_repository", "reset_repository"]

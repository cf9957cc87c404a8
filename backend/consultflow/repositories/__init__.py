# backend/consultflow/repositories/__init__.py
"""
Repository layer for Consultflow.

All data access goes through repositories created by RepositoryFactory.
"""

from .base_repository import BaseRepository
from .factory import RepositoryFactory

__all__ = ["BaseRepository", "RepositoryFactory"]

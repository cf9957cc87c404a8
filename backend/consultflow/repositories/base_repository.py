# backend/consultflow/repositories/base_repository.py
"""
Generic data access shared by every Consultflow repository.

Repositories flush but never commit: the owning service decides when a
unit of work ends (see ``BaseService.transaction``). Storage failures
surface as ``RepositoryException`` so services can tell them apart from
domain errors.
"""

from contextlib import contextmanager
import logging
from typing import Any, Generic, Iterator, List, Optional, Type, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Query, Session

from ..core.exceptions import RepositoryException

T = TypeVar("T")

logger = logging.getLogger(__name__)


class BaseRepository(Generic[T]):
    """CRUD over one mapped entity keyed by a ULID string ``id``."""

    def __init__(self, db: Session, model: Type[T]):
        self.db = db
        self.model = model
        self.logger = logging.getLogger(f"{__name__}.{model.__name__}")

    @contextmanager
    def _storage_errors(self, action: str) -> Iterator[None]:
        try:
            yield
        except IntegrityError as e:
            self.logger.error("Constraint violated while trying to %s %s: %s", action, self.model.__name__, e)
            raise RepositoryException(f"Cannot {action} {self.model.__name__}: constraint violated") from e
        except SQLAlchemyError as e:
            self.logger.error("Failed to %s %s: %s", action, self.model.__name__, e)
            raise RepositoryException(f"Failed to {action} {self.model.__name__}: {str(e)}") from e

    def get_by_id(self, id: str) -> Optional[T]:
        with self._storage_errors("load"):
            return self.db.get(self.model, id)

    def create(self, **fields: Any) -> T:
        """Add and flush a new row so its defaults (id, timestamps) are populated."""
        with self._storage_errors("create"):
            entity = self.model(**fields)
            self.db.add(entity)
            self.db.flush()
            return entity

    def update(self, id: str, **fields: Any) -> Optional[T]:
        """Set the given columns; unknown names are ignored. Returns None when the row is missing."""
        entity = self.get_by_id(id)
        if entity is None:
            return None
        with self._storage_errors("update"):
            for key, value in fields.items():
                if hasattr(entity, key):
                    setattr(entity, key, value)
            self.db.flush()
        return entity

    def delete(self, id: str) -> bool:
        entity = self.get_by_id(id)
        if entity is None:
            return False
        with self._storage_errors("delete"):
            self.db.delete(entity)
            self.db.flush()
        return True

    def flush(self) -> None:
        self.db.flush()

    # Subclass helpers

    def _execute_query(self, query: Query) -> List[T]:
        with self._storage_errors("query"):
            return query.all()

    def _execute_first(self, query: Query) -> Optional[T]:
        with self._storage_errors("query"):
            return query.first()

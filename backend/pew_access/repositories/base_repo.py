"""
Base repository for access-control tables.

Role, policy, compliance and experiment definitions are global (not
per-user), so there is no scoping column; repositories only centralise
session handling and error logging.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Callable, Generic, Iterator, List, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pew_access.db_base import Base

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Base)


class BaseRepository(Generic[T], ABC):
    """Thin CRUD layer over one ORM class."""

    def __init__(self, db_session: Session):
        self.db_session = db_session
        self._model_class = self._get_model_class()

    @abstractmethod
    def _get_model_class(self) -> type[T]:
        """Return the SQLAlchemy model class for this repository."""

    def get_by_id(self, entity_id: str) -> Optional[T]:
        return (
            self.db_session.query(self._model_class)
            .filter(self._model_class.id == entity_id)
            .first()
        )

    def get_all(self, limit: Optional[int] = None, offset: Optional[int] = None) -> List[T]:
        query = self.db_session.query(self._model_class)
        if offset:
            query = query.offset(offset)
        if limit:
            query = query.limit(limit)
        return query.all()

    def create(self, entity_data: dict) -> T:
        entity = self._model_class(**entity_data)
        self.db_session.add(entity)
        self._commit("create", entity)
        return entity

    def update(self, entity_id: str, entity_data: dict) -> Optional[T]:
        entity = self.get_by_id(entity_id)
        if not entity:
            return None
        for key, value in entity_data.items():
            if hasattr(entity, key):
                setattr(entity, key, value)
        self._commit("update", entity)
        return entity

    def delete(self, entity_id: str) -> bool:
        entity = self.get_by_id(entity_id)
        if not entity:
            return False
        self.db_session.delete(entity)
        self._commit("delete", None)
        return True

    def _commit(self, operation: str, entity: Optional[T]) -> None:
        try:
            self.db_session.commit()
            if entity is not None:
                self.db_session.refresh(entity)
            logger.info(
                "Entity committed",
                extra={
                    "operation": operation,
                    "entity_id": getattr(entity, "id", None),
                    "entity_type": self._model_class.__name__,
                },
            )
        except SQLAlchemyError as e:
            self.db_session.rollback()
            logger.error(
                "Failed to %s entity" % operation,
                extra={"entity_type": self._model_class.__name__, "error": str(e)},
            )
            raise


@contextmanager
def session_scope(session_factory: Callable[[], Session]) -> Iterator[Session]:
    """Short-lived session for evaluator sources that outlive a request."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()

# backend/app/repositories/base_repository.py
"""
Shared data access for the payment repositories.

Repositories flush but never commit. The booking payment service decides
when a unit of work is durable, usually right after a gateway call.
"""

import logging
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.database.session_utils import get_dialect_name

from ..core.exceptions import RepositoryException

T = TypeVar("T")

logger = logging.getLogger(__name__)


class BaseRepository(Generic[T]):
    """
    Lookup and idempotent-insert helpers bound to one model.

    Attributes:
        db: SQLAlchemy session shared with the owning service
        model: Mapped class this repository reads and writes
    """

    def __init__(self, db: Session, model: Type[T]):
        self.db = db
        self.model = model
        self.logger = logging.getLogger(f"{__name__}.{model.__name__}")

    @property
    def dialect_name(self) -> str:
        return get_dialect_name(self.db)

    def _wrap(self, action: str, exc: SQLAlchemyError) -> RepositoryException:
        self.logger.error(f"{action} {self.model.__name__} failed: {exc}")
        return RepositoryException(f"Could not {action.lower()} {self.model.__name__}: {exc}")

    def get_by_id(self, id: str, for_update: bool = False) -> Optional[T]:
        """
        Load one row by primary key.

        ``for_update`` takes a row lock on PostgreSQL so concurrent accept or
        cancel calls for the same booking serialize; other dialects ignore it.
        """
        try:
            query = self.db.query(self.model).filter(self.model.id == id)
            if for_update and self.dialect_name == "postgresql":
                query = query.with_for_update()
            return query.first()
        except SQLAlchemyError as exc:
            raise self._wrap("Load", exc) from exc

    def find_by(self, **criteria: Any) -> List[T]:
        try:
            return self.db.query(self.model).filter_by(**criteria).all()
        except SQLAlchemyError as exc:
            raise self._wrap("Search", exc) from exc

    def find_one_by(self, **criteria: Any) -> Optional[T]:
        try:
            return self.db.query(self.model).filter_by(**criteria).first()
        except SQLAlchemyError as exc:
            raise self._wrap("Search", exc) from exc

    def _insert_idempotent(self, unique_field: str, values: Dict[str, Any]) -> tuple[T, bool]:
        """
        Insert a row unless one with the same ``unique_field`` value already exists.

        The insert runs in a SAVEPOINT so a concurrent duplicate only rolls back
        this row, not the caller's transaction. Returns ``(row, created)``.
        """
        key = values[unique_field]
        existing = self.find_one_by(**{unique_field: key})
        if existing is not None:
            return existing, False

        try:
            with self.db.begin_nested():
                entity = self.model(**values)
                self.db.add(entity)
                self.db.flush()
            return entity, True
        except IntegrityError:
            self.logger.info(
                "%s with %s=%s already recorded", self.model.__name__, unique_field, key
            )
            existing = self.find_one_by(**{unique_field: key})
            if existing is None:
                raise RepositoryException(
                    f"{self.model.__name__} {key} conflicted but could not be reloaded"
                )
            return existing, False
        except SQLAlchemyError as exc:
            raise self._wrap("Insert", exc) from exc

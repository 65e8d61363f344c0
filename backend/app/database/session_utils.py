"""
Helpers for working with SQLAlchemy sessions in a dialect-agnostic way.
"""

from __future__ import annotations

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session


def get_dialect_name(session: Session, default: str = "sqlite") -> str:
    """
    Return the SQLAlchemy dialect name of the session's bind.

    Falls back to ``default`` when the bound engine cannot be resolved
    (for example a Mock session in unit tests).
    """
    try:
        bind = session.get_bind()
    except (SQLAlchemyError, AttributeError, TypeError):
        return default
    name = getattr(getattr(bind, "dialect", None), "name", None)
    return name if isinstance(name, str) and name else default

"""Single-commit unit of work for billing operations."""

from __future__ import annotations

import logging
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from extensions import db
from services.errors import BillingError, PersistenceError

logger = logging.getLogger(__name__)


@contextmanager
def atomic(action: str):
    """Commit everything done inside the block once, or roll it all back.

    Concurrent modification of a versioned row (``StaleDataError``) and any
    other database failure surface as ``PersistenceError``.
    """
    try:
        yield
        db.session.commit()
    except BillingError:
        db.session.rollback()
        raise
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("%s: concurrent modification detected", action)
        raise PersistenceError(
            f"{action} failed: the record was modified by another request"
        ) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("%s: database error", action)
        raise PersistenceError(f"{action} failed: {exc.__class__.__name__}") from exc

"""
Store access guard.

Wraps a unit of service work so that driver/ORM failures surface as the
single retryable ``StoreUnavailableError`` instead of leaking SQLAlchemy
types to blueprints. Business exceptions raised inside the block pass
through untouched; the session is rolled back in both cases.

Usage:
    with guarded_store("submit", student_id=sid, form_code=code):
        ...
        db.session.commit()
"""

import logging
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError

from phdtrack.core.exceptions import StoreUnavailableError
from phdtrack.models import db

logger = logging.getLogger(__name__)


@contextmanager
def guarded_store(operation: str, **context):
    try:
        yield
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error(
            "Store failure during %s: %s", operation, exc,
            extra={"operation": operation, **context},
            exc_info=True,
        )
        raise StoreUnavailableError(operation, context) from exc
    except Exception:
        db.session.rollback()
        raise

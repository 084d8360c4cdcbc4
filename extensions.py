"""Flask extensions: single instances shared across the application."""

from contextlib import contextmanager

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import IntegrityError

from errors import Conflict

db = SQLAlchemy()


@contextmanager
def unit_of_work():
    """Run a block of writes as one transaction.

    Commits on normal exit; rolls back on *any* exception and re-raises it,
    so a failure partway through never leaves partial state.  Uniqueness
    violations from the database surface as ``Conflict``.
    """
    try:
        yield db.session
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        raise Conflict("Conflicting record already exists", detail=str(e.orig)) from e
    except Exception:
        db.session.rollback()
        raise

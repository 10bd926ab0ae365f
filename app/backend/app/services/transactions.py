"""Transaction scope shared by mutating allocation services."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.errors import StaleState


@contextmanager
def transaction(db: Session) -> Iterator[None]:
    """Commit on success, roll back on any failure.

    Optimistic version mismatches and unique-key races surface as
    :class:`StaleState` so the caller can reload and retry.
    """

    try:
        yield
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise StaleState("Allocation was changed by a concurrent request; reload and retry.") from exc
    except IntegrityError as exc:
        db.rollback()
        raise StaleState("A concurrent request wrote a conflicting record; reload and retry.") from exc
    except Exception:
        db.rollback()
        raise

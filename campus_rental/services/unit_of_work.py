from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from services.errors import RentalError, StorageFailure


LOGGER = logging.getLogger("campus_rental.storage")


@contextmanager
def unit_of_work(db: Session, action: str, entity_id: str) -> Iterator[Session]:
    """Commit everything staged inside the block as one transaction.

    Business rejections roll back and propagate unchanged. Store errors roll
    back and surface as ``StorageFailure``.
    """
    try:
        yield db
        db.commit()
    except RentalError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        LOGGER.exception("Storage failure action=%s entity_id=%s", action, entity_id)
        raise StorageFailure(f"Could not save {action} for {entity_id}. Please retry.") from exc
    except Exception:
        db.rollback()
        raise

"""
Idempotency fast path.

The gateway delivers at least once, so the same external message id can
arrive many times, possibly concurrently. This check only avoids needless
resolution work; the unique constraint on messages(instance_name,
external_id) is what actually guarantees a single row.
"""

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_bridge.errors import PersistenceFailure
from crm_bridge.models import Message

logger = logging.getLogger(__name__)


def already_processed(db: Session, instance_name: str, external_id: str) -> bool:
    """
    Return True when a message with this external id is already stored.

    Raises:
        PersistenceFailure: the store could not be queried
    """
    try:
        found = db.execute(
            select(Message.id)
            .where(Message.instance_name == instance_name, Message.external_id == external_id)
            .limit(1)
        ).first()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Idempotency check failed for {instance_name}/{external_id}: {e}")
        raise PersistenceFailure(f"could not check message {external_id}") from e
    if found is not None:
        logger.info(f"Duplicate delivery skipped: {instance_name}/{external_id}")
        return True
    return False

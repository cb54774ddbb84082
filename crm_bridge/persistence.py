"""
Message persistence.

A message insert and the ticket activity bump commit together or not at
all. The unique constraint on (instance_name, external_id) turns a
concurrent duplicate into an IntegrityError, which is reported as
DuplicateDelivery and rolls the ticket bump back with it.
"""

import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from crm_bridge.errors import DuplicateDelivery, PersistenceFailure
from crm_bridge.models import Customer, Message, Ticket
from crm_bridge.normalizer import NormalizedMessage
from crm_bridge.resolver import touch_ticket
from crm_bridge.storage import utc_now_iso

logger = logging.getLogger(__name__)


def write_message(
    db: Session,
    *,
    instance_name: str,
    external_id: str,
    ticket: Ticket,
    customer: Customer,
    normalized: NormalizedMessage,
    source_timestamp: str,
    inbound: bool,
    sender_name: Optional[str] = None,
    is_group: bool = False,
    participant: Optional[str] = None,
    ack_status: Optional[str] = None,
) -> Message:
    """
    Insert the message and touch its ticket in a single transaction.

    Raises:
        DuplicateDelivery: the external id is already stored for this instance
        PersistenceFailure: any other store error; nothing was written
    """
    created_at = utc_now_iso()
    message = Message(
        instance_name=instance_name,
        external_id=external_id,
        ticket_id=ticket.id,
        customer_id=customer.id,
        direction="inbound" if inbound else "outbound",
        kind=normalized.kind.value,
        display_text=normalized.display_text,
        media=normalized.media.to_dict() if normalized.media else None,
        extra=normalized.extra,
        source_timestamp=source_timestamp,
        sender_name=sender_name,
        is_group=is_group,
        participant=participant,
        ack_status=ack_status,
        created_at=created_at,
    )

    try:
        db.add(message)
        db.flush()
        touch_ticket(db, ticket, created_at, inbound)
        db.commit()
        db.refresh(ticket)
    except IntegrityError:
        # external id already exists - expected under at-least-once delivery
        db.rollback()
        logger.info(f"Duplicate message detected: {instance_name}/{external_id}")
        raise DuplicateDelivery(instance_name, external_id)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to store message {instance_name}/{external_id}: {e}")
        raise PersistenceFailure(f"could not store message {external_id}") from e

    logger.info(f"Message stored: id={message.id}, ticket={ticket.id}, kind={message.kind}")
    return message


def mark_message_status(db: Session, instance_name: str, external_id: str, status: str) -> Optional[Message]:
    """
    Update the ack flag of a stored message.

    Returns:
        The updated message, or None when it is not stored (yet).
    """
    try:
        updated = db.execute(
            update(Message)
            .where(Message.instance_name == instance_name, Message.external_id == external_id)
            .values(ack_status=status)
        ).rowcount
        db.commit()
        if not updated:
            logger.debug(f"Status update for unknown message {instance_name}/{external_id}")
            return None
        return db.query(Message).filter(
            Message.instance_name == instance_name,
            Message.external_id == external_id,
        ).first()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update status of {instance_name}/{external_id}: {e}")
        raise PersistenceFailure(f"could not update message {external_id}") from e

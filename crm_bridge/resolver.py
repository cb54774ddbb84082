"""
Entity resolution: instance, customer and open ticket.

Every "find or create" here is an INSERT ... ON CONFLICT DO NOTHING
followed by a SELECT, so two concurrent first-contact deliveries converge
on the same rows. The store's unique constraints do the arbitration; no
in-process lock is involved.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from crm_bridge.errors import EntityResolutionFailure
from crm_bridge.models import OPEN_TICKET_STATUSES, Customer, Instance, Ticket
from crm_bridge.storage import insert_ignore, utc_now_iso

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True)
class ResolutionDefaults:
    """Values used when an instance carries no routing metadata yet."""
    channel: str = "whatsapp"
    department_id: Optional[str] = None


def identity_key_from_jid(jid: str) -> str:
    """
    Stable customer identity derived from a sender address.

    ``5511999999999@s.whatsapp.net`` and ``5511999999999:12@s.whatsapp.net``
    both map to ``5511999999999``. Addresses without digits keep their
    user part unchanged.
    """
    user = jid.split("@", 1)[0].split(":", 1)[0]
    digits = _NON_DIGITS.sub("", user)
    return digits or user


def placeholder_name(identity_key: str) -> str:
    return f"Customer {identity_key}"


def resolve_instance(db: Session, name: str, defaults: ResolutionDefaults) -> Instance:
    """Find the instance by name, creating it on first sight."""
    try:
        instance = db.execute(select(Instance).where(Instance.name == name)).scalar_one_or_none()
        if instance is not None:
            return instance

        now = utc_now_iso()
        inserted = insert_ignore(db, Instance, {
            "name": name,
            "connection_state": "created",
            "events": [],
            "department_id": defaults.department_id,
            "created_via": "webhook",
            "created_at": now,
            "updated_at": now,
        })
        db.commit()
        if inserted:
            logger.info(f"Instance created from webhook: {name}")
        return db.execute(select(Instance).where(Instance.name == name)).scalar_one()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to resolve instance {name}: {e}")
        raise EntityResolutionFailure(f"could not resolve instance {name}") from e


def resolve_customer(db: Session, jid: str, push_name: Optional[str]) -> Customer:
    """
    Find or create the customer behind a sender address.

    A placeholder display name is replaced by the first real push name,
    and a changed push name updates the display name in place.
    """
    identity_key = identity_key_from_jid(jid)
    push_name = (push_name or "").strip() or None

    try:
        customer = _customer_by_key(db, identity_key)
        if customer is None:
            now = utc_now_iso()
            inserted = insert_ignore(db, Customer, {
                "identity_key": identity_key,
                "whatsapp_jid": jid,
                "display_name": push_name or placeholder_name(identity_key),
                "name_is_placeholder": push_name is None,
                "push_name": push_name,
                "created_from": "whatsapp",
                "created_at": now,
                "updated_at": now,
            })
            db.commit()
            customer = _customer_by_key(db, identity_key)
            if inserted:
                logger.info(f"Customer created: id={customer.id}, identity={identity_key}")
                return customer

        if push_name and push_name != customer.display_name:
            logger.info(f"Customer {customer.id} display name updated")
            customer.display_name = push_name
            customer.push_name = push_name
            customer.name_is_placeholder = False
            customer.updated_at = utc_now_iso()
            db.commit()
        return customer
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to resolve customer {identity_key}: {e}")
        raise EntityResolutionFailure(f"could not resolve customer {identity_key}") from e


def _customer_by_key(db: Session, identity_key: str) -> Optional[Customer]:
    return db.execute(
        select(Customer).where(Customer.identity_key == identity_key)
    ).scalar_one_or_none()


def _open_ticket(db: Session, customer_id: int, channel: str) -> Optional[Ticket]:
    return db.execute(
        select(Ticket)
        .where(
            Ticket.customer_id == customer_id,
            Ticket.channel == channel,
            Ticket.status.in_(OPEN_TICKET_STATUSES),
        )
        .order_by(Ticket.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def _reopen_resolved(db: Session, customer_id: int, channel: str) -> Optional[Ticket]:
    """Reopen the latest resolved ticket; closed tickets stay closed."""
    latest = db.execute(
        select(Ticket)
        .where(Ticket.customer_id == customer_id, Ticket.channel == channel)
        .order_by(Ticket.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    if latest is None or latest.status != "resolved":
        return None

    try:
        reopened = db.execute(
            update(Ticket)
            .where(Ticket.id == latest.id, Ticket.status == "resolved")
            .values(status="open", updated_at=utc_now_iso())
        ).rowcount
        db.commit()
    except IntegrityError:
        # Another delivery opened a ticket for this pair first
        db.rollback()
        return None
    if not reopened:
        return None
    logger.info(f"Ticket reopened: id={latest.id}")
    db.refresh(latest)
    return latest


def resolve_ticket(
    db: Session,
    customer: Customer,
    instance: Instance,
    defaults: ResolutionDefaults,
) -> tuple[Ticket, bool]:
    """
    Find the customer's open ticket on the channel, reopening or creating one.

    Returns:
        (ticket, created) where created is True only for a brand new row.
    """
    channel = defaults.channel
    try:
        ticket = _open_ticket(db, customer.id, channel)
        if ticket is not None:
            return ticket, False

        ticket = _reopen_resolved(db, customer.id, channel)
        if ticket is not None:
            return ticket, False

        now = utc_now_iso()
        inserted = insert_ignore(db, Ticket, {
            "customer_id": customer.id,
            "instance_name": instance.name,
            "channel": channel,
            "status": "open",
            "title": f"WhatsApp conversation with {customer.display_name}",
            "department_id": instance.department_id or defaults.department_id,
            "whatsapp_jid": customer.whatsapp_jid,
            "last_activity_at": now,
            "unread_count": 0,
            "caught_up": True,
            "created_at": now,
            "updated_at": now,
        })
        db.commit()
        ticket = _open_ticket(db, customer.id, channel)
        if ticket is None:
            # Closed between our insert and select; let the caller retry
            raise EntityResolutionFailure(f"open ticket for customer {customer.id} vanished")
        if inserted:
            logger.info(f"Ticket created: id={ticket.id}, customer={customer.id}, channel={channel}")
        return ticket, bool(inserted)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to resolve ticket for customer {customer.id}: {e}")
        raise EntityResolutionFailure(f"could not resolve ticket for customer {customer.id}") from e


def touch_ticket(db: Session, ticket: Ticket, at: str, inbound: bool) -> None:
    """
    Record activity on a ticket.

    Must run inside the message write transaction so a duplicate delivery,
    which rolls back, never bumps activity.
    """
    values = {"last_activity_at": at, "updated_at": utc_now_iso()}
    if inbound:
        values["unread_count"] = Ticket.unread_count + 1
        values["caught_up"] = False
    db.execute(update(Ticket).where(Ticket.id == ticket.id).values(**values))

"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

Uniqueness that the ingestion path relies on lives here, not in code:
- instances.name
- customers.identity_key
- one open/in-progress ticket per (customer_id, channel), as a partial index
- messages (instance_name, external_id)
"""

from sqlalchemy import JSON, Boolean, Column, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text

from crm_bridge.storage import Base

OPEN_TICKET_STATUSES = ("open", "in_progress")
_OPEN_TICKET_WHERE = text("status IN ('open', 'in_progress')")


class Instance(Base):
    """A configured gateway session."""
    __tablename__ = "instances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True, index=True)
    # created | connecting | connected | disconnected | error
    connection_state = Column(String, nullable=False, default="created")
    webhook_url = Column(String, nullable=True)
    events = Column(JSON, nullable=False, default=list)
    department_id = Column(String, nullable=True)
    created_via = Column(String, nullable=False, default="webhook")
    qr_code = Column(Text, nullable=True)
    pairing_code = Column(String, nullable=True)
    status_reason = Column(String, nullable=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601
    updated_at = Column(String, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "connectionState": self.connection_state,
            "webhookUrl": self.webhook_url,
            "events": self.events or [],
            "departmentId": self.department_id,
            "createdVia": self.created_via,
            "updatedAt": self.updated_at,
        }


class Customer(Base):
    """A contact identity, one row per identity key."""
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    identity_key = Column(String, nullable=False, unique=True, index=True)
    whatsapp_jid = Column(String, nullable=True)
    display_name = Column(String, nullable=False)
    name_is_placeholder = Column(Boolean, nullable=False, default=False)
    push_name = Column(String, nullable=True)
    created_from = Column(String, nullable=False, default="whatsapp")
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "identityKey": self.identity_key,
            "whatsappJid": self.whatsapp_jid,
            "displayName": self.display_name,
            "createdFrom": self.created_from,
        }


class Ticket(Base):
    """A conversation thread tied to one customer and channel."""
    __tablename__ = "tickets"
    __table_args__ = (
        Index(
            "uq_tickets_open_customer_channel",
            "customer_id",
            "channel",
            unique=True,
            sqlite_where=_OPEN_TICKET_WHERE,
            postgresql_where=_OPEN_TICKET_WHERE,
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    instance_name = Column(String, ForeignKey("instances.name"), nullable=False, index=True)
    channel = Column(String, nullable=False)
    # open | in_progress | resolved | closed
    status = Column(String, nullable=False, default="open")
    title = Column(String, nullable=False)
    department_id = Column(String, nullable=True)
    whatsapp_jid = Column(String, nullable=True)
    last_activity_at = Column(String, nullable=False, index=True)
    unread_count = Column(Integer, nullable=False, default=0)
    caught_up = Column(Boolean, nullable=False, default=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customerId": self.customer_id,
            "instanceName": self.instance_name,
            "channel": self.channel,
            "status": self.status,
            "title": self.title,
            "departmentId": self.department_id,
            "lastActivityAt": self.last_activity_at,
            "unreadCount": self.unread_count,
            "caughtUp": self.caught_up,
        }


class Message(Base):
    """
    One normalized communication.

    Immutable once written except for ack_status.
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("instance_name", "external_id", name="uq_messages_instance_external_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_name = Column(String, nullable=False)
    external_id = Column(String, nullable=False)
    ticket_id = Column(Integer, ForeignKey("tickets.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False)
    direction = Column(String, nullable=False)  # inbound | outbound
    kind = Column(String, nullable=False)
    display_text = Column(Text, nullable=False)
    media = Column(JSON, nullable=True)
    extra = Column(JSON, nullable=False, default=dict)
    source_timestamp = Column(String, nullable=False, index=True)  # ISO-8601 UTC string
    sender_name = Column(String, nullable=True)
    is_group = Column(Boolean, nullable=False, default=False)
    participant = Column(String, nullable=True)
    ack_status = Column(String, nullable=True)
    created_at = Column(String, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "externalId": self.external_id,
            "instanceName": self.instance_name,
            "ticketId": self.ticket_id,
            "customerId": self.customer_id,
            "direction": self.direction,
            "kind": self.kind,
            "displayText": self.display_text,
            "media": self.media,
            "extra": self.extra or {},
            "sourceTimestamp": self.source_timestamp,
            "senderName": self.sender_name,
            "isGroup": self.is_group,
            "ackStatus": self.ack_status,
        }

"""
Event dispatch and the synchronous ingestion path.

Each delivery is handled in two halves:
- process_event() does all store work in a worker thread and returns the
  realtime events describing what changed
- handle_delivery() runs it under the store timeout, then publishes those
  events without waiting for subscribers

The same handle_delivery() serves the webhook route and the queue worker.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, assert_never

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from crm_bridge.errors import DuplicateDelivery, PersistenceFailure, ValidationError
from crm_bridge.events import MESSAGE_KINDS, EventKind, classify
from crm_bridge.fanout import RealtimeEvent, instance_room, ticket_room
from crm_bridge.idempotency import already_processed
from crm_bridge.models import Instance
from crm_bridge.normalizer import normalize
from crm_bridge.persistence import mark_message_status, write_message
from crm_bridge.queue import QueueEnvelope
from crm_bridge.resolver import ResolutionDefaults, resolve_customer, resolve_instance, resolve_ticket
from crm_bridge.schemas import ConnectionUpdate, MessageStatusUpdate, QrCodeUpdate, WhatsAppMessage
from crm_bridge.services import Services
from crm_bridge.storage import epoch_to_iso, utc_now_iso

logger = logging.getLogger(__name__)

STATUS_BROADCAST_JID = "status@broadcast"

# Gateway connection states mapped to Instance.connection_state
CONNECTION_STATES = {
    "open": "connected",
    "connecting": "connecting",
    "close": "disconnected",
}


@dataclass
class EventResult:
    kind: EventKind
    processed: int = 0
    duplicates: int = 0
    ignored: int = 0
    message_ids: list[str] = field(default_factory=list)
    events: list[RealtimeEvent] = field(default_factory=list)

    @property
    def outcome(self) -> str:
        if self.processed:
            return "processed"
        if self.duplicates:
            return "duplicate"
        return "ignored"


# =============================================================================
# Payload validation
# =============================================================================

def _items(data: Any) -> list[Any]:
    if data is None:
        return []
    return data if isinstance(data, list) else [data]


def _first_error(error: PydanticValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


def validate_event_data(kind: EventKind, data: Any) -> Any:
    """
    Check the payload shape for an event kind and return it typed.

    Raises:
        ValidationError: payload does not have the shape the kind requires
    """
    items = _items(data)
    try:
        if kind in MESSAGE_KINDS:
            if not items:
                raise ValidationError(f"{kind.value} requires at least one message")
            return [WhatsAppMessage.model_validate(item) for item in items]
        if kind is EventKind.MESSAGES_UPDATE:
            return [MessageStatusUpdate.model_validate(item) for item in items]
        if kind is EventKind.CONNECTION_UPDATE:
            if not items:
                raise ValidationError("CONNECTION_UPDATE requires a state")
            return ConnectionUpdate.model_validate(items[0])
        if kind is EventKind.QRCODE_UPDATED:
            if not items:
                raise ValidationError("QRCODE_UPDATED requires a qrcode")
            return QrCodeUpdate.model_validate(items[0])
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {kind.value} payload: {_first_error(e)}") from e
    return data


# =============================================================================
# Handlers (synchronous, run in the thread pool)
# =============================================================================

def _source_timestamp(epoch: Optional[int]) -> str:
    if not epoch:
        return utc_now_iso()
    # Some gateway builds send milliseconds
    if epoch > 10**11:
        epoch //= 1000
    try:
        return epoch_to_iso(epoch)
    except (ValueError, OverflowError, OSError):
        logger.warning(f"Message timestamp out of range, using server time: {epoch}")
        return utc_now_iso()


def ingest_message(
    db: Session,
    defaults: ResolutionDefaults,
    instance: Instance,
    item: WhatsAppMessage,
    result: EventResult,
) -> None:
    """Normalize, de-duplicate, resolve and write one message item."""
    key = item.key
    if key.remote_jid == STATUS_BROADCAST_JID:
        logger.debug(f"Ignoring status broadcast: {key.id}")
        result.ignored += 1
        return

    if already_processed(db, instance.name, key.id):
        result.duplicates += 1
        return

    normalized = normalize(item.message)
    inbound = not key.from_me
    is_group = key.remote_jid.endswith("@g.us")
    # In groups, pushName belongs to the participant, not the group
    contact_name = item.push_name if inbound and not is_group else None

    customer = resolve_customer(db, key.remote_jid, contact_name)
    ticket, created = resolve_ticket(db, customer, instance, defaults)

    try:
        message = write_message(
            db,
            instance_name=instance.name,
            external_id=key.id,
            ticket=ticket,
            customer=customer,
            normalized=normalized,
            source_timestamp=_source_timestamp(item.message_timestamp),
            inbound=inbound,
            sender_name=item.push_name,
            is_group=is_group,
            participant=key.participant,
            ack_status=item.status,
        )
    except DuplicateDelivery:
        result.duplicates += 1
        return

    result.processed += 1
    result.message_ids.append(key.id)
    room = ticket_room(ticket.id)
    result.events.append(RealtimeEvent("new-message", room, {
        "message": message.to_dict(),
        "ticket": ticket.to_dict(),
        "customer": customer.to_dict(),
        "instance": instance.name,
    }))
    result.events.append(RealtimeEvent("ticket-updated", room, {
        "ticket": ticket.to_dict(),
        "created": created,
    }))
    if inbound:
        result.events.append(RealtimeEvent("notification", instance_room(instance.name), {
            "type": "new-message",
            "title": f"New message from {customer.display_name}",
            "message": normalized.display_text[:100],
            "ticketId": ticket.id,
        }))


def _ingest_messages(
    db: Session,
    defaults: ResolutionDefaults,
    kind: EventKind,
    instance: Instance,
    items: list[WhatsAppMessage],
) -> EventResult:
    result = EventResult(kind)
    for item in items:
        ingest_message(db, defaults, instance, item, result)
    logger.info(
        f"{kind.value} for {instance.name}: processed={result.processed}, "
        f"duplicates={result.duplicates}, ignored={result.ignored}"
    )
    return result


def _update_statuses(
    db: Session,
    kind: EventKind,
    instance: Instance,
    updates: list[MessageStatusUpdate],
) -> EventResult:
    result = EventResult(kind)
    for update in updates:
        if not update.external_id or not update.status:
            result.ignored += 1
            continue
        message = mark_message_status(db, instance.name, update.external_id, update.status)
        if message is None:
            result.ignored += 1
            continue
        result.processed += 1
        result.events.append(RealtimeEvent("message-updated", ticket_room(message.ticket_id), {
            "message": message.to_dict(),
            "status": update.status,
        }))
    return result


def _save_instance(db: Session, instance: Instance, **values: Any) -> None:
    try:
        for name, value in values.items():
            setattr(instance, name, value)
        instance.updated_at = utc_now_iso()
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update instance {instance.name}: {e}")
        raise PersistenceFailure(f"could not update instance {instance.name}") from e


def _connection_update(db: Session, kind: EventKind, instance: Instance, update: ConnectionUpdate) -> EventResult:
    status = CONNECTION_STATES.get(update.state, "error")
    _save_instance(
        db,
        instance,
        connection_state=status,
        status_reason=str(update.status_reason) if update.status_reason is not None else None,
    )
    logger.info(f"Connection state of {instance.name}: {update.state} -> {status}")
    result = EventResult(kind, processed=1)
    result.events.append(RealtimeEvent("connection-update", instance_room(instance.name), {
        "instanceName": instance.name,
        "status": status,
        "state": update.state,
        "isNewLogin": update.is_new_login,
    }))
    return result


def _qrcode_updated(db: Session, kind: EventKind, instance: Instance, update: QrCodeUpdate) -> EventResult:
    _save_instance(db, instance, qr_code=update.code, pairing_code=update.pairing)
    logger.info(f"QR code updated for {instance.name}")
    result = EventResult(kind, processed=1)
    result.events.append(RealtimeEvent("qr-updated", instance_room(instance.name), {
        "instanceName": instance.name,
        "qrcode": update.code,
        "pairingCode": update.pairing,
    }))
    return result


def _application_startup(db: Session, kind: EventKind, instance: Instance) -> EventResult:
    _save_instance(db, instance, connection_state="connecting")
    logger.info(f"Gateway started for {instance.name}")
    result = EventResult(kind, processed=1)
    result.events.append(RealtimeEvent("instance-startup", instance_room(instance.name), {
        "instanceName": instance.name,
        "status": "connecting",
    }))
    return result


def _passthrough(kind: EventKind, instance: Instance, data: Any) -> EventResult:
    if kind is EventKind.PRESENCE_UPDATE:
        logger.debug(f"{kind.value} received for {instance.name}")
    else:
        logger.info(f"{kind.value} received for {instance.name}")
    result = EventResult(kind, ignored=len(_items(data)))
    result.events.append(RealtimeEvent("gateway-event", instance_room(instance.name), {
        "event": kind.value,
        "type": kind.slug,
        "instanceName": instance.name,
        "data": data,
    }))
    return result


def process_event(services: Services, kind: EventKind, instance_name: str, data: Any) -> EventResult:
    """
    Apply one validated delivery to the store.

    ``data`` must come from validate_event_data() for the same kind.

    Raises:
        EntityResolutionFailure, PersistenceFailure: transient store failure
    """
    try:
        with services.session_factory() as db:
            return _dispatch(services, db, kind, instance_name, data)
    except SQLAlchemyError as e:
        logger.error(f"{kind.value} for {instance_name} failed in the store: {e}")
        raise PersistenceFailure(f"store error while handling {kind.value}") from e


def _dispatch(services: Services, db: Session, kind: EventKind, instance_name: str, data: Any) -> EventResult:
    instance = resolve_instance(db, instance_name, services.defaults)

    match kind:
        case EventKind.MESSAGES_UPSERT | EventKind.SEND_MESSAGE:
            return _ingest_messages(db, services.defaults, kind, instance, data)
        case EventKind.MESSAGES_UPDATE:
            return _update_statuses(db, kind, instance, data)
        case EventKind.CONNECTION_UPDATE:
            return _connection_update(db, kind, instance, data)
        case EventKind.QRCODE_UPDATED:
            return _qrcode_updated(db, kind, instance, data)
        case EventKind.APPLICATION_STARTUP:
            return _application_startup(db, kind, instance)
        case (
            EventKind.MESSAGES_DELETE
            | EventKind.CONTACTS_SET
            | EventKind.CONTACTS_UPSERT
            | EventKind.CONTACTS_UPDATE
            | EventKind.CHATS_SET
            | EventKind.CHATS_UPSERT
            | EventKind.CHATS_UPDATE
            | EventKind.CHATS_DELETE
            | EventKind.GROUPS_UPSERT
            | EventKind.GROUP_UPDATE
            | EventKind.GROUP_PARTICIPANTS_UPDATE
            | EventKind.PRESENCE_UPDATE
            | EventKind.CALL
            | EventKind.NEW_JWT_TOKEN
            | EventKind.TYPEBOT_START
            | EventKind.TYPEBOT_CHANGE_STATUS
        ):
            return _passthrough(kind, instance, data)
        case _:
            assert_never(kind)


# =============================================================================
# Async entry points
# =============================================================================

async def handle_delivery(services: Services, kind: EventKind, instance_name: str, data: Any) -> EventResult:
    """
    Validate, apply and broadcast one delivery.

    Raises:
        ValidationError: malformed payload
        EntityResolutionFailure, PersistenceFailure: transient store failure
            or the store did not answer within STORE_TIMEOUT_SECONDS
    """
    typed = validate_event_data(kind, data)
    timeout = services.settings.STORE_TIMEOUT_SECONDS
    try:
        result = await asyncio.wait_for(
            run_in_threadpool(process_event, services, kind, instance_name, typed),
            timeout=timeout,
        )
    except asyncio.TimeoutError as e:
        logger.error(f"{kind.value} for {instance_name} timed out after {timeout}s")
        raise PersistenceFailure(f"store did not answer within {timeout}s") from e

    services.hub.publish_all(result.events)
    return result


async def handle_envelope(services: Services, envelope: QueueEnvelope) -> None:
    """Queue worker handler: same path as a synchronous delivery."""
    kind = classify(envelope.eventKind)
    await handle_delivery(services, kind, envelope.instanceName, envelope.data)

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import Annotated, Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from crm_bridge.config import Settings, get_settings
from crm_bridge.errors import GatewayError, IngestError, SignatureError, UnknownEventKind, ValidationError
from crm_bridge.events import MESSAGE_KINDS, EventKind, classify
from crm_bridge.fanout import RealtimeEvent, ticket_room
from crm_bridge.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from crm_bridge.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from crm_bridge.models import Instance
from crm_bridge.pipeline import handle_delivery, handle_envelope, validate_event_data
from crm_bridge.queue import DeadLetterRecord, QueueEnvelope, QueueWorker
from crm_bridge.schemas import (
    ErrorResponse,
    HealthResponse,
    InstanceCreateRequest,
    InstanceResponse,
    WebhookPayload,
    WebhookResponse,
)
from crm_bridge.services import Services, build_services, close_services
from crm_bridge.signature import verify_signature
from crm_bridge.storage import check_db_health, insert_ignore, utc_now_iso

logger = logging.getLogger(__name__)

router = APIRouter()

ROOM_PREFIXES = ("ticket:", "instance:")


def get_services(request: Request) -> Services:
    return request.app.state.services


# =============================================================================
# Error Handlers
# =============================================================================

async def ingest_error_handler(request: Request, exc: IngestError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": f"{location}: {first.get('msg', 'invalid request')}"},
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    Used by orchestrators to determine if the app needs to be restarted.
    """
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response, services: Services = Depends(get_services)) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the schema
    is applied, otherwise 503.

    Optional subsystems that are off (no broker, no webhook secret) are
    listed under ``degraded`` without failing readiness.
    """
    healthy = await run_in_threadpool(check_db_health, services.session_factory)
    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied",
            degraded=services.degraded,
        )

    degraded = list(services.degraded)
    queue = None
    if services.broker is not None:
        try:
            queue = {
                "pending": await services.broker.pending_count(),
                "inFlight": await services.broker.in_flight_count(),
                "deadLettered": await services.broker.dead_letter_count(),
            }
        except Exception as e:
            logger.warning(f"Queue broker not answering: {e}")
            degraded.append("queue")

    return HealthResponse(status="ready", degraded=degraded, queue=queue)


# =============================================================================
# Webhook Route
# =============================================================================

def _first_message_id(kind: EventKind, data: Any) -> Optional[str]:
    if kind not in MESSAGE_KINDS:
        return None
    items = data if isinstance(data, list) else [data]
    for item in items:
        if isinstance(item, dict) and isinstance(item.get("key"), dict):
            return item["key"].get("id")
    return None


async def _enqueue(services: Services, kind: EventKind, instance_name: str, data: Any) -> bool:
    """Publish to the broker; False when there is none or it refused."""
    if services.broker is None:
        return False
    envelope = QueueEnvelope(eventKind=kind.value, instanceName=instance_name, data=data)
    try:
        await services.broker.publish(envelope)
    except Exception as e:
        logger.error(f"Failed to enqueue {kind.value} for {instance_name}: {e}")
        return False
    logger.info(f"Enqueued {kind.value} for {instance_name}: envelope {envelope.id}")
    return True


@router.post(
    "/webhook/evolution/{instance_name}",
    response_model=WebhookResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Malformed body or unknown event"},
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        500: {"model": ErrorResponse, "description": "Transient failure and no queue available"},
    },
)
async def webhook(
    instance_name: str,
    request: Request,
    services: Services = Depends(get_services),
) -> WebhookResponse:
    """
    Ingest one gateway delivery for an instance.

    - Verifies the HMAC signature of the raw body when a secret is set
    - Classifies the event and validates its payload shape
    - Processes inline, or enqueues when INGEST_MODE=queue
    - Idempotent: a redelivered message is acknowledged as ``duplicate``

    Headers:
        - Content-Type: application/json
        - X-Signature: ``sha256=<hex>``, ``sha1=<hex>`` or bare hex HMAC of the body
    """
    settings = services.settings
    raw_body = await request.body()
    logger.debug(f"Webhook for {instance_name}: {len(raw_body)} bytes")

    try:
        verify_signature(raw_body, settings.WEBHOOK_SECRET, request.headers.get(settings.WEBHOOK_SIGNATURE_HEADER))
    except SignatureError:
        logger.error(f"Invalid signature on webhook for {instance_name}")
        record_webhook_outcome("none", "invalid_signature")
        log_webhook_data(request, instance=instance_name, result="invalid_signature")
        raise

    try:
        payload = WebhookPayload.model_validate_json(raw_body)
    except PydanticValidationError as e:
        first = e.errors()[0]
        logger.error(f"Invalid webhook body for {instance_name}: {first.get('msg')}")
        record_webhook_outcome("none", "validation_error")
        log_webhook_data(request, instance=instance_name, result="validation_error")
        raise ValidationError(f"Invalid webhook body: {first.get('msg')}") from e

    try:
        kind = classify(payload.event)
    except UnknownEventKind:
        logger.warning(f"Unsupported event {payload.event!r} for {instance_name}")
        record_webhook_outcome("unknown", "unknown_event")
        log_webhook_data(request, event=payload.event, instance=instance_name, result="unknown_event")
        raise

    message_id = _first_message_id(kind, payload.data)

    def respond(result: str, processed: int = 0, duplicates: int = 0) -> WebhookResponse:
        record_webhook_outcome(kind.value, result)
        log_webhook_data(
            request,
            event=kind.value,
            instance=instance_name,
            message_id=message_id,
            dup=result == "duplicate",
            result=result,
        )
        return WebhookResponse(
            event=kind.value,
            instance=instance_name,
            timestamp=utc_now_iso(),
            result=result,
            processed=processed,
            duplicates=duplicates,
        )

    if settings.INGEST_MODE == "queue":
        try:
            validate_event_data(kind, payload.data)
        except ValidationError:
            record_webhook_outcome(kind.value, "validation_error")
            log_webhook_data(request, event=kind.value, instance=instance_name, result="validation_error")
            raise
        if await _enqueue(services, kind, instance_name, payload.data):
            return respond("queued")
        logger.warning(f"Queue unavailable, processing {kind.value} for {instance_name} synchronously")

    try:
        result = await handle_delivery(services, kind, instance_name, payload.data)
    except ValidationError:
        record_webhook_outcome(kind.value, "validation_error")
        log_webhook_data(request, event=kind.value, instance=instance_name, result="validation_error")
        raise
    except IngestError as e:
        if e.retryable and await _enqueue(services, kind, instance_name, payload.data):
            logger.warning(f"{kind.value} for {instance_name} deferred to the queue: {e.message}")
            return respond("deferred")
        record_webhook_outcome(kind.value, "error")
        log_webhook_data(request, event=kind.value, instance=instance_name, message_id=message_id, result="error")
        raise

    return respond(result.outcome, processed=result.processed, duplicates=result.duplicates)


# =============================================================================
# Realtime Route
# =============================================================================

def _typing_event(message: dict) -> Optional[RealtimeEvent]:
    ticket_id = message.get("ticketId")
    if isinstance(ticket_id, bool) or not isinstance(ticket_id, (int, str)) or not str(ticket_id).isdigit():
        return None
    return RealtimeEvent("user-typing", ticket_room(int(ticket_id)), {
        "ticketId": int(ticket_id),
        "isTyping": bool(message.get("isTyping", True)),
        "agentName": message.get("agentName"),
    })


@router.websocket("/ws")
async def realtime(websocket: WebSocket):
    """
    Realtime subscription socket.

    Client messages:
        ``ping`` (plain text) -> ``pong``
        ``{"action": "subscribe", "room": "ticket:12"}``
        ``{"action": "unsubscribe", "room": "instance:acme"}``
        ``{"action": "typing", "ticketId": 12, "isTyping": true, "agentName": "Bia"}``
          relayed to the rest of ``ticket:12`` as ``user-typing``

    Server pushes ``{event, room, data, timestamp}`` for every room joined.
    """
    hub = websocket.app.state.services.hub
    await websocket.accept()

    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
                continue

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_json({"event": "error", "error": "invalid JSON"})
                continue

            action = message.get("action") if isinstance(message, dict) else None
            room = message.get("room") if isinstance(message, dict) else None
            if action == "ping":
                await websocket.send_json({"event": "pong"})
            elif action == "typing":
                event = _typing_event(message)
                if event is None:
                    await websocket.send_json({"event": "error", "error": f"invalid ticketId: {message.get('ticketId')!r}"})
                else:
                    hub.publish(event, exclude=websocket)
            elif action not in ("subscribe", "unsubscribe"):
                await websocket.send_json({"event": "error", "error": f"unknown action: {action!r}"})
            elif not isinstance(room, str) or not room.startswith(ROOM_PREFIXES):
                await websocket.send_json({"event": "error", "error": f"invalid room: {room!r}"})
            elif action == "subscribe":
                hub.join(websocket, room)
                await websocket.send_json({"event": "subscribed", "room": room})
            else:
                hub.leave(websocket, room)
                await websocket.send_json({"event": "unsubscribed", "room": room})
    except WebSocketDisconnect:
        logger.debug("Realtime subscriber disconnected")
    finally:
        hub.leave_all(websocket)


# =============================================================================
# Dead-letter Routes
# =============================================================================

def _queue_unavailable() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"success": False, "error": "no queue broker configured"},
    )


@router.get(
    "/queue/dead-letters",
    response_model=list[DeadLetterRecord],
    responses={503: {"model": ErrorResponse, "description": "No queue broker"}},
)
async def list_dead_letters(
    limit: Annotated[int, Query(ge=1, le=1000, description="Maximum records to return")] = 100,
    services: Services = Depends(get_services),
):
    """List envelopes the worker gave up on, with the error that stopped them."""
    if services.broker is None:
        return _queue_unavailable()
    return await services.broker.dead_letters(limit)


@router.post(
    "/queue/dead-letters/{envelope_id}/replay",
    response_model=QueueEnvelope,
    responses={
        404: {"model": ErrorResponse, "description": "No dead-lettered envelope with this id"},
        503: {"model": ErrorResponse, "description": "No queue broker"},
    },
)
async def replay_dead_letter(envelope_id: str, services: Services = Depends(get_services)):
    """
    Put a dead-lettered envelope back on the queue.

    The envelope keeps its id and data; retryCount starts again from 0.
    """
    if services.broker is None:
        return _queue_unavailable()
    envelope = await services.broker.replay(envelope_id)
    if envelope is None:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"success": False, "error": f"dead-lettered envelope not found: {envelope_id}"},
        )
    logger.info(f"Replayed dead-lettered envelope {envelope_id} ({envelope.eventKind})")
    return envelope


# =============================================================================
# Provisioning Route
# =============================================================================

def _upsert_instance(services: Services, body: InstanceCreateRequest, webhook_url: Optional[str]) -> tuple[Instance, bool]:
    with services.session_factory() as db:
        now = utc_now_iso()
        try:
            created = insert_ignore(db, Instance, {
                "name": body.name,
                "connection_state": "created",
                "webhook_url": webhook_url,
                "events": body.events or [],
                "department_id": body.department_id or services.settings.DEFAULT_DEPARTMENT_ID,
                "created_via": "provisioning",
                "created_at": now,
                "updated_at": now,
            }) == 1
            instance = db.execute(select(Instance).where(Instance.name == body.name)).scalar_one()
            if not created:
                if webhook_url:
                    instance.webhook_url = webhook_url
                if body.events is not None:
                    instance.events = body.events
                if body.department_id:
                    instance.department_id = body.department_id
                instance.updated_at = now
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to provision instance {body.name}: {e}")
            raise IngestError(f"could not provision instance {body.name}") from e
        return instance, created


@router.post(
    "/instances",
    response_model=InstanceResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        200: {"model": InstanceResponse, "description": "Instance already existed and was updated"},
        400: {"model": ErrorResponse, "description": "Malformed body"},
        502: {"model": ErrorResponse, "description": "Gateway rejected the request"},
    },
)
async def create_instance(
    body: InstanceCreateRequest,
    response: Response,
    services: Services = Depends(get_services),
):
    """
    Provision an instance explicitly.

    Records the instance and, when a gateway is configured, asks it to
    create the session and point its webhook at this service.
    """
    settings = services.settings
    webhook_url = body.webhook_url
    if not webhook_url and settings.WEBHOOK_PUBLIC_URL:
        webhook_url = f"{settings.WEBHOOK_PUBLIC_URL.rstrip('/')}/webhook/evolution/{body.name}"

    instance, created = await run_in_threadpool(_upsert_instance, services, body, webhook_url)
    logger.info(f"Instance {'created' if created else 'updated'} via provisioning: {body.name}")

    if services.gateway is not None:
        try:
            if created:
                await services.gateway.create_instance(body.name, webhook_url, body.events)
            elif webhook_url:
                await services.gateway.set_webhook(body.name, webhook_url, body.events)
        except GatewayError as e:
            logger.error(f"Gateway provisioning failed for {body.name}: {e}")
            return JSONResponse(
                status_code=status.HTTP_502_BAD_GATEWAY,
                content={"success": False, "error": str(e)},
            )

    if not created:
        response.status_code = status.HTTP_200_OK
    return InstanceResponse(**instance.to_dict())


# =============================================================================
# Metrics Route
# =============================================================================

@router.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including:
    - http_requests_total: Total HTTP requests by method, path, status
    - request_latency_seconds: Request latency histogram
    - webhook_requests_total: Webhook outcomes by event and result
    - queue_envelopes_total: Queue outcomes
    - fanout_deliveries_total: Realtime deliveries and drops
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


# =============================================================================
# Application
# =============================================================================

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup: build store, hub, broker and gateway client, start the
        queue worker when a broker is up.
        Shutdown: stop the worker, then release everything.
        """
        services = await build_services(settings)
        app.state.services = services

        worker_task = None
        if services.broker is not None:
            services.worker = QueueWorker(
                services.broker,
                partial(handle_envelope, services),
                concurrency=settings.QUEUE_PREFETCH,
                max_retries=settings.QUEUE_MAX_RETRIES,
                retry_policy=services.queue_retry_policy,
                handler_timeout=settings.QUEUE_HANDLER_TIMEOUT,
                poll_timeout=settings.QUEUE_POLL_TIMEOUT,
            )
            worker_task = asyncio.create_task(services.worker.run())

        logger.info(f"crm-bridge started: ingest_mode={settings.INGEST_MODE}, degraded={services.degraded}")
        try:
            yield
        finally:
            if services.worker is not None:
                services.worker.stop()
            if worker_task is not None:
                await worker_task
            await close_services(services)
            logger.info("crm-bridge stopped")

    app = FastAPI(
        title="crm-bridge",
        description="WhatsApp gateway webhook ingestion for the CRM",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_exception_handler(IngestError, ingest_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)
    return app


app = create_app()

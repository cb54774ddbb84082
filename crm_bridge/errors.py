"""
Error taxonomy for the ingestion pipeline.

Every failure the webhook route can surface derives from IngestError and
carries the HTTP status it maps to, plus whether a retry through the queue
can help. DuplicateDelivery is not an IngestError: a repeated
delivery is a successful no-op.
"""

from typing import Optional


class IngestError(Exception):
    """Base class for failures surfaced by the ingestion pipeline."""

    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_body(self) -> dict:
        return {"success": False, "error": self.message}


class SignatureError(IngestError):
    """Request body was not signed by a trusted sender."""

    status_code = 401


class ValidationError(IngestError):
    """Body or payload shape is malformed."""

    status_code = 400


class UnknownEventKind(IngestError):
    """Event name outside the supported taxonomy."""

    status_code = 400

    def __init__(self, event: Optional[str], supported: list[str]):
        super().__init__(f"Unsupported event: {event!r}")
        self.event = event
        self.supported = supported

    def to_body(self) -> dict:
        body = super().to_body()
        body["supportedEvents"] = self.supported
        return body


class EntityResolutionFailure(IngestError):
    """Transient store failure while resolving instance, customer or ticket."""

    retryable = True


class PersistenceFailure(IngestError):
    """Transient store failure while writing a message."""

    retryable = True


class DownstreamTimeout(IngestError):
    """Broker or fanout did not answer in time. Never fails the main write."""

    status_code = 503
    retryable = True


class DuplicateDelivery(Exception):
    """The message was already persisted. Callers treat this as success."""

    def __init__(self, instance_name: str, external_id: str):
        super().__init__(f"{instance_name}/{external_id} already processed")
        self.instance_name = instance_name
        self.external_id = external_id


class GatewayError(Exception):
    """Outbound gateway call failed after retries."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

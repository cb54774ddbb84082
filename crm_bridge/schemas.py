"""
Pydantic schemas for request/response validation.

This module contains:
- The webhook body envelope and the per-event payload shapes
- Response models for API responses
- Provisioning request model
"""

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Webhook Request Models
# =============================================================================

class WebhookPayload(BaseModel):
    """
    Body of a gateway webhook delivery.

    Only ``event`` and ``data`` drive processing; the gateway also sends
    ``instance``, ``date_time``, ``sender``, ``server_url`` and ``apikey``,
    which are accepted and ignored.
    """
    event: str = Field(..., min_length=1, description="Gateway event name")
    data: Union[dict[str, Any], list[Any], None] = Field(
        None,
        description="Event payload, a single object or a list of objects",
    )
    instance: Optional[str] = Field(None, description="Instance name as seen by the gateway")

    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "examples": [
                {
                    "event": "MESSAGES_UPSERT",
                    "data": [
                        {
                            "key": {"remoteJid": "5511999999999@s.whatsapp.net", "fromMe": False, "id": "M1"},
                            "pushName": "Ana",
                            "messageTimestamp": 1700000000,
                            "message": {"conversation": "hi"},
                        }
                    ],
                }
            ]
        },
    )


class MessageKey(BaseModel):
    remote_jid: str = Field(..., alias="remoteJid", min_length=1)
    from_me: bool = Field(False, alias="fromMe")
    id: str = Field(..., min_length=1)
    participant: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class WhatsAppMessage(BaseModel):
    """One item of a MESSAGES_UPSERT / SEND_MESSAGE payload."""
    key: MessageKey
    push_name: Optional[str] = Field(None, alias="pushName")
    message: Optional[dict[str, Any]] = None
    message_type: Optional[str] = Field(None, alias="messageType")
    message_timestamp: Optional[int] = Field(None, alias="messageTimestamp")
    status: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @field_validator("message_timestamp", mode="before")
    @classmethod
    def coerce_timestamp(cls, v: Any) -> Optional[int]:
        """Accept epoch seconds as int, numeric string or protobuf long."""
        if v is None or v == "":
            return None
        if isinstance(v, dict):
            v = v.get("low")
        try:
            return int(v)
        except (TypeError, ValueError):
            raise ValueError("messageTimestamp must be epoch seconds")


class MessageStatusUpdate(BaseModel):
    """One item of a MESSAGES_UPDATE payload."""
    key_id: Optional[str] = Field(None, alias="keyId")
    message_id: Optional[str] = Field(None, alias="messageId")
    key: Optional[MessageKey] = None
    remote_jid: Optional[str] = Field(None, alias="remoteJid")
    status: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @property
    def external_id(self) -> Optional[str]:
        if self.key is not None:
            return self.key.id
        return self.key_id or self.message_id


class ConnectionUpdate(BaseModel):
    instance: Optional[str] = None
    state: str = Field(..., min_length=1)
    status_reason: Optional[int] = Field(None, alias="statusReason")
    is_new_login: Optional[bool] = Field(None, alias="isNewLogin")

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class QrCodeUpdate(BaseModel):
    """
    QRCODE_UPDATED payload.

    Older gateways send ``qrcode`` as the code string, newer ones as an
    object with ``base64``, ``code`` and ``pairingCode``.
    """
    instance: Optional[str] = None
    qrcode: Union[str, dict[str, Any]]
    pairing_code: Optional[str] = Field(None, alias="pairingCode")

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @property
    def code(self) -> Optional[str]:
        if isinstance(self.qrcode, dict):
            return self.qrcode.get("base64") or self.qrcode.get("code")
        return self.qrcode

    @property
    def pairing(self) -> Optional[str]:
        if self.pairing_code:
            return self.pairing_code
        if isinstance(self.qrcode, dict):
            return self.qrcode.get("pairingCode")
        return None


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for an accepted webhook delivery."""
    success: bool = Field(default=True)
    event: str = Field(..., description="Canonical event name")
    instance: str = Field(..., description="Instance the delivery was addressed to")
    timestamp: str = Field(..., description="Server time, ISO-8601 UTC")
    result: str = Field(..., description="processed, duplicate, queued, deferred or ignored")
    processed: int = Field(default=0, ge=0, description="Items written")
    duplicates: int = Field(default=0, ge=0, description="Items skipped as already processed")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    success: bool = Field(default=False)
    error: str = Field(..., description="Error description")
    supportedEvents: Optional[list[str]] = Field(None, description="Present for unknown events")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
    degraded: list[str] = Field(default_factory=list, description="Optional subsystems running degraded")
    queue: Optional[dict[str, int]] = Field(None, description="Pending and in-flight envelopes when a broker is up")


class InstanceCreateRequest(BaseModel):
    """Explicit instance provisioning."""
    name: str = Field(..., min_length=1, max_length=100, pattern=r"^[A-Za-z0-9_.-]+$")
    webhook_url: Optional[str] = Field(None, alias="webhookUrl")
    events: Optional[list[str]] = None
    department_id: Optional[str] = Field(None, alias="departmentId")

    model_config = ConfigDict(populate_by_name=True)


class InstanceResponse(BaseModel):
    id: int
    name: str
    connectionState: str
    webhookUrl: Optional[str] = None
    events: list[str] = Field(default_factory=list)
    departmentId: Optional[str] = None
    createdVia: str
    updatedAt: str

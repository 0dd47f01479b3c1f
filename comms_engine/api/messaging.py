"""
Messaging API: direct SMS and WhatsApp sends.

Every send writes a Communication audit row, including rejected ones, so the
response carries the outcome instead of raising for provider failures.
"""

from datetime import datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ..core import OptionalUserIdDep, SessionDep, TenantIdDep, get_channel_providers
from ..models import CommunicationType
from ..schemas import SendResultResponse
from ..services.channels import ChannelProviders, SendResult
from ..services.messaging import MessagingService


router = APIRouter(prefix="/messaging", tags=["messaging"])


# =============================================================================
# REQUEST/RESPONSE SCHEMAS
# =============================================================================


class SMSRequest(BaseModel):
    to: str = Field(..., description="Phone number, optionally with leading +")
    message: str


class TemplateSMSRequest(BaseModel):
    to: str
    template_id: UUID
    variables: dict[str, Any] = Field(default_factory=dict)


class BulkSMSItem(BaseModel):
    to: str
    message: str


class BulkSMSRequest(BaseModel):
    messages: list[BulkSMSItem] = Field(..., min_length=1, max_length=1000)


class BulkRecipientResponse(BaseModel):
    to: str
    success: bool
    error: str | None = None


class BulkSMSResponse(BaseModel):
    success: int
    failed: int
    results: list[BulkRecipientResponse]


class SMSStatusResponse(BaseModel):
    status: str
    error_code: int | str | None = None
    error_message: str | None = None


class WhatsAppTextRequest(BaseModel):
    to: str
    message: str = Field(..., min_length=1, max_length=4096)


class WhatsAppTemplateRequest(BaseModel):
    to: str
    template_name: str = Field(..., min_length=1)
    parameters: list[str] = Field(default_factory=list)
    language: str = "en"


class WhatsAppMediaRequest(BaseModel):
    to: str
    media_type: Literal["image", "video", "audio", "document"]
    media_url: str
    caption: str | None = None


class WhatsAppInteractiveRequest(BaseModel):
    to: str
    interactive: dict[str, Any]


class ChannelStatsResponse(BaseModel):
    channel: str
    total: int
    sent: int
    delivered: int
    failed: int
    pending: int


# =============================================================================
# DEPENDENCIES
# =============================================================================


def get_messaging_service(
    session: SessionDep,
    providers: Annotated[ChannelProviders, Depends(get_channel_providers)],
) -> MessagingService:
    return MessagingService(session, providers)


MessagingServiceDep = Annotated[MessagingService, Depends(get_messaging_service)]


def _result(result: SendResult) -> SendResultResponse:
    return SendResultResponse(
        success=result.success,
        provider_message_id=result.provider_message_id,
        error=result.error,
    )


def _sender(user_id: UUID | None) -> str | None:
    return str(user_id) if user_id else None


# =============================================================================
# ENDPOINTS
# =============================================================================


@router.get("/providers", summary="Which channel providers are configured")
async def get_provider_status(
    providers: Annotated[ChannelProviders, Depends(get_channel_providers)],
) -> dict[str, bool]:
    return providers.status()


@router.post("/sms", response_model=SendResultResponse, summary="Send an SMS")
async def send_sms(
    payload: SMSRequest,
    tenant_id: TenantIdDep,
    user_id: OptionalUserIdDep,
    service: MessagingServiceDep,
):
    result = await service.send_sms(tenant_id, payload.to, payload.message, _sender(user_id))
    return _result(result)


@router.post("/sms/template", response_model=SendResultResponse, summary="Send a templated SMS")
async def send_template_sms(
    payload: TemplateSMSRequest,
    tenant_id: TenantIdDep,
    user_id: OptionalUserIdDep,
    service: MessagingServiceDep,
):
    result = await service.send_template_sms(
        tenant_id, payload.to, payload.template_id, payload.variables, _sender(user_id)
    )
    return _result(result)


@router.post("/sms/bulk", response_model=BulkSMSResponse, summary="Send SMS to many recipients")
async def send_bulk_sms(
    payload: BulkSMSRequest,
    tenant_id: TenantIdDep,
    user_id: OptionalUserIdDep,
    service: MessagingServiceDep,
):
    report = await service.send_bulk_sms(
        tenant_id,
        [(item.to, item.message) for item in payload.messages],
        _sender(user_id),
    )
    return BulkSMSResponse(
        success=report.success,
        failed=report.failed,
        results=[
            BulkRecipientResponse(to=r.to, success=r.success, error=r.error)
            for r in report.results
        ],
    )


@router.get(
    "/sms/{message_sid}/status",
    response_model=SMSStatusResponse,
    summary="Provider delivery status of an SMS",
)
async def get_sms_status(
    message_sid: str,
    tenant_id: TenantIdDep,
    service: MessagingServiceDep,
):
    return SMSStatusResponse(**await service.get_sms_delivery_status(message_sid))


@router.post("/whatsapp/text", response_model=SendResultResponse, summary="Send a WhatsApp text")
async def send_whatsapp_text(
    payload: WhatsAppTextRequest,
    tenant_id: TenantIdDep,
    user_id: OptionalUserIdDep,
    service: MessagingServiceDep,
):
    result = await service.send_whatsapp_text(tenant_id, payload.to, payload.message, _sender(user_id))
    return _result(result)


@router.post(
    "/whatsapp/template",
    response_model=SendResultResponse,
    summary="Send an approved WhatsApp template",
)
async def send_whatsapp_template(
    payload: WhatsAppTemplateRequest,
    tenant_id: TenantIdDep,
    user_id: OptionalUserIdDep,
    service: MessagingServiceDep,
):
    result = await service.send_whatsapp_template(
        tenant_id,
        payload.to,
        payload.template_name,
        parameters=payload.parameters,
        language=payload.language,
        sender_id=_sender(user_id),
    )
    return _result(result)


@router.post("/whatsapp/media", response_model=SendResultResponse, summary="Send WhatsApp media")
async def send_whatsapp_media(
    payload: WhatsAppMediaRequest,
    tenant_id: TenantIdDep,
    user_id: OptionalUserIdDep,
    service: MessagingServiceDep,
):
    result = await service.send_whatsapp_media(
        tenant_id,
        payload.to,
        payload.media_type,
        payload.media_url,
        caption=payload.caption,
        sender_id=_sender(user_id),
    )
    return _result(result)


@router.post(
    "/whatsapp/interactive",
    response_model=SendResultResponse,
    summary="Send an interactive WhatsApp message",
)
async def send_whatsapp_interactive(
    payload: WhatsAppInteractiveRequest,
    tenant_id: TenantIdDep,
    user_id: OptionalUserIdDep,
    service: MessagingServiceDep,
):
    result = await service.send_whatsapp_interactive(
        tenant_id, payload.to, payload.interactive, _sender(user_id)
    )
    return _result(result)


@router.get("/stats", response_model=ChannelStatsResponse, summary="Delivery counts for a channel")
async def get_channel_stats(
    tenant_id: TenantIdDep,
    service: MessagingServiceDep,
    channel: CommunicationType = Query(default=CommunicationType.SMS),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
):
    stats = await service.get_channel_stats(channel, tenant_id=tenant_id, start=start, end=end)
    return ChannelStatsResponse(
        channel=channel.value,
        total=stats.total,
        sent=stats.sent,
        delivered=stats.delivered,
        failed=stats.failed,
        pending=stats.pending,
    )

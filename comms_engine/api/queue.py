"""
Email Queue API: accept emails for delivery and administer the queue.

Acceptance (202) means the message is durably stored; delivery happens in
the queue processor.
"""

from datetime import datetime
from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, EmailStr, Field

from ..core import SessionDep, SettingsDep, TenantIdDep, get_priority_index, get_queue_processor
from ..models import MessagePriority, QueueStatus
from ..schemas import CountResponse
from ..services.message_queue import MessageQueueService
from ..services.priority_index import PriorityIndex
from ..services.queue_processor import QueueProcessor


router = APIRouter(prefix="/queue", tags=["queue"])


# =============================================================================
# REQUEST/RESPONSE SCHEMAS
# =============================================================================


class EnqueueEmailRequest(BaseModel):
    """Email to deliver."""
    recipient: EmailStr
    subject: str = Field(..., min_length=1, max_length=998)
    html_content: str = Field(..., min_length=1)
    text_content: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    priority: MessagePriority = MessagePriority.NORMAL
    scheduled_at: datetime | None = Field(
        default=None,
        description="Earliest delivery time (default: now)",
    )


class EnqueueTemplateRequest(BaseModel):
    """Templated email to deliver."""
    template_id: UUID
    recipient: EmailStr
    variables: dict[str, Any] = Field(default_factory=dict)
    priority: MessagePriority = MessagePriority.NORMAL
    scheduled_at: datetime | None = None


class EnqueueResponse(BaseModel):
    message_id: UUID
    status: str = QueueStatus.PENDING.value


class QueuedMessageResponse(BaseModel):
    """Delivery state of a queued email."""
    id: UUID
    recipient: str
    subject: str
    priority: int
    status: str
    attempts: int
    max_attempts: int
    error_message: str | None
    scheduled_at: datetime
    processed_at: datetime | None
    created_at: datetime


class QueueStatsResponse(BaseModel):
    pending: int
    processing: int
    sent: int
    failed: int
    total: int


class ProcessorStatusResponse(BaseModel):
    running: bool
    processing: bool
    interval_seconds: float
    batch_size: int
    last_cycle_at: str | None
    last_cycle_sent: int
    last_cycle_failed: int


class CycleReportResponse(BaseModel):
    skipped: bool
    attempted: int
    sent: int
    failed: int
    deferred: int
    not_due: int
    stale_dropped: int
    errors: list[str]


# =============================================================================
# DEPENDENCIES
# =============================================================================


def get_queue_service(
    session: SessionDep,
    settings: SettingsDep,
    index: Annotated[PriorityIndex, Depends(get_priority_index)],
) -> MessageQueueService:
    return MessageQueueService(session, index, default_max_attempts=settings.queue_max_attempts)


QueueServiceDep = Annotated[MessageQueueService, Depends(get_queue_service)]
QueueProcessorDep = Annotated[QueueProcessor, Depends(get_queue_processor)]


# =============================================================================
# ENDPOINTS
# =============================================================================


@router.post(
    "/emails",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue an email",
)
async def enqueue_email(
    payload: EnqueueEmailRequest,
    tenant_id: TenantIdDep,
    service: QueueServiceDep,
):
    message_id = await service.enqueue(
        tenant_id=tenant_id,
        recipient=payload.recipient,
        subject=payload.subject,
        html_content=payload.html_content,
        text_content=payload.text_content,
        variables=payload.variables,
        priority=payload.priority,
        scheduled_at=payload.scheduled_at,
    )
    return EnqueueResponse(message_id=message_id)


@router.post(
    "/emails/template",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue an email rendered from a template",
)
async def enqueue_template_email(
    payload: EnqueueTemplateRequest,
    tenant_id: TenantIdDep,
    service: QueueServiceDep,
):
    message_id = await service.enqueue_from_template(
        tenant_id=tenant_id,
        template_id=payload.template_id,
        recipient=payload.recipient,
        variables=payload.variables,
        priority=payload.priority,
        scheduled_at=payload.scheduled_at,
    )
    return EnqueueResponse(message_id=message_id)


@router.get(
    "/emails/{message_id}",
    response_model=QueuedMessageResponse,
    summary="Get delivery state of a queued email",
)
async def get_queued_email(
    message_id: UUID,
    tenant_id: TenantIdDep,
    service: QueueServiceDep,
):
    message = await service.get_message(tenant_id, message_id)
    return QueuedMessageResponse(
        id=message.id,
        recipient=message.recipient,
        subject=message.subject,
        priority=message.priority,
        status=message.status.value,
        attempts=message.attempts,
        max_attempts=message.max_attempts,
        error_message=message.error_message,
        scheduled_at=message.scheduled_at,
        processed_at=message.processed_at,
        created_at=message.created_at,
    )


@router.get("/stats", response_model=QueueStatsResponse, summary="Queue counts by status")
async def get_queue_stats(
    tenant_id: TenantIdDep,
    service: QueueServiceDep,
):
    stats = await service.get_stats(tenant_id)
    return QueueStatsResponse(
        pending=stats.pending,
        processing=stats.processing,
        sent=stats.sent,
        failed=stats.failed,
        total=stats.total,
    )


@router.post("/retry", response_model=CountResponse, summary="Re-queue failed emails")
async def retry_failed_emails(
    tenant_id: TenantIdDep,
    service: QueueServiceDep,
):
    count = await service.retry_failed(tenant_id)
    return CountResponse(count=count, message=f"{count} failed emails re-queued")


@router.post("/reindex", response_model=CountResponse, summary="Rebuild the priority index")
async def reindex_pending_emails(
    tenant_id: TenantIdDep,
    service: QueueServiceDep,
):
    count = await service.reindex_pending(tenant_id)
    return CountResponse(count=count, message=f"{count} pending emails indexed")


@router.post("/cleanup", response_model=CountResponse, summary="Purge old sent and failed emails")
async def cleanup_emails(
    service: QueueServiceDep,
    settings: SettingsDep,
    older_than_days: int | None = Query(default=None, ge=1, le=3650),
):
    count = await service.cleanup(older_than_days or settings.queue_retention_days)
    return CountResponse(count=count, message=f"{count} old emails deleted")


@router.get("/processor", response_model=ProcessorStatusResponse, summary="Queue processor status")
async def get_processor_status(processor: QueueProcessorDep):
    return ProcessorStatusResponse(**processor.status())


@router.post(
    "/processor/cycle",
    response_model=CycleReportResponse,
    summary="Run one processing cycle now",
)
async def run_processor_cycle(processor: QueueProcessorDep):
    report = await processor.process_cycle()
    return CycleReportResponse(
        skipped=report.skipped,
        attempted=report.attempted,
        sent=report.sent,
        failed=report.failed,
        deferred=report.deferred,
        not_due=report.not_due,
        stale_dropped=report.stale_dropped,
        errors=report.errors,
    )

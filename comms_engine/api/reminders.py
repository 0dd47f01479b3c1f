"""
Reminders API: administer form reminder series.

The reminder cron job normally drives scheduling and sending; these
endpoints run the same operations on demand.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ..core import NotFoundError, SessionDep, SettingsDep, TenantIdDep, get_channel_providers
from ..models import FormAccess
from ..schemas import CountResponse, SendResultResponse
from ..services.channels import ChannelProviders
from ..services.reminder_engine import ReminderConfig, ReminderEngine


router = APIRouter(prefix="/reminders", tags=["reminders"])


# =============================================================================
# REQUEST/RESPONSE SCHEMAS
# =============================================================================


class ScheduleRequest(BaseModel):
    """Optional overrides of the configured scheduling rules."""
    exclude_weekends: bool | None = None
    business_hours_only: bool | None = None
    timezone: str | None = Field(default=None, description="IANA name, e.g. Europe/London")


class ScheduleResponse(BaseModel):
    scheduled: int
    skipped: int


class ProcessResponse(BaseModel):
    total_scheduled: int = Field(..., description="Due series picked up")
    total_sent: int
    total_skipped: int
    total_failed: int
    by_interval: dict[int, int] = Field(..., description="Sent count by reminder number")


class ReminderStatsResponse(BaseModel):
    total_reminders: int
    pending_reminders: int
    sent_today: int
    completion_rate: float = Field(..., description="Submitted forms as a percentage of all")


# =============================================================================
# DEPENDENCIES
# =============================================================================


def get_reminder_config(settings: SettingsDep) -> ReminderConfig:
    return ReminderConfig.from_settings(settings)


def get_reminder_engine(
    session: SessionDep,
    settings: SettingsDep,
    config: Annotated[ReminderConfig, Depends(get_reminder_config)],
    providers: Annotated[ChannelProviders, Depends(get_channel_providers)],
) -> ReminderEngine:
    return ReminderEngine(
        session,
        providers.email,
        config=config,
        frontend_url=settings.frontend_url,
    )


ReminderEngineDep = Annotated[ReminderEngine, Depends(get_reminder_engine)]


async def _require_tenant_access(session, access_id: UUID, tenant_id: UUID) -> None:
    access = await session.get(FormAccess, access_id)
    if access is None or access.tenant_id != tenant_id:
        raise NotFoundError(f"Form access {access_id} not found")


# =============================================================================
# ENDPOINTS
# =============================================================================


@router.post("/schedule", response_model=ScheduleResponse, summary="Schedule reminders for open forms")
async def schedule_reminders(
    tenant_id: TenantIdDep,
    engine: ReminderEngineDep,
    config: Annotated[ReminderConfig, Depends(get_reminder_config)],
    payload: ScheduleRequest | None = None,
):
    if payload is not None:
        for name, value in payload.model_dump(exclude_none=True).items():
            setattr(config, name, value)
    result = await engine.schedule_reminders(tenant_id, config)
    return ScheduleResponse(scheduled=result.scheduled, skipped=result.skipped)


@router.post("/process", response_model=ProcessResponse, summary="Send all due reminders")
async def process_reminders(
    tenant_id: TenantIdDep,
    engine: ReminderEngineDep,
):
    stats = await engine.process_pending_reminders()
    return ProcessResponse(
        total_scheduled=stats.total_scheduled,
        total_sent=stats.total_sent,
        total_skipped=stats.total_skipped,
        total_failed=stats.total_failed,
        by_interval=stats.by_interval,
    )


@router.post("/cleanup", response_model=CountResponse, summary="Purge old series of submitted forms")
async def cleanup_reminders(
    tenant_id: TenantIdDep,
    engine: ReminderEngineDep,
    settings: SettingsDep,
    days_old: int | None = Query(default=None, ge=1, le=3650),
):
    count = await engine.cleanup_old_reminders(days_old or settings.reminder_retention_days)
    return CountResponse(count=count, message=f"{count} reminder logs deleted")


@router.get("/stats", response_model=ReminderStatsResponse, summary="Reminder statistics")
async def get_reminder_stats(
    tenant_id: TenantIdDep,
    engine: ReminderEngineDep,
):
    stats = await engine.get_reminder_stats(tenant_id)
    return ReminderStatsResponse(
        total_reminders=stats.total_reminders,
        pending_reminders=stats.pending_reminders,
        sent_today=stats.sent_today,
        completion_rate=stats.completion_rate,
    )


@router.post("/{access_id}/fire", response_model=SendResultResponse, summary="Send a reminder now")
async def fire_reminder(
    access_id: UUID,
    tenant_id: TenantIdDep,
    session: SessionDep,
    engine: ReminderEngineDep,
):
    await _require_tenant_access(session, access_id, tenant_id)
    result = await engine.fire_reminder(access_id)
    return SendResultResponse(
        success=result.success,
        provider_message_id=result.provider_message_id,
        error=result.error,
    )


@router.delete("/{access_id}", response_model=CountResponse, summary="Cancel a reminder series")
async def cancel_reminders(
    access_id: UUID,
    tenant_id: TenantIdDep,
    session: SessionDep,
    engine: ReminderEngineDep,
):
    await _require_tenant_access(session, access_id, tenant_id)
    count = await engine.cancel_reminders(access_id)
    return CountResponse(count=count, message=f"{count} reminder series cancelled")

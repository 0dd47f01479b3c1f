"""
Notifications API: fan-out, inbox, preferences and live streams.

Live delivery:
1. ``GET /notifications/stream`` - Server-Sent Events for the calling user
2. ``/notifications/ws`` - WebSocket that also accepts client actions
   (``mark_read``, ``mark_all_read``, ``update_preferences``, ``ping``)
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from ..core import (
    CommsError,
    NotFoundError,
    SessionDep,
    SettingsDep,
    TenantIdDep,
    UserIdDep,
    get_channel_providers,
    get_connection_directory,
)
from ..models import DeliveryFrequency, Notification, NotificationPriority, NotificationType
from ..schemas import CountResponse, PageInfo
from ..services.channels import ChannelProviders
from ..services.notification_service import NotificationService, PreferenceUpdate
from ..services.realtime import ConnectionDirectory


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])

SSE_PING_SECONDS = 15


# =============================================================================
# REQUEST/RESPONSE SCHEMAS
# =============================================================================


class NotificationContent(BaseModel):
    """Fields shared by every send request."""
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1)
    type: NotificationType = NotificationType.INFO
    category: str = Field(default="GENERAL", max_length=100)
    priority: NotificationPriority = NotificationPriority.MEDIUM
    data: dict[str, Any] = Field(default_factory=dict)


class SendNotificationRequest(NotificationContent):
    user_id: UUID
    action_type: str | None = None
    related_entity_id: UUID | None = None


class BulkNotificationRequest(NotificationContent):
    user_ids: list[UUID] = Field(..., min_length=1)
    action_type: str | None = None


class RoleNotificationRequest(NotificationContent):
    roles: list[str] = Field(..., min_length=1)


class AnnouncementRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1)
    priority: NotificationPriority = NotificationPriority.MEDIUM
    target_roles: list[str] | None = None
    target_users: list[UUID] | None = None


class SentNotificationsResponse(BaseModel):
    notification_ids: list[UUID]
    count: int


class NotificationResponse(BaseModel):
    id: UUID
    title: str
    message: str
    type: str
    category: str
    action_type: str | None
    priority: str
    related_entity_id: UUID | None
    data: dict[str, Any]
    read: bool
    created_at: datetime


class NotificationListResponse(BaseModel):
    notifications: list[NotificationResponse]
    page: PageInfo
    unread_count: int


class PreferencesUpdateRequest(BaseModel):
    """Partial preference update; omitted fields are unchanged."""
    email_enabled: bool | None = None
    sms_enabled: bool | None = None
    whatsapp_enabled: bool | None = None
    push_enabled: bool | None = None
    frequency: DeliveryFrequency | None = None
    categories: dict[str, bool] | None = None

    def to_update(self) -> PreferenceUpdate:
        return PreferenceUpdate(**self.model_dump())


class PreferencesResponse(BaseModel):
    email_enabled: bool
    sms_enabled: bool
    whatsapp_enabled: bool
    push_enabled: bool
    frequency: str
    categories: dict[str, bool]
    is_default: bool = False


class NotificationStatsResponse(BaseModel):
    total: int
    unread: int
    by_type: dict[str, int]
    by_category: dict[str, int]


class ConnectionsResponse(BaseModel):
    connected: int


DEFAULT_PREFERENCES = PreferencesResponse(
    email_enabled=True,
    sms_enabled=False,
    whatsapp_enabled=False,
    push_enabled=True,
    frequency=DeliveryFrequency.IMMEDIATE.value,
    categories={},
    is_default=True,
)


# =============================================================================
# DEPENDENCIES
# =============================================================================


def get_notification_service(
    session: SessionDep,
    settings: SettingsDep,
    directory: Annotated[ConnectionDirectory, Depends(get_connection_directory)],
    providers: Annotated[ChannelProviders, Depends(get_channel_providers)],
) -> NotificationService:
    return NotificationService(
        session,
        directory,
        providers,
        dispatch_concurrency=settings.notification_dispatch_concurrency,
    )


NotificationServiceDep = Annotated[NotificationService, Depends(get_notification_service)]


def _to_response(notification: Notification) -> NotificationResponse:
    return NotificationResponse(
        id=notification.id,
        title=notification.title,
        message=notification.message,
        type=notification.type.value,
        category=notification.category,
        action_type=notification.action_type,
        priority=notification.priority.value,
        related_entity_id=notification.related_entity_id,
        data=notification.data or {},
        read=notification.read,
        created_at=notification.created_at,
    )


def _preferences_response(preference) -> PreferencesResponse:
    if preference is None:
        return DEFAULT_PREFERENCES
    return PreferencesResponse(
        email_enabled=preference.email_enabled,
        sms_enabled=preference.sms_enabled,
        whatsapp_enabled=preference.whatsapp_enabled,
        push_enabled=preference.push_enabled,
        frequency=preference.frequency.value,
        categories=preference.categories or {},
    )


async def _owned_notification(
    service: NotificationService,
    notification_id: UUID,
    tenant_id: UUID,
    user_id: UUID,
) -> Notification:
    """Another user's notification is reported as missing."""
    notification = await service.get_notification(notification_id)
    if notification.user_id != user_id or notification.tenant_id != tenant_id:
        raise NotFoundError(f"Notification {notification_id} not found")
    return notification


def _sent(ids: list[UUID]) -> SentNotificationsResponse:
    return SentNotificationsResponse(notification_ids=ids, count=len(ids))


# =============================================================================
# SENDING ENDPOINTS
# =============================================================================


@router.post(
    "",
    response_model=SentNotificationsResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Notify one user",
)
async def send_notification(
    payload: SendNotificationRequest,
    tenant_id: TenantIdDep,
    service: NotificationServiceDep,
):
    notification_id = await service.send_notification(
        tenant_id,
        payload.user_id,
        payload.title,
        payload.message,
        type=payload.type,
        category=payload.category,
        action_type=payload.action_type,
        priority=payload.priority,
        related_entity_id=payload.related_entity_id,
        data=payload.data,
    )
    return _sent([notification_id])


@router.post(
    "/bulk",
    response_model=SentNotificationsResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Notify a list of users",
)
async def send_bulk_notification(
    payload: BulkNotificationRequest,
    tenant_id: TenantIdDep,
    service: NotificationServiceDep,
):
    ids = await service.send_bulk_notification(
        tenant_id,
        payload.user_ids,
        payload.title,
        payload.message,
        type=payload.type,
        category=payload.category,
        action_type=payload.action_type,
        priority=payload.priority,
        data=payload.data,
    )
    return _sent(ids)


@router.post(
    "/role",
    response_model=SentNotificationsResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Notify every active user holding a role",
)
async def send_role_notification(
    payload: RoleNotificationRequest,
    tenant_id: TenantIdDep,
    service: NotificationServiceDep,
):
    ids = await service.send_role_notification(
        tenant_id,
        payload.roles,
        payload.title,
        payload.message,
        type=payload.type,
        category=payload.category,
        priority=payload.priority,
        data=payload.data,
    )
    return _sent(ids)


@router.post(
    "/tenant",
    response_model=SentNotificationsResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Notify every active user of the tenant",
)
async def send_tenant_notification(
    payload: NotificationContent,
    tenant_id: TenantIdDep,
    service: NotificationServiceDep,
):
    ids = await service.send_tenant_notification(
        tenant_id,
        payload.title,
        payload.message,
        type=payload.type,
        category=payload.category,
        priority=payload.priority,
        data=payload.data,
    )
    return _sent(ids)


@router.post(
    "/announcements",
    response_model=SentNotificationsResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Send an announcement",
)
async def send_announcement(
    payload: AnnouncementRequest,
    tenant_id: TenantIdDep,
    service: NotificationServiceDep,
):
    ids = await service.send_announcement(
        tenant_id,
        payload.title,
        payload.message,
        priority=payload.priority,
        target_roles=payload.target_roles,
        target_users=payload.target_users,
    )
    return _sent(ids)


# =============================================================================
# INBOX ENDPOINTS
# =============================================================================


@router.get("", response_model=NotificationListResponse, summary="List the caller's notifications")
async def list_notifications(
    tenant_id: TenantIdDep,
    user_id: UserIdDep,
    service: NotificationServiceDep,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    unread_only: bool = Query(default=False),
    sort_by: str = Query(default="created_at"),
    sort_order: str = Query(default="desc"),
):
    notifications = await service.get_user_notifications(
        user_id,
        limit=limit,
        offset=offset,
        unread_only=unread_only,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    total = await service.get_user_notification_count(user_id, unread_only=unread_only)
    unread = await service.get_user_notification_count(user_id, unread_only=True)
    return NotificationListResponse(
        notifications=[_to_response(n) for n in notifications],
        page=PageInfo.create(total=total, limit=limit, offset=offset),
        unread_count=unread,
    )


@router.get("/count", response_model=CountResponse, summary="Count the caller's notifications")
async def count_notifications(
    user_id: UserIdDep,
    service: NotificationServiceDep,
    unread_only: bool = Query(default=True),
):
    count = await service.get_user_notification_count(user_id, unread_only=unread_only)
    return CountResponse(count=count)


@router.post("/read-all", response_model=CountResponse, summary="Mark all as read")
async def mark_all_notifications_read(
    user_id: UserIdDep,
    service: NotificationServiceDep,
):
    count = await service.mark_all_as_read(user_id)
    return CountResponse(count=count, message=f"{count} notifications marked as read")


@router.get("/preferences", response_model=PreferencesResponse, summary="Get delivery preferences")
async def get_preferences(
    tenant_id: TenantIdDep,
    user_id: UserIdDep,
    service: NotificationServiceDep,
):
    preference = await service.get_user_preferences(user_id, tenant_id)
    return _preferences_response(preference)


@router.put("/preferences", response_model=PreferencesResponse, summary="Update delivery preferences")
async def update_preferences(
    payload: PreferencesUpdateRequest,
    tenant_id: TenantIdDep,
    user_id: UserIdDep,
    service: NotificationServiceDep,
):
    preference = await service.update_user_preferences(user_id, payload.to_update(), tenant_id)
    return _preferences_response(preference)


@router.get("/stats", response_model=NotificationStatsResponse, summary="Tenant notification statistics")
async def get_notification_stats(
    tenant_id: TenantIdDep,
    service: NotificationServiceDep,
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
):
    stats = await service.get_notification_stats(tenant_id, start, end)
    return NotificationStatsResponse(
        total=stats.total,
        unread=stats.unread,
        by_type=stats.by_type,
        by_category=stats.by_category,
    )


@router.get("/connections", response_model=ConnectionsResponse, summary="Live connections in the tenant")
async def get_connection_count(
    tenant_id: TenantIdDep,
    service: NotificationServiceDep,
):
    return ConnectionsResponse(connected=service.get_connected_users_count(tenant_id))


@router.patch("/{notification_id}/read", response_model=NotificationResponse, summary="Mark as read")
async def mark_notification_read(
    notification_id: UUID,
    tenant_id: TenantIdDep,
    user_id: UserIdDep,
    service: NotificationServiceDep,
):
    notification = await _owned_notification(service, notification_id, tenant_id, user_id)
    await service.mark_notification_as_read(notification.id)
    return _to_response(notification)


@router.delete(
    "/{notification_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a notification",
)
async def delete_notification(
    notification_id: UUID,
    tenant_id: TenantIdDep,
    user_id: UserIdDep,
    service: NotificationServiceDep,
):
    await _owned_notification(service, notification_id, tenant_id, user_id)
    await service.delete_notification(notification_id)


# =============================================================================
# LIVE STREAMS
# =============================================================================


@router.get("/stream", summary="Server-Sent Events stream of the caller's notifications")
async def stream_notifications(
    tenant_id: TenantIdDep,
    user_id: UserIdDep,
    directory: Annotated[ConnectionDirectory, Depends(get_connection_directory)],
):
    connection = directory.register_connection(tenant_id, user_id)

    async def event_generator():
        try:
            yield {"event": "connected", "data": json.dumps({"connection_id": connection.connection_id})}
            while True:
                payload = await connection.queue.get()
                yield {
                    "event": payload.get("event", "message"),
                    "data": json.dumps(payload, default=str),
                }
        finally:
            directory.unregister_connection(connection.connection_id)

    return EventSourceResponse(event_generator(), ping=SSE_PING_SECONDS)


async def _handle_client_message(
    websocket: WebSocket,
    tenant_id: UUID,
    user_id: UUID,
    message: dict[str, Any],
) -> dict[str, Any]:
    """Apply one client action and build the reply."""
    action = message.get("action")
    if action == "ping":
        return {"event": "pong"}

    state = websocket.app.state
    async with state.session_factory() as session:
        service = NotificationService(session, state.connection_directory, state.channel_providers)
        if action == "mark_read":
            notification_id = UUID(str(message.get("notification_id")))
            await _owned_notification(service, notification_id, tenant_id, user_id)
            await service.mark_notification_as_read(notification_id)
            await session.commit()
            unread = await service.get_user_notification_count(user_id, unread_only=True)
            return {"event": "notification_read", "notification_id": str(notification_id), "unread_count": unread}

        if action == "mark_all_read":
            count = await service.mark_all_as_read(user_id)
            await session.commit()
            return {"event": "all_read", "count": count, "unread_count": 0}

        if action == "update_preferences":
            changes = PreferencesUpdateRequest.model_validate(message.get("preferences") or {})
            preference = await service.update_user_preferences(user_id, changes.to_update(), tenant_id)
            await session.commit()
            return {"event": "preferences_updated", "preferences": _preferences_response(preference).model_dump()}

    return {"event": "error", "message": f"Unknown action: {action}"}


@router.websocket("/ws")
async def notifications_websocket(
    websocket: WebSocket,
    tenant_id: UUID = Query(...),
    user_id: UUID = Query(...),
):
    """
    Bidirectional channel: server pushes notifications, client sends actions.

    Replies travel through the connection's queue so there is a single writer.
    """
    directory: ConnectionDirectory = websocket.app.state.connection_directory
    await websocket.accept()
    connection = directory.register_connection(tenant_id, user_id)
    connection.queue.put_nowait({"event": "connected", "connection_id": connection.connection_id})

    async def forward() -> None:
        while True:
            payload = await connection.queue.get()
            await websocket.send_json(payload)

    forwarder = asyncio.create_task(forward())
    try:
        while True:
            message = await websocket.receive_json()
            try:
                reply = await _handle_client_message(websocket, tenant_id, user_id, message)
            except (CommsError, ValueError) as e:
                reply = {"event": "error", "message": str(e)}
            try:
                connection.queue.put_nowait(reply)
            except asyncio.QueueFull:
                logger.warning(f"connection_id={connection.connection_id} event=reply_dropped reason=queue_full")
    except WebSocketDisconnect:
        pass
    finally:
        forwarder.cancel()
        directory.unregister_connection(connection.connection_id)

"""
HTTP and WebSocket endpoints of the subscriber-facing surface.

Pull side: status snapshot, server-sent event streams, live statistics, on-demand insights.
Push side: the `/health` socket, driven by JSON control messages.
"""

import json
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from adapters.web.commands import (
    KNOWN_ACTIONS,
    CreateReminderRequest,
    CreateUserRequest,
    GetInsightsCommand,
    JoinRoomCommand,
    RecordAddedCommand,
    SubscribeCommand,
    UnsubscribeCommand,
    command_adapter,
)
from adapters.web.rooms import GLOBAL_ROOM, RoomHub, SocketConnection, user_room
from adapters.web.transports import SocketTransport, StreamTransport, periodic_frames
from healthstream.domain.errors import InvalidCadence, UnknownUser
from healthstream.domain.models import Reminder, ReminderFrequency, Scope, StatusSnapshot, User
from healthstream.services.monitor import HealthStreamService, UserInsightReport

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health-monitor", tags=["health-monitor"])
socket_router = APIRouter(tags=["push"])

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def get_service(request: Request) -> HealthStreamService:
    return request.app.state.service


@router.get("/status", response_model=StatusSnapshot)
async def get_status(service: HealthStreamService = Depends(get_service)) -> StatusSnapshot:
    return await service.status()


@router.post("/users", status_code=status.HTTP_201_CREATED, response_model=User)
async def create_user(
    body: CreateUserRequest, service: HealthStreamService = Depends(get_service)
) -> User:
    return await service.store.add_user(User(id=body.id, username=body.username))


@router.post(
    "/users/{user_id}/reminders", status_code=status.HTTP_201_CREATED, response_model=Reminder
)
async def create_reminder(
    user_id: str, body: CreateReminderRequest, service: HealthStreamService = Depends(get_service)
) -> Reminder:
    reminder = Reminder(
        owner_id=user_id,
        title=body.title,
        description=body.description,
        category=body.category,
        frequency=ReminderFrequency(body.frequency),
        time_of_day=body.time_of_day,
    )
    try:
        return await service.store.add_reminder(reminder)
    except UnknownUser as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@router.get("/events")
async def stream_events(
    request: Request,
    user_id: str | None = Query(None, description="Limit the stream to one user"),
    cadence_ms: int | None = Query(None, description="Milliseconds between ticks"),
    service: HealthStreamService = Depends(get_service),
) -> StreamingResponse:
    """Server-sent events: one frame per non-empty tick, handshake first."""
    if user_id is not None:
        await _require_user(service, user_id)
        scope = Scope.for_user(user_id)
        cadence = cadence_ms if cadence_ms is not None else service.config.stream.user_cadence_ms
    else:
        scope = Scope.everyone()
        cadence = cadence_ms if cadence_ms is not None else service.config.stream.default_cadence_ms
    return await _open_stream(request, service, scope, cadence)


@router.get("/users/{user_id}/events")
async def stream_user_events(
    request: Request,
    user_id: str,
    cadence_ms: int | None = Query(None, description="Milliseconds between ticks"),
    service: HealthStreamService = Depends(get_service),
) -> StreamingResponse:
    await _require_user(service, user_id)
    cadence = cadence_ms if cadence_ms is not None else service.config.stream.user_cadence_ms
    return await _open_stream(request, service, Scope.for_user(user_id), cadence)


@router.get("/live-stats")
async def stream_live_stats(
    request: Request, service: HealthStreamService = Depends(get_service)
) -> StreamingResponse:
    """Server-sent `stats-update` frames with store totals and today's activity."""

    async def produce() -> str | None:
        stats = await service.live_stats()
        return stats.model_dump_json() if stats is not None else None

    frames = periodic_frames(
        produce, request.is_disconnected, service.config.stream.live_stats_seconds
    )
    return StreamingResponse(frames, media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/insights/{user_id}", response_model=UserInsightReport)
async def get_user_insights(
    user_id: str,
    days: int = Query(7, gt=0, le=365),
    service: HealthStreamService = Depends(get_service),
) -> UserInsightReport:
    try:
        return await service.user_insights(user_id, days)
    except UnknownUser as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


async def _require_user(service: HealthStreamService, user_id: str) -> None:
    if await service.store.get_user(user_id) is None:
        raise HTTPException(status_code=404, detail=str(UnknownUser(user_id)))


async def _open_stream(
    request: Request, service: HealthStreamService, scope: Scope, cadence_ms: int
) -> StreamingResponse:
    transport = StreamTransport(name=f"sse:{scope}")
    try:
        subscription_id = await service.registry.subscribe(scope, cadence_ms, transport)
    except InvalidCadence as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    async def body():
        try:
            async for frame in transport.frames(request.is_disconnected):
                yield frame
        finally:
            transport.close()
            await service.registry.unsubscribe(subscription_id)

    return StreamingResponse(
        body(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


# Push socket


@socket_router.websocket("/health")
async def health_socket(websocket: WebSocket) -> None:
    """
    Push endpoint.

    Message Format (incoming):
    {"action": "subscribe" | "unsubscribe" | "join-room" | "record-added" | "get-insights", ...}

    Message Format (outgoing):
    {"type": "connection-confirmed" | "system-stats" | "subscription-confirmed" | "health-update"
             | "user-health-update" | "health-record-saved" | "system-activity" | "reminder-alert"
             | "joined-room" | "unsubscribed" | "health-insights" | "error", ...}
    """
    service: HealthStreamService = websocket.app.state.service
    hub: RoomHub = websocket.app.state.hub
    connection = await hub.connect(websocket)
    log = logger.bind(client_id=connection.id)

    try:
        await connection.send_json(
            {
                "type": "connection-confirmed",
                "client_id": connection.id,
                "message": "Connected to Health Monitoring System",
            }
        )
        stats = await service.status()
        await connection.send_json({"type": "system-stats", **stats.model_dump(mode="json")})

        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await connection.send_json({"type": "error", "message": "Invalid JSON"})
                continue
            await _handle_message(message, connection, service, hub)

    except WebSocketDisconnect:
        log.debug("socket_closed_by_client")
    finally:
        for subscription_id in list(connection.subscription_ids):
            await service.registry.unsubscribe(subscription_id)
        await hub.disconnect(connection)


async def _handle_message(
    message: Any, connection: SocketConnection, service: HealthStreamService, hub: RoomHub
) -> None:
    action = message.get("action") if isinstance(message, dict) else None
    if not isinstance(action, str) or action not in KNOWN_ACTIONS:
        await connection.send_json({"type": "error", "message": f"Unknown action: {action}"})
        return

    try:
        command = command_adapter.validate_python(message)
    except ValidationError as e:
        await connection.send_json(
            {
                "type": "error",
                "message": f"Invalid '{action}' message",
                "errors": [err["msg"] for err in e.errors()],
            }
        )
        return

    try:
        if isinstance(command, SubscribeCommand):
            await _subscribe(command, connection, service, hub)
        elif isinstance(command, UnsubscribeCommand):
            removed = False
            if command.subscription_id in connection.subscription_ids:
                connection.subscription_ids.discard(command.subscription_id)
                removed = await service.registry.unsubscribe(command.subscription_id)
            await connection.send_json(
                {"type": "unsubscribed", "subscription_id": command.subscription_id, "removed": removed}
            )
        elif isinstance(command, JoinRoomCommand):
            user = await service.store.get_user(command.user_id)
            if user is None:
                raise UnknownUser(command.user_id)
            room = user_room(user.id)
            await hub.join(connection, room)
            await connection.send_json(
                {"type": "joined-room", "room": room, "user": user.model_dump(mode="json")}
            )
        elif isinstance(command, RecordAddedCommand):
            await _record_added(command, service, hub)
        elif isinstance(command, GetInsightsCommand):
            report = await service.user_insights(command.user_id, command.days)
            await connection.send_json({"type": "health-insights", **report.model_dump(mode="json")})
    except UnknownUser as e:
        await connection.send_json({"type": "error", "message": "User not found", "user_id": e.owner_id})
    except InvalidCadence as e:
        await connection.send_json({"type": "error", "message": str(e)})


async def _subscribe(
    command: SubscribeCommand, connection: SocketConnection, service: HealthStreamService, hub: RoomHub
) -> None:
    stream = service.config.stream
    if command.user_id is not None:
        if await service.store.get_user(command.user_id) is None:
            raise UnknownUser(command.user_id)
        scope = Scope.for_user(command.user_id)
        room = user_room(command.user_id)
        cadence = command.cadence_ms if command.cadence_ms is not None else stream.user_cadence_ms
    else:
        scope = Scope.everyone()
        room = GLOBAL_ROOM
        cadence = command.cadence_ms if command.cadence_ms is not None else stream.default_cadence_ms

    subscription_id = await service.registry.subscribe(scope, cadence, SocketTransport(connection))
    connection.subscription_ids.add(subscription_id)
    await hub.join(connection, room)


async def _record_added(command: RecordAddedCommand, service: HealthStreamService, hub: RoomHub) -> None:
    sample, advice = await service.record_sample(
        command.user_id, command.category, command.value, command.notes
    )
    now = datetime.now(UTC).isoformat()
    await hub.broadcast(
        {
            "type": "health-record-saved",
            "record": sample.model_dump(mode="json"),
            "advice": advice,
            "timestamp": now,
        },
        room=user_room(command.user_id),
    )
    await hub.broadcast(
        {
            "type": "system-activity",
            "activity": "health-record-added",
            "user_id": command.user_id,
            "category": sample.category,
            "timestamp": now,
        }
    )

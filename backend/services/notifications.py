from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState
from sqlalchemy.orm import Session

from ..constants import EVENT_NOTIFICATION_CREATED
from ..core.errors import NotificationDeliveryFailure, ResourceNotFound
from ..models.models import Notification, RedevelopmentProject, User, utcnow
from ..schemas.schemas import NotificationRead
from . import membership
from .notification_templates import NotificationTemplate

logger = logging.getLogger(__name__)


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


def society_room(society_id: int) -> str:
    return f"society:{society_id}"


def project_room(project_id: int) -> str:
    return f"project:{project_id}"


class NotificationCenter:
    """Room-based realtime fan-out over WebSocket connections.

    Delivery is best effort and at most once: a publish reaches the
    connections in the room at that moment, nothing is queued for offline
    users. The durable ``Notification`` rows are the record of delivery.
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, Set[WebSocket]] = defaultdict(set)
        self._socket_rooms: Dict[WebSocket, Set[str]] = defaultdict(set)
        self._socket_users: Dict[WebSocket, int] = {}
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def configure_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        logger.debug("NotificationCenter bound to event loop %s", loop)

    async def connect(self, user_id: int, websocket: WebSocket, rooms: Iterable[str] = ()) -> Set[str]:
        await websocket.accept()
        joined = {user_room(user_id), *rooms}
        async with self._lock:
            self._socket_users[websocket] = user_id
            for room in joined:
                self._rooms[room].add(websocket)
                self._socket_rooms[websocket].add(room)
        logger.debug("WebSocket connected for user %s (rooms=%s)", user_id, sorted(joined))
        return joined

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            user_id = self._socket_users.pop(websocket, None)
            for room in self._socket_rooms.pop(websocket, set()):
                members = self._rooms.get(room)
                if members is None:
                    continue
                members.discard(websocket)
                if not members:
                    self._rooms.pop(room, None)
        logger.debug("WebSocket disconnected for user %s", user_id)

    async def join_room(self, websocket: WebSocket, room: str) -> None:
        async with self._lock:
            if websocket not in self._socket_users:
                return
            self._rooms[room].add(websocket)
            self._socket_rooms[websocket].add(room)

    async def leave_room(self, websocket: WebSocket, room: str) -> None:
        async with self._lock:
            members = self._rooms.get(room)
            if members is not None:
                members.discard(websocket)
                if not members:
                    self._rooms.pop(room, None)
            if websocket in self._socket_rooms:
                self._socket_rooms[websocket].discard(room)

    def rooms_for(self, websocket: WebSocket) -> Set[str]:
        return set(self._socket_rooms.get(websocket, set()))

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    def is_online(self, user_id: int) -> bool:
        return self.room_size(user_room(user_id)) > 0

    async def publish(self, room: str, event: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """Send ``event`` to every connection in ``room``; returns the number of successful sends."""
        async with self._lock:
            targets = list(self._rooms.get(room, set()))
        if not targets:
            logger.debug("No live connections in %s for %s", room, event)
            return 0
        envelope = {
            "type": event,
            **(payload or {}),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "correlation_id": uuid.uuid4().hex,
        }
        results = await asyncio.gather(*(self._send(websocket, room, envelope) for websocket in targets))
        return sum(1 for delivered in results if delivered)

    async def _send(self, websocket: WebSocket, room: str, envelope: Dict[str, Any]) -> bool:
        if websocket.application_state != WebSocketState.CONNECTED:
            return False
        try:
            await websocket.send_json(envelope)
        except Exception as exc:
            failure = NotificationDeliveryFailure(
                f"Failed to deliver {envelope['type']} to a connection in {room}", room=room
            )
            logger.warning(
                "%s: %s",
                failure.detail,
                exc,
                extra={"room": room, "event": envelope["type"], "correlation_id": envelope["correlation_id"]},
            )
            return False
        return True

    def _dispatch(self, room: str, event: str, payload: Dict[str, Any]) -> bool:
        if not self._loop:
            logger.debug("NotificationCenter loop not configured; skipping %s to %s", event, room)
            return False
        future = asyncio.run_coroutine_threadsafe(self.publish(room, event, payload), self._loop)
        future.add_done_callback(_log_dispatch_error)
        return True

    def notify_user(self, user_id: int, event: str, payload: Dict[str, Any]) -> bool:
        if not self.is_online(user_id):
            logger.debug("User %s offline; realtime %s skipped", user_id, event)
            return False
        return self._dispatch(user_room(user_id), event, payload)

    def notify_society(self, society_id: int, event: str, payload: Dict[str, Any]) -> bool:
        return self._dispatch(society_room(society_id), event, payload)

    def notify_project(self, project_id: int, event: str, payload: Dict[str, Any]) -> bool:
        return self._dispatch(project_room(project_id), event, payload)

    async def shutdown(self) -> None:
        async with self._lock:
            sockets = list(self._socket_users.items())
            self._rooms.clear()
            self._socket_rooms.clear()
            self._socket_users.clear()
        for websocket, user_id in sockets:
            if websocket.application_state == WebSocketState.CONNECTED:
                try:
                    await websocket.close()
                except RuntimeError:
                    continue
                except Exception:  # pragma: no cover
                    logger.exception("Failed to close WebSocket for user %s", user_id)


def _log_dispatch_error(future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Realtime dispatch failed: %s", exc)


notification_center = NotificationCenter()


def initial_rooms(session: Session, user: User) -> Set[str]:
    """Rooms joined on connect: the user's societies and the projects they own or belong to."""
    rooms = {society_room(society_id) for society_id in membership.user_society_ids(session, user.id)}
    rooms.update(project_room(project_id) for project_id in membership.user_project_ids(session, user.id))
    return rooms


def can_follow_project(session: Session, user: User, project_id: int) -> bool:
    project = session.get(RedevelopmentProject, project_id)
    if project is None:
        return False
    if project.is_public or project.owner_user_id == user.id:
        return True
    return project.society_id in membership.user_society_ids(session, user.id)


def serialize_notification(notification: Notification) -> dict:
    return NotificationRead.model_validate(notification).model_dump(mode="json")


def persist_notifications(
    session: Session,
    recipient_ids: Iterable[Optional[int]],
    template: NotificationTemplate,
    sender_id: Optional[int] = None,
) -> List[Notification]:
    """Stage one ``Notification`` per distinct recipient inside the caller's transaction."""
    seen: Set[int] = set()
    notifications: List[Notification] = []
    now = utcnow()
    metadata = template.metadata_json()
    for recipient_id in recipient_ids:
        if recipient_id is None or recipient_id in seen:
            continue
        seen.add(recipient_id)
        notification = Notification(
            recipient_id=recipient_id,
            sender_id=sender_id,
            type=template.type,
            title=template.title,
            message=template.message,
            redevelopment_project_id=template.redevelopment_project_id,
            proposal_id=template.proposal_id,
            vote_id=template.vote_id,
            society_id=template.society_id,
            metadata_json=metadata,
            priority=template.priority,
            expires_at=template.expires_at,
            created_at=now,
        )
        session.add(notification)
        notifications.append(notification)
    session.flush()
    return notifications


def push_created(notifications: Iterable[Notification], notifier: Optional[NotificationCenter] = None) -> None:
    notifier = notifier or notification_center
    for notification in notifications:
        notifier.notify_user(
            notification.recipient_id,
            EVENT_NOTIFICATION_CREATED,
            {"notification": serialize_notification(notification)},
        )


def create_notification(
    session: Session,
    recipient_ids: Iterable[Optional[int]],
    template: NotificationTemplate,
    sender_id: Optional[int] = None,
    notifier: Optional[NotificationCenter] = None,
) -> List[Notification]:
    notifications = persist_notifications(session, recipient_ids, template, sender_id=sender_id)
    if not notifications:
        return []
    session.commit()
    logger.info(
        "Created %s %s notification(s)",
        len(notifications),
        template.type,
        extra={"notification_type": template.type, "project_id": template.redevelopment_project_id},
    )
    push_created(notifications, notifier)
    return notifications


def list_notifications(
    session: Session,
    user_id: int,
    limit: int = 50,
    unread_only: bool = False,
    types: Optional[List[str]] = None,
) -> List[Notification]:
    query = session.query(Notification).filter(Notification.recipient_id == user_id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    if types:
        query = query.filter(Notification.type.in_(types))
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()


def unread_count(session: Session, user_id: int) -> int:
    return (
        session.query(Notification)
        .filter(Notification.recipient_id == user_id, Notification.is_read.is_(False))
        .count()
    )


def _get_owned(session: Session, user_id: int, notification_id: int) -> Notification:
    notification = (
        session.query(Notification)
        .filter(Notification.id == notification_id, Notification.recipient_id == user_id)
        .first()
    )
    if not notification:
        raise ResourceNotFound("Notification not found.")
    return notification


def mark_read(
    session: Session,
    user_id: int,
    notification_id: int,
    notifier: Optional[NotificationCenter] = None,
) -> Notification:
    notification = _get_owned(session, user_id, notification_id)
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        session.commit()
        session.refresh(notification)
        (notifier or notification_center).notify_user(
            user_id,
            "notification.read",
            {"id": notification.id, "read_at": notification.read_at.isoformat()},
        )
    return notification


def mark_all_read(
    session: Session,
    user_id: int,
    notification_ids: Optional[List[int]] = None,
    notifier: Optional[NotificationCenter] = None,
) -> int:
    query = session.query(Notification).filter(
        Notification.recipient_id == user_id, Notification.is_read.is_(False)
    )
    if notification_ids:
        query = query.filter(Notification.id.in_(notification_ids))
    unread = query.all()
    if not unread:
        return 0
    timestamp = utcnow()
    for notification in unread:
        notification.is_read = True
        notification.read_at = timestamp
    session.commit()
    (notifier or notification_center).notify_user(
        user_id,
        "notification.bulk_read",
        {"ids": [item.id for item in unread], "read_at": timestamp.isoformat()},
    )
    return len(unread)


def delete_notification(session: Session, user_id: int, notification_id: int) -> None:
    notification = _get_owned(session, user_id, notification_id)
    session.delete(notification)
    session.commit()


def clear_notifications(session: Session, user_id: int) -> int:
    deleted = (
        session.query(Notification)
        .filter(Notification.recipient_id == user_id)
        .delete(synchronize_session=False)
    )
    session.commit()
    return int(deleted)


def purge_expired(session: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    deleted = (
        session.query(Notification)
        .filter(Notification.expires_at.isnot(None), Notification.expires_at <= now)
        .delete(synchronize_session=False)
    )
    session.commit()
    if deleted:
        logger.info("Purged %s expired notification(s)", deleted)
    return int(deleted)


async def notification_websocket_handler(
    user: User,
    websocket: WebSocket,
    db_session: Session,
    center: Optional[NotificationCenter] = None,
) -> None:
    center = center or notification_center
    rooms = initial_rooms(db_session, user)
    joined = await center.connect(user.id, websocket, rooms)
    try:
        await websocket.send_json({"type": "notification.connected", "rooms": sorted(joined)})
        while True:
            try:
                message = await websocket.receive_json()
            except WebSocketDisconnect:
                break
            except ValueError:
                await websocket.send_json({"type": "error", "detail": "Messages must be JSON objects."})
                continue
            await _handle_client_message(center, websocket, db_session, user, message)
    finally:
        await center.disconnect(websocket)


async def _handle_client_message(
    center: NotificationCenter,
    websocket: WebSocket,
    db_session: Session,
    user: User,
    message: Any,
) -> None:
    action = message.get("action") if isinstance(message, dict) else None
    project_id = message.get("project_id") if isinstance(message, dict) else None
    if action not in ("join_project", "leave_project") or not isinstance(project_id, int):
        await websocket.send_json({"type": "error", "detail": "Unsupported message."})
        return

    room = project_room(project_id)
    if action == "leave_project":
        await center.leave_room(websocket, room)
        await websocket.send_json({"type": "room.left", "room": room})
        return

    if not can_follow_project(db_session, user, project_id):
        await websocket.send_json({"type": "error", "detail": f"Cannot follow project {project_id}."})
        return
    await center.join_room(websocket, room)
    await websocket.send_json({"type": "room.joined", "room": room})

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, WebSocket
from sqlalchemy.orm import Session

from ..api.dependencies import get_db
from ..auth.jwt import get_current_user, resolve_user_from_token
from ..models.models import Notification, User
from ..schemas.schemas import NotificationMarkRead, NotificationRead
from ..services import notifications as notification_service

router = APIRouter()


@router.get("/", response_model=List[NotificationRead])
def list_notifications(
    limit: int = Query(50, ge=1, le=200),
    unread_only: bool = Query(False),
    types: Optional[List[str]] = Query(None, description="Filter by notification type."),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> List[Notification]:
    return notification_service.list_notifications(
        db, current_user.id, limit=limit, unread_only=unread_only, types=types
    )


@router.get("/unread-count", response_model=dict)
def unread_count(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> dict:
    return {"unread_count": notification_service.unread_count(db, current_user.id)}


@router.post("/read-all", response_model=dict)
def mark_all_notifications_read(
    payload: Optional[NotificationMarkRead] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> dict:
    ids = payload.notification_ids if payload else None
    return {"updated": notification_service.mark_all_read(db, current_user.id, ids)}


@router.post("/{notification_id}/read", response_model=NotificationRead)
def mark_notification_read(
    notification_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Notification:
    return notification_service.mark_read(db, current_user.id, notification_id)


@router.delete("/{notification_id}", status_code=204)
def delete_notification(
    notification_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> None:
    notification_service.delete_notification(db, current_user.id, notification_id)


@router.delete("/", response_model=dict)
def clear_notifications(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> dict:
    return {"deleted": notification_service.clear_notifications(db, current_user.id)}


@router.websocket("/ws")
async def websocket_notifications(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    db: Session = Depends(get_db),
) -> None:
    if not token:
        await websocket.close(code=4401)
        return

    user = resolve_user_from_token(db, token, require_active=False)
    if user is None:
        await websocket.close(code=4401)
        return
    if not user.is_active:
        await websocket.close(code=4403)
        return

    await notification_service.notification_websocket_handler(user, websocket, db)

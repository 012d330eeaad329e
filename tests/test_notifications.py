import asyncio
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect, WebSocketState

from backend.api.dependencies import get_db
from backend.auth.jwt import create_access_token, get_current_user
from backend.core.errors import ResourceNotFound
from backend.main import app
from backend.models.models import Notification, utcnow
from backend.services import notification_templates as templates
from backend.services import notifications as notification_service
from backend.services.notifications import NotificationCenter, project_room, user_room


def _override_get_db(session):
    def _generator():
        try:
            yield session
        finally:
            pass

    return _generator


def _override_user(user):
    def _provider():
        return user

    return _provider


def _notification(user, title="Voting opened", **fields):
    values = {"recipient_id": user.id, "type": "voting_opened", "title": title, "message": "Body"}
    values.update(fields)
    return Notification(**values)


class FakeSocket:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []
        self.accepted = False
        self.application_state = WebSocketState.CONNECTED

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("connection reset")
        self.sent.append(data)

    async def close(self):
        self.application_state = WebSocketState.DISCONNECTED


def test_list_notifications_returns_only_current_user_items(db_session, create_user):
    user = create_user(email="notify@example.com")
    other = create_user(email="other@example.com")
    note_one = _notification(user, "Test")
    note_two = _notification(user, "Another")
    note_other = _notification(other, "Hidden")
    db_session.add_all([note_one, note_two, note_other])
    db_session.commit()

    app.dependency_overrides[get_db] = _override_get_db(db_session)
    app.dependency_overrides[get_current_user] = _override_user(user)
    client = TestClient(app)
    try:
        response = client.get("/notifications/")
        assert response.status_code == 200
        payload = response.json()
        assert len(payload) == 2
        returned_ids = {item["id"] for item in payload}
        assert note_one.id in returned_ids
        assert note_two.id in returned_ids

        count = client.get("/notifications/unread-count")
        assert count.json() == {"unread_count": 2}
    finally:
        client.close()
        app.dependency_overrides.clear()


def test_mark_notification_read_sets_timestamp(db_session, create_user):
    user = create_user(email="notify2@example.com")
    other = create_user(email="notify2-other@example.com")
    notification = _notification(user, "Unread")
    foreign = _notification(other, "Not yours")
    db_session.add_all([notification, foreign])
    db_session.commit()

    app.dependency_overrides[get_db] = _override_get_db(db_session)
    app.dependency_overrides[get_current_user] = _override_user(user)
    client = TestClient(app)
    try:
        response = client.post(f"/notifications/{notification.id}/read")
        assert response.status_code == 200
        data = response.json()
        assert data["read_at"] is not None
        assert data["is_read"] is True
        db_session.refresh(notification)
        assert notification.read_at is not None

        missing = client.post(f"/notifications/{foreign.id}/read")
        assert missing.status_code == 404
        assert missing.json()["error_code"] == "not_found"
    finally:
        client.close()
        app.dependency_overrides.clear()


def test_mark_all_notifications_read_updates_multiple_entries(db_session, create_user):
    user = create_user(email="notify3@example.com")
    first = _notification(user, "First")
    second = _notification(user, "Second")
    db_session.add_all([first, second])
    db_session.commit()

    app.dependency_overrides[get_db] = _override_get_db(db_session)
    app.dependency_overrides[get_current_user] = _override_user(user)
    client = TestClient(app)
    try:
        response = client.post("/notifications/read-all")
        assert response.status_code == 200
        assert response.json()["updated"] == 2
        db_session.refresh(first)
        db_session.refresh(second)
        assert first.read_at is not None
        assert second.read_at is not None
    finally:
        client.close()
        app.dependency_overrides.clear()


def test_delete_and_clear_notifications(db_session, create_user):
    user = create_user(email="notify4@example.com")
    notes = [_notification(user, f"Note {index}") for index in range(3)]
    db_session.add_all(notes)
    db_session.commit()

    app.dependency_overrides[get_db] = _override_get_db(db_session)
    app.dependency_overrides[get_current_user] = _override_user(user)
    client = TestClient(app)
    try:
        response = client.delete(f"/notifications/{notes[0].id}")
        assert response.status_code == 204
        assert db_session.query(Notification).count() == 2

        cleared = client.delete("/notifications/")
        assert cleared.json() == {"deleted": 2}
        assert db_session.query(Notification).count() == 0
    finally:
        client.close()
        app.dependency_overrides.clear()


def test_persist_notifications_dedupes_recipients(db_session, create_user, create_society, create_project):
    owner = create_user(email="owner@example.com", role_name="SOCIETY_OWNER")
    member = create_user(email="member@example.com")
    project = create_project(create_society(owner), owner, status="voting")

    created = notification_service.persist_notifications(
        db_session, [member.id, None, member.id, owner.id], templates.voting_opened(project, project.voting_deadline)
    )
    db_session.commit()

    assert sorted(item.recipient_id for item in created) == sorted([member.id, owner.id])
    stored = db_session.query(Notification).filter_by(recipient_id=member.id).one()
    assert stored.data["metadata"]["kind"] == "voting_opened"
    assert stored.data["redevelopment_project_id"] == project.id
    assert stored.expires_at == project.voting_deadline


def test_mark_read_rejects_other_users_notification(db_session, create_user):
    user = create_user(email="notify5@example.com")
    other = create_user(email="notify5-other@example.com")
    foreign = _notification(other)
    db_session.add(foreign)
    db_session.commit()

    with pytest.raises(ResourceNotFound):
        notification_service.mark_read(db_session, user.id, foreign.id)


def test_purge_expired_keeps_live_items(db_session, create_user):
    user = create_user(email="notify6@example.com")
    now = utcnow()
    db_session.add_all(
        [
            _notification(user, "Expired", expires_at=now - timedelta(minutes=1)),
            _notification(user, "Live", expires_at=now + timedelta(days=1)),
        ]
    )
    db_session.commit()

    assert notification_service.purge_expired(db_session, now) == 1
    assert [item.title for item in db_session.query(Notification)] == ["Live"]


def test_publish_reaches_room_members_and_survives_broken_sockets():
    center = NotificationCenter()
    healthy = FakeSocket()
    broken = FakeSocket(fail=True)
    outsider = FakeSocket()

    async def scenario():
        await center.connect(1, healthy, rooms={project_room(7)})
        await center.connect(2, broken, rooms={project_room(7)})
        await center.connect(3, outsider)
        return await center.publish(project_room(7), "vote_cast", {"project_id": 7})

    delivered = asyncio.run(scenario())

    assert delivered == 1
    assert outsider.sent == []
    envelope = healthy.sent[0]
    assert envelope["type"] == "vote_cast"
    assert envelope["project_id"] == 7
    assert envelope["timestamp"]
    assert envelope["correlation_id"]


def test_disconnect_removes_socket_from_every_room():
    center = NotificationCenter()
    socket = FakeSocket()

    async def scenario():
        joined = await center.connect(5, socket, rooms={"society:1"})
        assert joined == {user_room(5), "society:1"}
        assert center.is_online(5)
        await center.disconnect(socket)

    asyncio.run(scenario())

    assert not center.is_online(5)
    assert center.room_size("society:1") == 0


def test_offline_users_and_unbound_center_skip_realtime():
    center = NotificationCenter()
    assert center.notify_user(42, "notification.created", {}) is False
    assert center.notify_project(3, "project_update", {}) is False


def test_notify_from_sync_code_is_delivered_on_the_loop():
    center = NotificationCenter()
    socket = FakeSocket()

    async def scenario():
        center.configure_loop(asyncio.get_running_loop())
        await center.connect(9, socket, rooms={project_room(4)})
        assert center.notify_project(4, "voting_closed", {"project_id": 4}) is True
        assert center.notify_user(9, "notification.created", {"notification": {"id": 1}}) is True
        await asyncio.sleep(0.05)

    asyncio.run(scenario())

    assert sorted(message["type"] for message in socket.sent) == ["notification.created", "voting_closed"]


def test_websocket_requires_token(db_session):
    app.dependency_overrides[get_db] = _override_get_db(db_session)
    client = TestClient(app)
    try:
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect("/notifications/ws"):
                pass
        assert excinfo.value.code == 4401

        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect("/notifications/ws?token=not-a-jwt"):
                pass
        assert excinfo.value.code == 4401
    finally:
        client.close()
        app.dependency_overrides.clear()


def test_websocket_joins_initial_rooms_and_follows_projects(db_session, create_user, create_society, add_member, create_project):
    owner = create_user(email="ws-owner@example.com", role_name="SOCIETY_OWNER")
    member = create_user(email="ws-member@example.com")
    society = create_society(owner)
    add_member(society, member)
    project = create_project(society, owner, status="voting")
    private_society = create_society(owner, name="Private CHS")
    private_project = create_project(private_society, owner, status="planning", is_public=False)
    token = create_access_token({"sub": member.id})

    app.dependency_overrides[get_db] = _override_get_db(db_session)
    client = TestClient(app)
    try:
        with client.websocket_connect(f"/notifications/ws?token={token}") as websocket:
            hello = websocket.receive_json()
            assert hello["type"] == "notification.connected"
            assert set(hello["rooms"]) == {user_room(member.id), f"society:{society.id}", project_room(project.id)}

            websocket.send_json({"action": "join_project", "project_id": private_project.id})
            assert websocket.receive_json()["type"] == "error"

            websocket.send_json({"action": "leave_project", "project_id": project.id})
            assert websocket.receive_json() == {"type": "room.left", "room": project_room(project.id)}

            websocket.send_json({"action": "join_project", "project_id": project.id})
            assert websocket.receive_json() == {"type": "room.joined", "room": project_room(project.id)}
    finally:
        client.close()
        app.dependency_overrides.clear()

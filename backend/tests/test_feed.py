from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import text
from starlette.websockets import WebSocketDisconnect

from spl.feed import ChangeFeed, feed, notifications_channel, queue_event
from spl.models import User
from spl.notifications import create_notification

import spl.main as main_module


def test_publish_reaches_only_channel_subscribers():
    changes = ChangeFeed()
    seen: list[dict] = []
    unsubscribe = changes.subscribe("a", seen.append)
    changes.subscribe("b", lambda event: pytest.fail("wrong channel"))

    assert changes.publish("a", {"n": 1}) == 1
    unsubscribe()
    assert changes.publish("a", {"n": 2}) == 0
    assert seen == [{"n": 1}]
    assert changes.subscriber_count("a") == 0


def test_failing_subscriber_does_not_block_others():
    changes = ChangeFeed()
    seen: list[dict] = []

    def broken(event):
        raise RuntimeError("boom")

    changes.subscribe("a", broken)
    changes.subscribe("a", seen.append)
    assert changes.publish("a", {"n": 1}) == 1
    assert seen == [{"n": 1}]


def test_events_publish_only_after_commit(db):
    seen: list[dict] = []
    unsubscribe = feed.subscribe("test-channel", seen.append)
    try:
        db.execute(text("SELECT 1"))
        queue_event(db, "test-channel", {"n": 1})
        assert seen == []
        db.commit()
        assert seen == [{"n": 1}]

        db.execute(text("SELECT 1"))
        queue_event(db, "test-channel", {"n": 2})
        db.rollback()
        db.execute(text("SELECT 1"))
        db.commit()
        assert seen == [{"n": 1}]
    finally:
        unsubscribe()


def test_notification_insert_event(db):
    user = User(username="watcher", role="user")
    db.add(user)
    db.flush()
    seen: list[dict] = []
    unsubscribe = feed.subscribe(notifications_channel(user.id), seen.append)
    try:
        create_notification(db, user.id, "Hello", "World", type="general")
        db.commit()
    finally:
        unsubscribe()
    assert seen[0]["type"] == "INSERT"
    assert seen[0]["table"] == "notifications"
    assert seen[0]["record"]["title"] == "Hello"


def test_notification_type_is_checked(db):
    with pytest.raises(ValueError):
        create_notification(db, 1, "Hi", "There", type="spam")


# API


def test_notification_listing_and_read_flags(client, register):
    user = register("alice")
    client.post("/wallet/deposit", json={"amount": 100}, headers=user["headers"])
    client.post("/wallet/deposit", json={"amount": 200}, headers=user["headers"])

    assert client.get("/notifications/unread-count", headers=user["headers"]).json() == {"count": 2}
    items = client.get("/notifications", headers=user["headers"]).json()
    assert [item["type"] for item in items] == ["payment", "payment"]

    response = client.post(f"/notifications/{items[0]['id']}/read", headers=user["headers"])
    assert response.json()["is_read"] is True
    assert client.get("/notifications/unread-count", headers=user["headers"]).json() == {"count": 1}

    assert client.post("/notifications/read-all", headers=user["headers"]).json() == {"updated": 1}
    assert client.get("/notifications/unread-count", headers=user["headers"]).json() == {"count": 0}


def test_cannot_read_someone_elses_notification(client, register):
    alice = register("alice")
    bob = register("bob")
    client.post("/wallet/deposit", json={"amount": 100}, headers=alice["headers"])
    notification_id = client.get("/notifications", headers=alice["headers"]).json()[0]["id"]
    response = client.post(f"/notifications/{notification_id}/read", headers=bob["headers"])
    assert response.status_code == 404


def test_admin_broadcast(client, register, admin_headers):
    alice = register("alice")
    bob = register("bob")
    response = client.post(
        "/admin/notifications",
        json={"title": "Maintenance", "message": "Back in five.", "user_ids": [alice["user"]["id"], bob["user"]["id"]]},
        headers=admin_headers,
    )
    assert response.json() == {"recipients": 2}
    assert client.get("/notifications", headers=bob["headers"]).json()[0]["title"] == "Maintenance"


def test_websocket_rejects_missing_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/notifications") as websocket:
            websocket.receive_json()


def test_websocket_streams_own_notifications(client, register):
    user = register("alice")
    with client.websocket_connect(f"/ws/notifications?token={user['token']}") as websocket:
        response = client.post("/wallet/deposit", json={"amount": 75}, headers=user["headers"])
        assert response.status_code == 200
        event = websocket.receive_json()
    assert event["type"] == "INSERT"
    assert event["record"]["user_id"] == user["user"]["id"]
    assert event["record"]["type"] == "payment"


def test_websocket_streams_contest_changes(client, register, create_contest):
    user = register("alice")
    with client.websocket_connect(f"/ws/contests?token={user['token']}") as websocket:
        contest = create_contest(title="Live Wire")
        event = websocket.receive_json()
    assert event["type"] == "INSERT"
    assert event["table"] == "contests"
    assert event["record"]["id"] == contest["id"]


def test_websocket_token_lookup_runs_off_the_event_loop(client, register, monkeypatch):
    user = register("alice")
    lookup = main_module.websocket_user
    on_loop: list[bool] = []

    def recording_lookup(token):
        try:
            asyncio.get_running_loop()
            on_loop.append(True)
        except RuntimeError:
            on_loop.append(False)
        return lookup(token)

    monkeypatch.setattr(main_module, "websocket_user", recording_lookup)
    with client.websocket_connect(f"/ws/notifications?token={user['token']}") as websocket:
        client.post("/wallet/deposit", json={"amount": 10}, headers=user["headers"])
        websocket.receive_json()
    assert on_loop == [False]


def test_quote_stream_pushes_requested_symbols(client, market):
    with client.websocket_connect("/ws/quotes?symbols=aapl,NOPE,msft,AAPL") as websocket:
        message = websocket.receive_json()
    assert message["type"] == "quotes"
    assert [quote["symbol"] for quote in message["quotes"]] == ["AAPL", "MSFT"]
    assert message["quotes"][0]["price"] == 182.52
    assert message["quotes"][0]["change_percent"] == 0.0


def test_quote_stream_rejects_unknown_symbols(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/quotes?symbols=NOPE") as websocket:
            websocket.receive_json()

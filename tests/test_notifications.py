import asyncio
import json
import threading

import pytest

from photo_batch.notifications import NotificationHub, RedisNotifier, WebSocketConnection, job_event


class FakeConnection:
    def __init__(self, broken: bool = False) -> None:
        self.sent: list[dict] = []
        self.broken = broken

    def send(self, event: dict) -> None:
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(event)


def _event(job_id: str = "j1") -> dict:
    return job_event("job_completed", {"job_id": job_id, "type": "fitting", "status": "completed", "progress": 100})


def test_event_reaches_every_device_of_the_user() -> None:
    hub = NotificationHub()
    phone, laptop, other = FakeConnection(), FakeConnection(), FakeConnection()
    hub.subscribe("u1", phone)
    hub.subscribe("u1", laptop)
    hub.subscribe("u2", other)

    assert hub.publish("u1", _event()) == 2

    assert phone.sent[0]["type"] == "job_completed"
    assert laptop.sent == phone.sent
    assert other.sent == []
    assert hub.online_users() == 2
    assert hub.connection_count() == 3


def test_event_for_offline_user_is_dropped() -> None:
    hub = NotificationHub()
    assert hub.publish("ghost", _event()) == 0


def test_broken_connection_is_removed() -> None:
    hub = NotificationHub()
    good, bad = FakeConnection(), FakeConnection(broken=True)
    hub.subscribe("u1", good)
    hub.subscribe("u1", bad)

    assert hub.publish("u1", _event()) == 1
    assert hub.connection_count() == 1
    assert hub.publish("u1", _event("j2")) == 1
    assert [e["job_id"] for e in good.sent] == ["j1", "j2"]


def test_unsubscribe_last_connection_forgets_user() -> None:
    hub = NotificationHub()
    conn = FakeConnection()
    hub.subscribe("u1", conn)

    assert hub.unsubscribe("u1", conn) == 0
    assert hub.online_users() == 0
    assert hub.unsubscribe("u1", conn) == 0


def test_job_event_shape() -> None:
    event = job_event("job_retrying", {"job_id": "j9", "type": "travel", "status": "processing", "progress": 10}, attempt=2)

    assert event["type"] == "job_retrying"
    assert event["job_id"] == "j9"
    assert event["job_type"] == "travel"
    assert event["attempt"] == 2
    assert isinstance(event["timestamp"], int)


def test_relay_delivers_published_message_to_hub(redis_conn) -> None:
    hub = NotificationHub()
    conn = FakeConnection()
    hub.subscribe("u1", conn)
    relay = RedisNotifier(redis_conn, "test:notify")
    pubsub = redis_conn.pubsub(ignore_subscribe_messages=True)
    pubsub.subscribe("test:notify")

    assert relay.publish("u1", _event()) == 1
    message = None
    for _ in range(5):
        message = pubsub.get_message(timeout=0.2)
        if message:
            break
    assert relay.handle_message(hub, message) == 1
    assert conn.sent[0]["job_id"] == "j1"
    pubsub.close()


def test_relay_ignores_malformed_messages() -> None:
    hub = NotificationHub()
    conn = FakeConnection()
    hub.subscribe("u1", conn)
    relay = RedisNotifier(None, "test:notify")

    assert relay.handle_message(hub, {"type": "subscribe", "data": 1}) == 0
    assert relay.handle_message(hub, {"type": "message", "data": "not json"}) == 0
    assert relay.handle_message(hub, {"type": "message", "data": json.dumps({"event": {}})}) == 0
    assert conn.sent == []


class FakeSocket:
    def __init__(self, broken: bool = False) -> None:
        self.sent: list[dict] = []
        self.broken = broken

    async def send_json(self, data: dict) -> None:
        if self.broken:
            raise RuntimeError("client went away")
        self.sent.append(data)


@pytest.fixture
def running_loop():
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    yield loop
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=2)
    loop.close()


def test_websocket_send_waits_for_delivery(running_loop) -> None:
    socket = FakeSocket()
    WebSocketConnection(socket, running_loop).send(_event())

    assert socket.sent[0]["job_id"] == "j1"


def test_failed_websocket_send_drops_connection(running_loop) -> None:
    hub = NotificationHub()
    hub.subscribe("u1", WebSocketConnection(FakeSocket(broken=True), running_loop))

    with pytest.raises(RuntimeError, match="client went away"):
        WebSocketConnection(FakeSocket(broken=True), running_loop).send(_event())

    assert hub.publish("u1", _event()) == 0
    assert hub.connection_count() == 0
    assert hub.online_users() == 0


def test_send_on_closed_loop_fails() -> None:
    loop = asyncio.new_event_loop()
    loop.close()

    with pytest.raises(RuntimeError, match="event loop closed"):
        WebSocketConnection(FakeSocket(), loop).send(_event())

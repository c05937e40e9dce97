import asyncio
import concurrent.futures
import json
import threading
import time
from typing import Any, Protocol

from loguru import logger
from redis import Redis, RedisError


class Connection(Protocol):
    def send(self, event: dict) -> None: ...


class Notifier(Protocol):
    def publish(self, user_id: str, event: dict) -> int: ...


def job_event(event_type: str, job: dict, **extra: Any) -> dict:
    event = {
        "type": event_type,
        "job_id": job["job_id"],
        "job_type": job.get("type"),
        "status": job.get("status"),
        "progress": job.get("progress", 0),
        "timestamp": int(time.time() * 1000),
    }
    event.update(extra)
    return event


class NotificationHub:
    """Live connections of this process, grouped by user.

    Created once at startup and torn down with the process; entries come and
    go as clients connect and disconnect.
    """

    def __init__(self) -> None:
        self._clients: dict[str, set[Connection]] = {}
        self._lock = threading.Lock()

    def subscribe(self, user_id: str, connection: Connection) -> int:
        with self._lock:
            conns = self._clients.setdefault(user_id, set())
            conns.add(connection)
            count = len(conns)
        logger.info(f"user {user_id} connected, connections={count}")
        return count

    def unsubscribe(self, user_id: str, connection: Connection) -> int:
        with self._lock:
            conns = self._clients.get(user_id)
            if not conns:
                return 0
            conns.discard(connection)
            count = len(conns)
            if not conns:
                del self._clients[user_id]
        logger.info(f"user {user_id} disconnected, connections={count}")
        return count

    def publish(self, user_id: str, event: dict) -> int:
        with self._lock:
            targets = list(self._clients.get(user_id, ()))
        if not targets:
            logger.debug(f"no live connection for user {user_id}, dropping {event.get('type')}")
            return 0

        sent = 0
        for conn in targets:
            try:
                conn.send(event)
                sent += 1
            except Exception as exc:
                logger.warning(f"dropping broken connection for user {user_id}: {exc}")
                self.unsubscribe(user_id, conn)
        return sent

    def online_users(self) -> int:
        with self._lock:
            return len(self._clients)

    def connection_count(self) -> int:
        with self._lock:
            return sum(len(c) for c in self._clients.values())

    def clear(self) -> None:
        with self._lock:
            self._clients.clear()


class RedisNotifier:
    """Carries events from any process to the hubs of API processes."""

    def __init__(self, conn: Redis, channel: str) -> None:
        self.conn = conn
        self.channel = channel

    def publish(self, user_id: str, event: dict) -> int:
        try:
            return int(self.conn.publish(self.channel, json.dumps({"user_id": user_id, "event": event})))
        except RedisError as exc:
            logger.warning(f"notification for user {user_id} lost: {exc}")
            return 0

    def handle_message(self, hub: NotificationHub, message: dict) -> int:
        if message.get("type") != "message":
            return 0
        try:
            body = json.loads(message["data"])
            user_id, event = str(body["user_id"]), body["event"]
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning(f"ignoring malformed notification: {exc}")
            return 0
        return hub.publish(user_id, event)

    def listen(self, hub: NotificationHub, stop: threading.Event) -> None:
        pubsub = self.conn.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(self.channel)
        try:
            while not stop.is_set():
                try:
                    message = pubsub.get_message(timeout=1.0)
                except RedisError as exc:
                    logger.warning(f"notification relay error: {exc}")
                    stop.wait(1.0)
                    continue
                if message:
                    self.handle_message(hub, message)
        finally:
            pubsub.close()


class WebSocketConnection:
    """Thread-safe sender for a Starlette/FastAPI WebSocket.

    ``send`` blocks until the event loop has written the frame, so a dead
    socket raises here and the hub drops it. Never call it from the loop's
    own thread.
    """

    def __init__(self, websocket: Any, loop: asyncio.AbstractEventLoop, send_timeout: float = 5.0) -> None:
        self.websocket = websocket
        self.loop = loop
        self.send_timeout = send_timeout

    def send(self, event: dict) -> None:
        if self.loop.is_closed():
            raise RuntimeError("event loop closed")
        future = asyncio.run_coroutine_threadsafe(self.websocket.send_json(event), self.loop)
        try:
            future.result(timeout=self.send_timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

import fakeredis
import pytest

from photo_batch import config, tasks
from photo_batch.db import init_db
from photo_batch.dispatcher import Dispatcher
from photo_batch.generator import GenerationResult
from photo_batch.queue import JobQueue


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def publish(self, user_id: str, event: dict) -> int:
        self.events.append((user_id, event))
        return 1

    def types(self, job_id: str | None = None) -> list[str]:
        return [e["type"] for _, e in self.events if job_id is None or e["job_id"] == job_id]


class ScriptedGenerator:
    """Plays back a list of results, one per call."""

    def __init__(self, results: list[GenerationResult] | None = None, on_call=None) -> None:
        self.results = list(results or [])
        self.on_call = on_call
        self.requests: list[dict] = []
        self.timeout_sec = 10.0

    def generate(self, request: dict) -> GenerationResult:
        self.requests.append(request)
        if self.on_call:
            self.on_call(request)
        if self.results:
            return self.results.pop(0)
        return GenerationResult.success({"images": [f"https://cdn.example/{request['job_id']}/0.png"]})


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    db_path = tmp_path / "photo_batch.db"

    monkeypatch.setattr(config.settings, "database_path", str(db_path))
    monkeypatch.setattr(config.settings, "admin_api_token", "test-admin-token")
    monkeypatch.setattr(config.settings, "callback_token", "")
    monkeypatch.setattr(config.settings, "ws_jwt_secret", "test-ws-secret")
    monkeypatch.setattr(config.settings, "notify_via_redis", False)
    monkeypatch.setattr(config.settings, "job_types", "fitting,photography,travel")
    monkeypatch.setattr(config.settings, "max_batch_size", 50)
    monkeypatch.setattr(config.settings, "credits_per_image", 1)
    monkeypatch.setattr(config.settings, "retry_ceiling", 3)
    monkeypatch.setattr(config.settings, "retry_base_delay_sec", 0.0)
    monkeypatch.setattr(config.settings, "reconcile_grace_sec", 0)
    monkeypatch.setattr(tasks, "_pool", None)

    init_db()
    yield


@pytest.fixture
def redis_conn():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer())


@pytest.fixture
def queue(redis_conn):
    return JobQueue(redis_conn, config.settings.job_type_list(), prefix="test")


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def dispatcher(queue, notifier):
    return Dispatcher(queue, notifier)


@pytest.fixture
def client(redis_conn):
    from fastapi.testclient import TestClient

    from photo_batch.api.main import app, configure_app

    configure_app(app, redis_conn)
    return TestClient(app)

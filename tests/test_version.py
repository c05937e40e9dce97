from fastapi.testclient import TestClient

from photo_batch.api.main import app
from photo_batch.config import settings


def test_version() -> None:
    c = TestClient(app)
    r = c.get('/version')
    assert r.status_code == 200
    body = r.json()
    assert body['data'] == {'service': 'photo-batch', 'version': settings.app_version}
    assert body['meta']['version'] == settings.app_version

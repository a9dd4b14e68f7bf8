from fastapi.testclient import TestClient

from commercepix.api.main import app
from commercepix.config import settings


def test_version() -> None:
    c = TestClient(app)
    r = c.get('/version')
    assert r.status_code == 200
    body = r.json()
    assert body['data']['version'] == settings.app_version
    assert body['meta']['model_version'] == settings.app_version
    assert body['error'] is None

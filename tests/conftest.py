from uuid import uuid4

import httpx
import pytest

from commercepix import config, db, provider, storage
from commercepix.db import init_db

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class FakeProvider:
    def __init__(self) -> None:
        self.result = b"\x89PNG\r\n\x1a\ngenerated"
        self.error: Exception | None = None
        self.calls: list[dict] = []

    def generate(self, instruction_text: str, image_bytes: bytes, mime_type: str = "image/png") -> bytes:
        self.calls.append({"instruction_text": instruction_text, "image_bytes": image_bytes, "mime_type": mime_type})
        if self.error is not None:
            raise self.error
        return self.result


def _signed_url_handler(store: storage.LocalObjectStorage):
    # Plays the part of the API's /v1/storage route for worker fetches.
    def handler(request: httpx.Request) -> httpx.Response:
        rest = request.url.path.removeprefix("/v1/storage/")
        bucket, _, path = rest.partition("/")
        params = request.url.params
        if not store.verify_signature(bucket, path, int(params["expires"]), params["signature"]):
            return httpx.Response(403)
        if not store.exists(bucket, path):
            return httpx.Response(404)
        return httpx.Response(200, content=store.read_bytes(bucket, path))

    return handler


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    db_path = tmp_path / "commercepix.db"
    storage_dir = tmp_path / "storage"
    storage_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setattr(config.settings, "database_path", str(db_path))
    monkeypatch.setattr(config.settings, "storage_dir", str(storage_dir))
    monkeypatch.setattr(config.settings, "storage_signing_key", "test-signing-key")
    monkeypatch.setattr(config.settings, "api_base_url", "http://testserver")
    monkeypatch.setattr(config.settings, "admin_api_token", "test-admin-token")
    monkeypatch.setattr(config.settings, "rate_limit_per_minute", 10)
    monkeypatch.setattr(config.settings, "rate_limit_per_day", 100)
    monkeypatch.setattr(config.settings, "generation_cost_units", 1)

    init_db()
    yield


@pytest.fixture(autouse=True)
def object_store(_isolated_env, monkeypatch) -> storage.LocalObjectStorage:
    s = config.settings
    store = storage.LocalObjectStorage(
        root=s.storage_dir,
        signing_key=s.storage_signing_key,
        base_url=s.api_base_url,
        buckets=(s.input_bucket, s.output_bucket),
    )
    store.transport = httpx.MockTransport(_signed_url_handler(store))
    monkeypatch.setattr(storage, "get_storage", lambda: store)
    return store


@pytest.fixture(autouse=True)
def fake_provider(monkeypatch) -> FakeProvider:
    fake = FakeProvider()
    monkeypatch.setattr(provider, "get_provider", lambda: fake)
    return fake


@pytest.fixture
def make_input_asset(object_store):
    def _make(user_id: str = "user-1", project_id: str = "proj-1", data: bytes = PNG_BYTES) -> str:
        asset_id = str(uuid4())
        path = f"{user_id}/{project_id}/{asset_id}.png"
        object_store.upload_bytes(config.settings.input_bucket, path, data, "image/png")
        db.create_asset(
            asset_id=asset_id,
            user_id=user_id,
            project_id=project_id,
            kind="input",
            storage_bucket=config.settings.input_bucket,
            storage_path=path,
            mime_type="image/png",
        )
        return asset_id

    return _make


@pytest.fixture
def make_job(make_input_asset):
    def _make(user_id: str = "user-1", project_id: str = "proj-1", mode: str = "main_white") -> str:
        job_id = str(uuid4())
        db.create_job(
            job_id=job_id,
            user_id=user_id,
            project_id=project_id,
            mode=mode,
            input_asset_id=make_input_asset(user_id, project_id),
        )
        return job_id

    return _make

import hashlib
import hmac
import mimetypes
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from urllib.parse import quote, urlencode

import httpx

from commercepix.config import settings


class StorageError(RuntimeError):
    pass


@dataclass(frozen=True)
class StoredObject:
    bucket: str
    path: str
    size: int
    content_type: str


class LocalObjectStorage:
    """Private buckets on the local filesystem, read through signed URLs.

    Signed URLs point at the API's ``/v1/storage`` route, which checks the
    signature and expiry before serving the object.
    """

    def __init__(
        self,
        root: str,
        signing_key: str,
        base_url: str,
        buckets: tuple[str, ...],
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.root = Path(root)
        self.signing_key = signing_key.encode("utf-8")
        self.base_url = base_url.rstrip("/")
        self.buckets = buckets
        self.transport = transport

    def _object_path(self, bucket: str, path: str) -> Path:
        if bucket not in self.buckets:
            raise StorageError(f"unknown bucket: {bucket}")
        parts = PurePosixPath(path).parts
        if not parts or path.startswith("/") or any(p in {"..", "."} for p in parts):
            raise StorageError(f"invalid object path: {path}")
        return self.root / bucket / Path(*parts)

    def _sign(self, bucket: str, path: str, expires: int) -> str:
        msg = f"{bucket}/{path}:{expires}".encode("utf-8")
        return hmac.new(self.signing_key, msg, hashlib.sha256).hexdigest()

    def upload_bytes(self, bucket: str, path: str, data: bytes, content_type: str) -> StoredObject:
        target = self._object_path(bucket, path)
        if target.exists():
            raise StorageError(f"object already exists: {bucket}/{path}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise StorageError(f"upload to {bucket}/{path} failed: {exc}") from exc
        return StoredObject(bucket=bucket, path=path, size=len(data), content_type=content_type)

    def signed_read_url(self, bucket: str, path: str, ttl_seconds: int) -> str:
        self._object_path(bucket, path)
        expires = int(time.time()) + ttl_seconds
        query = urlencode({"expires": expires, "signature": self._sign(bucket, path, expires)})
        return f"{self.base_url}/v1/storage/{quote(bucket)}/{quote(path)}?{query}"

    def verify_signature(self, bucket: str, path: str, expires: int, signature: str) -> bool:
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self._sign(bucket, path, expires), signature)

    def exists(self, bucket: str, path: str) -> bool:
        return self._object_path(bucket, path).is_file()

    def read_bytes(self, bucket: str, path: str) -> bytes:
        target = self._object_path(bucket, path)
        try:
            return target.read_bytes()
        except OSError as exc:
            raise StorageError(f"read of {bucket}/{path} failed: {exc}") from exc

    def content_type(self, path: str) -> str:
        return mimetypes.guess_type(path)[0] or "application/octet-stream"

    def fetch(self, url: str, timeout_sec: int) -> bytes:
        try:
            with httpx.Client(timeout=timeout_sec, transport=self.transport) as client:
                r = client.get(url)
                r.raise_for_status()
                return r.content
        except httpx.HTTPStatusError as exc:
            raise StorageError(f"signed fetch returned http_{exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise StorageError(f"signed fetch failed: {exc}") from exc


def get_storage() -> LocalObjectStorage:
    return LocalObjectStorage(
        root=settings.storage_dir,
        signing_key=settings.storage_signing_key,
        base_url=settings.api_base_url,
        buckets=(settings.input_bucket, settings.output_bucket),
    )

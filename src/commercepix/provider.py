import base64
import binascii
import logging
import time

import httpx

from commercepix.config import settings

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    pass


class ProviderTimeoutError(ProviderError):
    pass


class ProviderResponseError(ProviderError):
    pass


class ImageProviderClient:
    """Image edit client for an OpenAI-compatible ``/images/edits`` endpoint."""

    def __init__(self, transport: httpx.BaseTransport | None = None) -> None:
        self.base_url = settings.openai_base_url.rstrip("/")
        self.api_key = settings.openai_api_key
        self.model = settings.openai_image_model
        self.size = settings.image_size
        self.transport = transport

    def _headers(self) -> dict:
        if not self.api_key:
            raise ProviderError("OPENAI_API_KEY is not set")
        return {"Authorization": f"Bearer {self.api_key}"}

    def _post_edit(self, data: dict, files: dict) -> dict:
        attempts = max(1, settings.provider_max_attempts)
        last_err: Exception | None = None
        for attempt in range(attempts):
            try:
                with httpx.Client(timeout=settings.provider_timeout_sec, transport=self.transport) as client:
                    r = client.post(f"{self.base_url}/images/edits", headers=self._headers(), data=data, files=files)
                    r.raise_for_status()
                    return r.json()
            except httpx.TimeoutException as exc:
                last_err = ProviderTimeoutError(f"provider_timeout: {exc}")
            except httpx.HTTPStatusError as exc:
                code = exc.response.status_code
                if code in {429, 500, 502, 503, 504}:
                    last_err = ProviderError(f"transient_http_{code}")
                else:
                    raise ProviderError(f"http_{code}: {exc.response.text[:300]}") from exc
            except httpx.HTTPError as exc:
                last_err = ProviderError(str(exc))

            if attempt + 1 < attempts:
                logger.warning("provider attempt %s failed: %s", attempt + 1, last_err)
                time.sleep(0.6 * (attempt + 1))

        assert last_err is not None
        raise last_err

    def generate(self, instruction_text: str, image_bytes: bytes, mime_type: str = "image/png") -> bytes:
        data = {
            "model": self.model,
            "prompt": instruction_text,
            "n": "1",
            "size": self.size,
            "response_format": "b64_json",
        }
        files = {"image": ("input.png", image_bytes, mime_type)}
        payload = self._post_edit(data, files)

        try:
            b64 = payload["data"][0]["b64_json"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderResponseError("no image data returned from provider") from exc
        if not b64:
            raise ProviderResponseError("no image data returned from provider")

        try:
            return base64.b64decode(b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ProviderResponseError("provider returned invalid base64 image data") from exc


def get_provider() -> ImageProviderClient:
    return ImageProviderClient()

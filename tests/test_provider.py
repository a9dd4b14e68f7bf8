import base64

import httpx
import pytest

from commercepix import config, provider
from commercepix.provider import ImageProviderClient, ProviderError, ProviderResponseError, ProviderTimeoutError


@pytest.fixture(autouse=True)
def _provider_settings(monkeypatch):
    monkeypatch.setattr(config.settings, "openai_api_key", "sk-test")
    monkeypatch.setattr(config.settings, "openai_base_url", "https://images.test/v1")
    monkeypatch.setattr(config.settings, "provider_max_attempts", 2)
    monkeypatch.setattr(provider.time, "sleep", lambda _: None)


def _client(handler) -> ImageProviderClient:
    return ImageProviderClient(transport=httpx.MockTransport(handler))


def test_generate_posts_edit_and_decodes_image() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": [{"b64_json": base64.b64encode(b"img").decode()}]})

    assert _client(handler).generate("make it white", b"input") == b"img"

    request = seen[0]
    assert request.url == "https://images.test/v1/images/edits"
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = request.content
    assert b"make it white" in body
    assert b'name="image"' in body


def test_transient_errors_are_retried() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"data": [{"b64_json": base64.b64encode(b"ok").decode()}]})

    assert _client(handler).generate("prompt", b"input") == b"ok"
    assert len(calls) == 2


def test_transient_errors_exhaust_attempts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429)

    with pytest.raises(ProviderError, match="transient_http_429"):
        _client(handler).generate("prompt", b"input")


def test_client_errors_are_not_retried() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400, text="invalid image")

    with pytest.raises(ProviderError, match="http_400: invalid image"):
        _client(handler).generate("prompt", b"input")
    assert len(calls) == 1


def test_timeouts_raise_timeout_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(ProviderTimeoutError):
        _client(handler).generate("prompt", b"input")


@pytest.mark.parametrize("payload", [{"data": []}, {"data": [{"b64_json": ""}]}, {"data": [{"b64_json": "@@@"}]}])
def test_bad_payloads_raise_response_error(payload) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=payload)

    with pytest.raises(ProviderResponseError):
        _client(handler).generate("prompt", b"input")


def test_missing_api_key(monkeypatch) -> None:
    monkeypatch.setattr(config.settings, "openai_api_key", "")
    with pytest.raises(ProviderError, match="OPENAI_API_KEY"):
        ImageProviderClient().generate("prompt", b"input")

import asyncio
import json
from typing import Any

import httpx
import pytest

from chatrelay.providers.base import ProviderError, raise_for_status
from chatrelay.providers.gemini import GeminiProvider
from chatrelay.providers.http_openai import HTTPOpenAIProvider
from chatrelay.providers.stub import StubProvider


class _Recorder:
    def __init__(self, response: httpx.Response | None = None, error: Exception | None = None):
        self.response = response
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        self.calls.append({"url": url, **kwargs})
        if self.error is not None:
            raise self.error
        assert self.response is not None
        return self.response


def _patch_post(monkeypatch: pytest.MonkeyPatch, recorder: _Recorder) -> None:
    async def fake_post(client: httpx.AsyncClient, url: str, **kwargs: Any) -> httpx.Response:
        return await recorder.post(url, **kwargs)

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)


def test_raise_for_status_rate_limit() -> None:
    with pytest.raises(ProviderError, match="rate limit") as exc_info:
        raise_for_status(httpx.Response(status_code=429))

    assert exc_info.value.code == "provider_rate_limited"


@pytest.mark.parametrize("status_code", [502, 503])
def test_raise_for_status_upstream(status_code: int) -> None:
    with pytest.raises(ProviderError) as exc_info:
        raise_for_status(httpx.Response(status_code=status_code))

    assert exc_info.value.code == "provider_upstream_error"


def test_raise_for_status_generic_error() -> None:
    with pytest.raises(ProviderError, match="Provider returned 400"):
        raise_for_status(httpx.Response(status_code=400, text="bad request"))


def test_gemini_extract_text_joins_parts() -> None:
    result = {"candidates": [{"content": {"parts": [{"text": "Hello "}, {"text": "world"}]}}]}

    assert GeminiProvider.extract_text(result) == "Hello world"
    assert GeminiProvider.extract_text({"candidates": []}) == ""
    assert GeminiProvider.extract_text({"candidates": [{"content": None}]}) == ""


def test_openai_extract_text() -> None:
    result = {"choices": [{"message": {"role": "assistant", "content": " hi "}}]}

    assert HTTPOpenAIProvider.extract_text(result) == "hi"
    assert HTTPOpenAIProvider.extract_text({"choices": [{"message": {"content": None}}]}) == ""


def test_gemini_request_shape(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = _Recorder(
        httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "ok"}]}}]})
    )
    _patch_post(monkeypatch, recorder)
    provider = GeminiProvider(
        api_key="g-key", model="gemini-1.5-flash", base_url="https://gemini.test/"
    )

    text = asyncio.run(provider.generate("hello", json_output=True))

    assert text == "ok"
    call = recorder.calls[0]
    assert call["url"] == "https://gemini.test/v1beta/models/gemini-1.5-flash:generateContent"
    assert call["params"] == {"key": "g-key"}
    assert call["json"]["contents"] == [{"role": "user", "parts": [{"text": "hello"}]}]
    assert call["json"]["generationConfig"] == {"responseMimeType": "application/json"}


def test_openai_request_shape(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = _Recorder(httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]}))
    _patch_post(monkeypatch, recorder)
    provider = HTTPOpenAIProvider(
        base_url="https://llm.test", api_key="secret", model="gpt-4o-mini"
    )

    text = asyncio.run(provider.generate("hello"))

    assert text == "ok"
    call = recorder.calls[0]
    assert call["url"] == "https://llm.test/v1/chat/completions"
    assert call["headers"]["Authorization"] == "Bearer secret"
    assert call["json"]["messages"] == [{"role": "user", "content": "hello"}]
    assert "response_format" not in call["json"]


@pytest.mark.parametrize(
    ("error", "status_code", "code"),
    [
        (httpx.ReadTimeout("slow"), 503, "provider_timeout"),
        (httpx.ConnectError("refused"), 502, "provider_connection_error"),
        (httpx.RemoteProtocolError("reset"), 502, "provider_transport_error"),
    ],
)
def test_transport_failures_map_to_provider_errors(
    monkeypatch: pytest.MonkeyPatch, error: Exception, status_code: int, code: str
) -> None:
    _patch_post(monkeypatch, _Recorder(error=error))
    provider = HTTPOpenAIProvider(base_url="https://llm.test", api_key="k", model="m")

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(provider.generate("hello"))

    assert (exc_info.value.status_code, exc_info.value.code) == (status_code, code)


def test_empty_output_is_an_error(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_post(monkeypatch, _Recorder(httpx.Response(200, json={"candidates": []})))
    provider = GeminiProvider(api_key="k", model="m")

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(provider.generate("hello"))

    assert exc_info.value.code == "provider_empty_output"


def test_non_json_body_is_an_error(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_post(monkeypatch, _Recorder(httpx.Response(200, text="<html>")))
    provider = GeminiProvider(api_key="k", model="m")

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(provider.generate("hello"))

    assert exc_info.value.code == "provider_invalid_response"


def test_stub_provider_echoes_last_line() -> None:
    reply = asyncio.run(StubProvider().generate("You are helpful.\n\nUser: hi there"))

    assert reply == "Stub response: User: hi there"


def test_stub_provider_classifier_output_flags_trolls() -> None:
    raw = asyncio.run(StubProvider().generate("Message: \"you noob\"", json_output=True))

    assert json.loads(raw)["is_troll"] is True


def test_stub_provider_simulated_failure() -> None:
    with pytest.raises(ProviderError):
        asyncio.run(StubProvider().generate("please error-502"))

"""Tests for provider setup: model listing validation and agent creation."""

import json
from http import HTTPStatus
from typing import Any

import httpx
import pytest
from pydantic_ai import Agent

import car_identifier.main as m


class _DummyResponse:
    """Minimal httpx-style response stub for validation tests."""

    def __init__(self, status_code: int, payload: Any) -> None:  # noqa: ANN401
        self.status_code = status_code
        self._payload = payload

    def json(self) -> Any:  # noqa: ANN401
        return self._payload

    @property
    def text(self) -> str:
        return json.dumps(self._payload)


def _patch_httpx_get(
    monkeypatch: pytest.MonkeyPatch,
    response: _DummyResponse,
) -> list[dict[str, Any]]:
    calls: list[dict[str, Any]] = []

    def fake_get(url: str, *, headers: dict[str, str], timeout: float) -> _DummyResponse:
        calls.append({"url": url, "headers": headers, "timeout": timeout})
        return response

    monkeypatch.setattr(m.httpx, "get", fake_get)  # type: ignore[attr-defined]
    return calls


def test_validate_model_listed_passes_when_list_contains_id(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """The helper returns quietly when the requested model identifier is present."""
    payload = {"data": [{"id": "qwen/qwen3-vl-30b"}]}
    calls = _patch_httpx_get(monkeypatch, _DummyResponse(HTTPStatus.OK, payload))

    m._validate_model_listed("http://localhost:1234/v1", "qwen/qwen3-vl-30b", "secret")  # noqa: SLF001

    (recorded,) = calls
    assert recorded["url"] == "http://localhost:1234/v1/models"
    assert recorded["timeout"] == pytest.approx(5.0)
    assert recorded["headers"]["Authorization"] == "Bearer secret"


def test_validate_model_listed_exits_when_model_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    """SystemExit is raised when the requested model identifier is absent."""
    payload = {"data": [{"id": "other-model"}]}
    _patch_httpx_get(monkeypatch, _DummyResponse(HTTPStatus.OK, payload))

    with pytest.raises(SystemExit):
        m._validate_model_listed("http://localhost:1234/v1", "qwen/qwen3-vl-30b", None)  # noqa: SLF001


def test_validate_model_listed_exits_on_http_error(monkeypatch: pytest.MonkeyPatch) -> None:
    """An unreachable server stops the run before any image is sent."""

    def failing_get(url: str, *, headers: dict[str, str], timeout: float) -> None:
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(m.httpx, "get", failing_get)  # type: ignore[attr-defined]

    with pytest.raises(SystemExit):
        m._validate_model_listed("http://localhost:1234/v1", "any", None)  # noqa: SLF001


def test_validate_model_listed_rejects_non_http_urls() -> None:
    """Non-HTTP base URLs are refused without a request."""
    with pytest.raises(SystemExit):
        m._validate_model_listed("ftp://localhost/v1", "any", None)  # noqa: SLF001


def test_validate_model_listed_exits_on_error_status(monkeypatch: pytest.MonkeyPatch) -> None:
    """A non-200 listing is rejected even if the model id appears in the body."""
    payload = {"data": [{"id": "any"}]}
    _patch_httpx_get(monkeypatch, _DummyResponse(HTTPStatus.UNAUTHORIZED, payload))

    with pytest.raises(SystemExit):
        m._validate_model_listed("http://localhost:1234/v1", "any", None)  # noqa: SLF001


def test_create_agent_requires_openai_key(monkeypatch: pytest.MonkeyPatch) -> None:
    """The OpenAI provider cannot start without an API key."""
    monkeypatch.setitem(m.PROVIDER_API_KEYS, "openai", None)

    with pytest.raises(SystemExit):
        m.create_agent("openai", "gpt-4o", api_base_url=None, api_key=None)


def test_create_agent_builds_text_agent_for_openai() -> None:
    """With a key, an agent is built without touching the network."""
    agent = m.create_agent("openai", "gpt-4o", api_base_url=None, api_key="sk-test")

    assert isinstance(agent, Agent)


def test_create_agent_validates_lmstudio_model(monkeypatch: pytest.MonkeyPatch) -> None:
    """LM Studio models are checked against the server's model listing."""
    calls = _patch_httpx_get(
        monkeypatch,
        _DummyResponse(HTTPStatus.OK, {"data": [{"id": "qwen/qwen3-vl-30b"}]}),
    )

    agent = m.create_agent(
        "lmstudio",
        "qwen/qwen3-vl-30b",
        api_base_url="http://localhost:1234/v1",
        api_key=None,
    )

    assert isinstance(agent, Agent)
    assert len(calls) == 1

import asyncio

import httpx

from oralboard.services import elevenlabs_client
from oralboard.services.elevenlabs_client import ElevenLabsClient, normalize_conversation_detail


def _install_transport(monkeypatch, handler):
    real_async_client = httpx.AsyncClient
    transport = httpx.MockTransport(handler)

    def _factory(*args, **kwargs):
        kwargs["transport"] = transport
        return real_async_client(*args, **kwargs)

    monkeypatch.setattr(elevenlabs_client.httpx, "AsyncClient", _factory)


def test_direct_transcript_string_is_preferred():
    detail = normalize_conversation_detail("conv-1", {
        "transcript": "Hello\nHi there",
        "messages": [
            {"role": "user", "content": "Hello"},
            {"role": "assistant", "content": "Hi there"},
        ],
    })
    assert detail.transcript == "Hello\nHi there"
    assert [t.role for t in detail.turns] == ["user", "assistant"]
    assert [t.index for t in detail.turns] == [0, 1]


def test_transcript_synthesized_from_messages_with_mixed_keys():
    detail = normalize_conversation_detail("conv-1", {
        "messages": [
            {"sender": "user", "message": "I have a patient with chest pain", "created_at": "2025-01-01T10:00:00Z"},
            {"role": "agent", "content": "What is your first step?", "timestamp": "2025-01-01T10:00:05Z"},
            {"role": "assistant", "content": ""},
        ],
    })
    assert detail.transcript == "user: I have a patient with chest pain\nassistant: What is your first step?"
    assert len(detail.turns) == 2
    assert detail.turns[0].timestamp == "2025-01-01T10:00:00Z"
    assert detail.turns[1].role == "assistant"


def test_list_shaped_transcript_with_provider_metadata():
    detail = normalize_conversation_detail("conv-9", {
        "transcript": [
            {"role": "agent", "message": "Welcome to the oral board.", "time_in_call_secs": 0},
            {"role": "user", "message": "Thank you.", "time_in_call_secs": 4.5},
        ],
        "metadata": {"call_duration_secs": 312, "start_time_unix_secs": 1735725600},
        "has_audio": True,
    }, base_url="https://api.example")
    assert detail.transcript == "assistant: Welcome to the oral board.\nuser: Thank you."
    assert detail.duration_seconds == 312
    assert detail.audio_url == "https://api.example/v1/convai/conversations/conv-9/audio"
    assert detail.turns[1].offset_seconds == 4.5
    assert detail.started_at.startswith("2025-01-01T10:00:00")


def test_empty_payload_normalizes_to_empty_detail():
    detail = normalize_conversation_detail("conv-1", {})
    assert detail.transcript == ""
    assert detail.turns == []
    assert detail.audio_url is None
    assert detail.duration_seconds is None


def test_get_conversation_sends_api_key_and_normalizes(monkeypatch):
    seen = {}

    def _handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("xi-api-key")
        return httpx.Response(200, json={
            "transcript": "Hello\nHi there",
            "messages": [{"role": "user", "content": "Hello"}, {"role": "assistant", "content": "Hi there"}],
            "audio_url": "https://cdn.example/conv-1.mp3",
            "duration_seconds": 42,
        })

    _install_transport(monkeypatch, _handler)
    client = ElevenLabsClient(api_key="xi-test", base_url="https://api.example")
    detail = asyncio.run(client.get_conversation("conv-1"))

    assert seen["url"] == "https://api.example/v1/convai/conversations/conv-1"
    assert seen["key"] == "xi-test"
    assert detail.transcript == "Hello\nHi there"
    assert detail.audio_url == "https://cdn.example/conv-1.mp3"
    assert detail.duration_seconds == 42
    assert len(detail.turns) == 2


def test_get_conversation_returns_none_on_provider_error(monkeypatch):
    _install_transport(monkeypatch, lambda request: httpx.Response(404, json={"detail": "not found"}))
    client = ElevenLabsClient(api_key="xi-test", base_url="https://api.example")
    assert asyncio.run(client.get_conversation("missing")) is None


def test_get_conversation_returns_none_on_transport_error(monkeypatch):
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    _install_transport(monkeypatch, _handler)
    client = ElevenLabsClient(api_key="xi-test", base_url="https://api.example")
    assert asyncio.run(client.get_conversation("conv-1")) is None


def test_get_conversation_returns_none_on_non_json_body(monkeypatch):
    _install_transport(monkeypatch, lambda request: httpx.Response(200, text="<html>oops</html>"))
    client = ElevenLabsClient(api_key="xi-test", base_url="https://api.example")
    assert asyncio.run(client.get_conversation("conv-1")) is None


def test_client_reads_environment(monkeypatch):
    monkeypatch.setenv("ELEVENLABS_API_KEY", "xi-env")
    monkeypatch.setenv("ELEVENLABS_API_BASE_URL", "https://proxy.example/")
    client = ElevenLabsClient()
    assert client.configured
    assert client.api_key == "xi-env"
    assert client.base_url == "https://proxy.example"

    monkeypatch.delenv("ELEVENLABS_API_KEY")
    assert not ElevenLabsClient().configured

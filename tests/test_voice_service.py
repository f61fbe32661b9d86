import httpx
import pytest

from app.core.errors import (
    ConfigurationError,
    ProviderRateLimited,
    ProviderRejected,
    ProviderTimeout,
    SpeechSynthesisFailed,
    VoiceCloneFailed,
)
from app.core.supabase_client import set_http_client
from app.services.voice_service import (
    ALLOWED_VOICES,
    DEFAULT_CLONE_NAME,
    MIN_VOICE_SAMPLE_BYTES,
    clone_voice,
    is_preset_voice,
    list_voices,
    synthesize_speech,
)

SAMPLE = b"\x1aE\xdf\xa3" + b"\x00" * MIN_VOICE_SAMPLE_BYTES


@pytest.fixture
def elevenlabs():
    """Route the shared HTTP client through a handler set by each test"""
    calls = []
    state = {"handler": None}

    def dispatch(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return state["handler"](request)

    def respond_with(handler):
        state["handler"] = handler
        return calls

    set_http_client(httpx.AsyncClient(transport=httpx.MockTransport(dispatch)))
    yield respond_with
    set_http_client(None)


def test_preset_voices_need_no_network():
    voices = list_voices()
    assert len(voices) == 10
    assert voices[0]["name"] == "Sarah"
    assert all(is_preset_voice(voice["voice_id"]) for voice in ALLOWED_VOICES)
    assert not is_preset_voice("my-clone")


async def test_clone_voice_posts_sample_with_default_name(elevenlabs):
    calls = elevenlabs(lambda request: httpx.Response(200, json={"voice_id": "clone-1"}))

    cloned = await clone_voice(SAMPLE, None)

    assert cloned.voice_id == "clone-1"
    assert cloned.voice_name == DEFAULT_CLONE_NAME
    request = calls[0]
    assert request.url.path == "/v1/voices/add"
    assert request.headers["xi-api-key"] == "xi-test"
    assert DEFAULT_CLONE_NAME.encode() in request.content


async def test_short_sample_is_rejected_without_a_call(elevenlabs):
    calls = elevenlabs(lambda request: httpx.Response(200, json={"voice_id": "clone-1"}))

    with pytest.raises(ProviderRejected):
        await clone_voice(b"too short", "Me")
    assert calls == []


async def test_clone_error_carries_provider_body(elevenlabs):
    elevenlabs(lambda request: httpx.Response(500, json={"detail": "internal"}))

    with pytest.raises(VoiceCloneFailed) as exc_info:
        await clone_voice(SAMPLE, "Me")
    assert exc_info.value.detail == {"detail": "internal"}


async def test_clone_without_voice_id_fails(elevenlabs):
    elevenlabs(lambda request: httpx.Response(200, json={"name": "Me"}))

    with pytest.raises(VoiceCloneFailed):
        await clone_voice(SAMPLE, "Me")


async def test_synthesize_speech_returns_mp3_bytes(elevenlabs):
    calls = elevenlabs(lambda request: httpx.Response(200, content=b"ID3audio"))

    audio = await synthesize_speech("I am calm.", "EXAVITQu4vr4xnSDxMaL")

    assert audio == b"ID3audio"
    assert calls[0].url.path == "/v1/text-to-speech/EXAVITQu4vr4xnSDxMaL"
    assert b"eleven_multilingual_v2" in calls[0].content


async def test_unusual_activity_is_rate_limited(elevenlabs):
    body = {"detail": {"status": "detected_unusual_activity", "message": "Unusual activity detected"}}
    elevenlabs(lambda request: httpx.Response(401, json=body))

    with pytest.raises(ProviderRateLimited) as exc_info:
        await synthesize_speech("I am calm.", "EXAVITQu4vr4xnSDxMaL")
    assert exc_info.value.detail["status"] == "detected_unusual_activity"
    assert exc_info.value.status_code == 429


async def test_other_synthesis_errors_keep_detail(elevenlabs):
    elevenlabs(lambda request: httpx.Response(422, json={"detail": "voice not found"}))

    with pytest.raises(SpeechSynthesisFailed) as exc_info:
        await synthesize_speech("I am calm.", "missing")
    assert exc_info.value.detail == {"detail": "voice not found"}


async def test_empty_audio_fails(elevenlabs):
    elevenlabs(lambda request: httpx.Response(200, content=b""))

    with pytest.raises(SpeechSynthesisFailed):
        await synthesize_speech("I am calm.", "EXAVITQu4vr4xnSDxMaL")


async def test_timeout_is_provider_timeout(elevenlabs):
    def hang(request):
        raise httpx.ReadTimeout("timed out", request=request)

    elevenlabs(hang)

    with pytest.raises(ProviderTimeout):
        await synthesize_speech("I am calm.", "EXAVITQu4vr4xnSDxMaL")


async def test_empty_text_is_rejected(elevenlabs):
    with pytest.raises(ProviderRejected):
        await synthesize_speech("   ", "EXAVITQu4vr4xnSDxMaL")


async def test_missing_key_is_a_configuration_error(monkeypatch):
    monkeypatch.delenv("ELEVENLABS_API_KEY")

    with pytest.raises(ConfigurationError):
        await synthesize_speech("I am calm.", "EXAVITQu4vr4xnSDxMaL")

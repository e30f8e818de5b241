"""
Pytest configuration and fixtures.
"""

import asyncio
import json
import os
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import patch

import pytest

from src.helpline.errors import RecognitionError, RecognitionStreamClosedError


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "TWILIO_PHONE_NUMBER": "+15550001111",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "GROQ_API_KEY": "test_groq_key",
        "GROQ_MODEL": "llama-3.3-70b-versatile",
        "OPENAI_API_KEY": "test_openai_key",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.helpline.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll `predicate` on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeTransport:
    def __init__(self, is_open: bool = True):
        self.is_open = is_open


# ----------------------------------------------------------------------
# Recognition
# ----------------------------------------------------------------------


class FakeRecognitionStream:
    def __init__(self, call_id: str, emit, generation: int):
        self.call_id = call_id
        self.emit = emit
        self.generation = generation
        self.sent: List[bytes] = []
        self.closed = False
        self.fail_sends = False
        self.probes = 0
        self._connected = True

    @property
    def is_connected(self) -> bool:
        return self._connected and not self.closed

    async def send_audio(self, audio_bytes: bytes) -> None:
        if self.fail_sends or self.closed:
            raise RecognitionStreamClosedError("stream is closed")
        self.sent.append(audio_bytes)

    async def probe(self) -> bool:
        self.probes += 1
        return self.is_connected

    async def close(self) -> None:
        self.closed = True


class FakeRecognizerFactory:
    """Callable matching RecognizerFactory; records every stream it opens."""

    def __init__(self, fail_opens: int = 0):
        self.fail_opens = fail_opens
        self.attempts = 0
        self.streams: List[FakeRecognitionStream] = []

    async def __call__(self, call_id: str, emit, generation: int) -> FakeRecognitionStream:
        self.attempts += 1
        if self.fail_opens:
            self.fail_opens -= 1
            raise RecognitionError("recognizer unavailable")
        stream = FakeRecognitionStream(call_id, emit, generation)
        self.streams.append(stream)
        return stream

    @property
    def latest(self) -> FakeRecognitionStream:
        return self.streams[-1]


@pytest.fixture
def recognizer_factory():
    return FakeRecognizerFactory()


# ----------------------------------------------------------------------
# Delivery collaborators
# ----------------------------------------------------------------------


class FakeSynthesizer:
    def __init__(self, audio: Optional[Callable[[str], bytes]] = None):
        self.texts: List[str] = []
        self.closed = False
        self.gate: Optional[asyncio.Event] = None
        self.errors: List[Exception] = []
        self._audio = audio or (lambda text: text.encode("utf-8"))

    async def synthesize(self, text: str) -> bytes:
        self.texts.append(text)
        if self.gate is not None:
            await self.gate.wait()
        if self.errors:
            raise self.errors.pop(0)
        return self._audio(text)

    async def close(self) -> None:
        self.closed = True


class FakeArtifactStore:
    def __init__(self):
        self.files: Dict[str, bytes] = {}
        self.saved: List[str] = []
        self.deleted: List[str] = []

    def url_for(self, artifact_id: str) -> str:
        return f"https://test.ngrok.io/audio/{artifact_id}.wav"

    async def save(self, artifact_id: str, data: bytes) -> str:
        self.files[artifact_id] = data
        self.saved.append(artifact_id)
        return self.url_for(artifact_id)

    async def delete(self, artifact_id: str) -> None:
        self.files.pop(artifact_id, None)
        self.deleted.append(artifact_id)


class FakeTelephony:
    """Records TwiML updates; `errors` are raised by successive calls first."""

    def __init__(self):
        self.updates: List[tuple] = []
        self.attempts = 0
        self.errors: List[Exception] = []
        self.always_fail: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.in_flight = 0
        self.max_in_flight = 0
        self.update_times: List[float] = []
        self.created: List[Dict[str, Any]] = []

    async def update_call(self, call_sid: str, twiml: str) -> None:
        self.attempts += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.errors:
                raise self.errors.pop(0)
            if self.always_fail is not None:
                raise self.always_fail
            self.updates.append((call_sid, twiml))
            self.update_times.append(asyncio.get_running_loop().time())
        finally:
            self.in_flight -= 1

    async def create_call(self, to: str, answer_url: str, status_callback: Optional[str] = None) -> str:
        self.created.append({"to": to, "answer_url": answer_url, "status_callback": status_callback})
        return f"CA{len(self.created):04d}"


class FakeAgent:
    def __init__(self):
        self.replies: List[tuple] = []
        self.welcomes: List[tuple] = []
        self.forgotten: List[str] = []
        self.welcome_error: Optional[Exception] = None

    async def generate_reply(self, call_id, transcript, metadata) -> str:
        self.replies.append((call_id, transcript, dict(metadata)))
        return f"Resposta: {transcript}"

    async def generate_welcome(self, call_id, metadata) -> str:
        self.welcomes.append((call_id, dict(metadata)))
        if self.welcome_error is not None:
            raise self.welcome_error
        return "Olá! Vou te ajudar com isso."

    def forget(self, call_id: str) -> None:
        self.forgotten.append(call_id)


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def artifact_store():
    return FakeArtifactStore()


@pytest.fixture
def telephony():
    return FakeTelephony()


@pytest.fixture
def agent():
    return FakeAgent()


# ----------------------------------------------------------------------
# Twilio media stream messages
# ----------------------------------------------------------------------


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {},
        }
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    import base64

    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": "12345",
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
        "stop": {"callSid": "CA789012", "accountSid": "AC345678"},
    })

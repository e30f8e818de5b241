"""
Speech synthesis providers for reply playback.

Each provider returns a complete WAV file that Twilio can fetch and <Play>.
OpenAI is the default; Cartesia is reached over its REST bytes endpoint.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
import structlog

from src.helpline.audio import write_wav_mono_pcm16
from src.helpline.config import get_config
from src.helpline.errors import SynthesisError

logger = structlog.get_logger(__name__)

CARTESIA_BYTES_URL = "https://api.cartesia.ai/tts/bytes"
CARTESIA_API_VERSION = "2024-06-10"
CARTESIA_SAMPLE_RATE = 8000


class Synthesizer(ABC):
    """Text in, complete WAV bytes out. Raises SynthesisError on failure."""

    @abstractmethod
    async def synthesize(self, text: str) -> bytes:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class OpenAISynthesizer(Synthesizer):
    """
    OpenAI Text-to-Speech provider (non-streaming).

    The blocking SDK call runs in a worker thread.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[Any] = None):
        self.config = config or get_config()
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            from openai import OpenAI  # Local import to keep module import light

            self._client = OpenAI(api_key=self.config.openai_api_key)
        return self._client

    async def synthesize(self, text: str) -> bytes:
        if not text or not text.strip():
            raise SynthesisError("Nothing to synthesize")

        client = self._get_client()

        def _call() -> bytes:
            resp = client.audio.speech.create(
                model=self.config.openai_tts_model,
                voice=self.config.openai_tts_voice,
                input=text,
                response_format="wav",
            )
            # SDKs have varied over time; handle several shapes.
            data = getattr(resp, "content", None)
            if isinstance(data, (bytes, bytearray)):
                return bytes(data)
            read = getattr(resp, "read", None)
            if callable(read):
                return read()
            return bytes(resp)

        try:
            audio = await asyncio.to_thread(_call)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("OpenAI TTS failed", error=str(e))
            raise SynthesisError(f"OpenAI TTS failed: {e}") from e

        if not audio:
            raise SynthesisError("OpenAI TTS returned no audio")
        return audio


class CartesiaSynthesizer(Synthesizer):
    """Cartesia REST (bytes endpoint) provider producing 8kHz mono WAV."""

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client or httpx.AsyncClient(timeout=20.0)

    async def synthesize(self, text: str) -> bytes:
        if not text or not text.strip():
            raise SynthesisError("Nothing to synthesize")

        payload = {
            "model_id": self.config.cartesia_model,
            "transcript": text,
            "voice": {"mode": "id", "id": self.config.cartesia_voice_id},
            "language": (self.config.language or "en").split("-")[0].lower(),
            "output_format": {
                "container": "raw",
                "encoding": "pcm_s16le",
                "sample_rate": CARTESIA_SAMPLE_RATE,
            },
        }
        headers = {
            "X-API-Key": self.config.cartesia_api_key,
            "Cartesia-Version": CARTESIA_API_VERSION,
        }

        try:
            response = await self._client.post(CARTESIA_BYTES_URL, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("Cartesia TTS request failed", error=str(e))
            raise SynthesisError(f"Cartesia TTS request failed: {e}") from e

        if response.status_code != 200:
            logger.warning(
                "Cartesia TTS returned error",
                status_code=response.status_code,
                response=response.text[:200],
            )
            raise SynthesisError(f"Cartesia TTS returned status {response.status_code}")

        if not response.content:
            raise SynthesisError("Cartesia TTS returned no audio")
        return write_wav_mono_pcm16(response.content, CARTESIA_SAMPLE_RATE)

    async def close(self) -> None:
        await self._client.aclose()


def create_synthesizer(config: Optional[Any] = None) -> Synthesizer:
    """Pick the TTS provider named by TTS_PROVIDER."""
    config = config or get_config()
    tts = (config.tts_provider or "openai").strip().lower()

    if tts == "openai":
        return OpenAISynthesizer(config)
    if tts == "cartesia":
        return CartesiaSynthesizer(config)

    raise ValueError(f"Unsupported TTS_PROVIDER: {config.tts_provider}")

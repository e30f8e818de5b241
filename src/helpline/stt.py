"""
Deepgram Speech-to-Text streaming client.

- Accepts mu-law 8kHz directly from Twilio (no conversion needed)
- Emits typed recognition events instead of invoking transcript callbacks
- Raises on writes to a torn-down stream so the session can rebuild it
"""

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol
from urllib.parse import urlencode

import structlog
import websockets

from src.helpline.config import get_config
from src.helpline.errors import RecognitionError, RecognitionStreamClosedError
from src.helpline.events import (
    RecognitionEvent,
    RecognitionError as RecognitionErrorEvent,
    StreamClosed,
    TranscriptFinal,
    TranscriptInterim,
)

logger = structlog.get_logger(__name__)

DEEPGRAM_URL = "wss://api.deepgram.com/v1/listen"

EventSink = Callable[[RecognitionEvent], Awaitable[None]]


class RecognitionStream(Protocol):
    """A live duplex recognition stream owned by one session."""

    @property
    def is_connected(self) -> bool: ...

    async def send_audio(self, audio_bytes: bytes) -> None: ...

    async def probe(self) -> bool: ...

    async def close(self) -> None: ...


RecognizerFactory = Callable[[str, EventSink, int], Awaitable[RecognitionStream]]


@dataclass
class StreamingConfig:
    """Recognition settings sent to Deepgram when the stream opens."""
    language: str = "pt-BR"
    model: str = "nova-2"
    encoding: str = "mulaw"
    sample_rate: int = 8000
    keywords: tuple[str, ...] = ()
    interim_results: bool = True
    endpointing_ms: int = 300

    def query(self) -> str:
        params: list[tuple[str, str]] = [
            ("model", self.model),
            ("encoding", self.encoding),
            ("sample_rate", str(self.sample_rate)),
            ("channels", "1"),
            ("language", self.language),
            ("punctuate", "true"),
            ("smart_format", "true"),
            ("interim_results", "true" if self.interim_results else "false"),
            ("endpointing", str(self.endpointing_ms)),
        ]
        # nova-3 takes key terms; older models take boosted keywords
        hint_param = "keyterm" if self.model.startswith("nova-3") else "keywords"
        for keyword in self.keywords:
            params.append((hint_param, keyword))
        return urlencode(params)

    @classmethod
    def from_config(cls, config: Any) -> "StreamingConfig":
        return cls(
            language=config.language,
            model=config.deepgram_model,
            keywords=tuple(config.deepgram_keywords),
        )


class DeepgramRecognizer:
    """
    Deepgram streaming STT client using raw WebSocket.

    Every event is tagged with `generation` so the owning session can ignore
    late events from a stream it already replaced.
    """

    def __init__(
        self,
        call_id: str,
        emit: EventSink,
        generation: int = 0,
        config: Optional[Any] = None,
        streaming_config: Optional[StreamingConfig] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self.call_id = call_id
        self.generation = generation
        self.streaming_config = streaming_config or StreamingConfig.from_config(config)
        self._emit = emit
        self._ws = None
        self._is_connected = False
        self._closing = False
        self._receive_task: Optional[asyncio.Task] = None
        self._last_audio_time: float = 0.0

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    async def connect(self) -> bool:
        """Connect to Deepgram streaming API."""
        if self._is_connected:
            return True

        url = f"{DEEPGRAM_URL}?{self.streaming_config.query()}"
        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}

        try:
            self._ws = await websockets.connect(
                url,
                additional_headers=headers,
                open_timeout=10,
            )
        except Exception as e:
            logger.error(
                "Deepgram connection failed",
                call_id=self.call_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            self._ws = None
            return False

        self._is_connected = True
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info(
            "Deepgram STT connected",
            call_id=self.call_id,
            generation=self.generation,
            model=self.streaming_config.model,
        )
        return True

    async def close(self) -> None:
        """Disconnect from Deepgram. Never raises."""
        self._closing = True
        self._is_connected = False

        if self._ws:
            try:
                await self._ws.send(json.dumps({"type": "CloseStream"}))
            except Exception:
                pass

        if self._receive_task:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Deepgram receive task failed on close", call_id=self.call_id, error=str(e))
            self._receive_task = None

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", call_id=self.call_id, error=str(e))

        self._ws = None
        logger.info("Deepgram STT disconnected", call_id=self.call_id, generation=self.generation)

    async def send_audio(self, audio_bytes: bytes) -> None:
        """Send audio data to Deepgram."""
        if not self._is_connected or not self._ws:
            raise RecognitionStreamClosedError("Deepgram stream is not connected")

        try:
            self._last_audio_time = time.time()
            await self._ws.send(audio_bytes)
        except Exception as e:
            self._is_connected = False
            raise RecognitionStreamClosedError(f"Failed to send audio to Deepgram: {e}") from e

    async def probe(self) -> bool:
        """Send a KeepAlive; returns False if the socket is unusable."""
        if not self._is_connected or not self._ws:
            return False
        try:
            await self._ws.send(json.dumps({"type": "KeepAlive"}))
            return True
        except Exception as e:
            logger.warning("Deepgram probe failed", call_id=self.call_id, error=str(e))
            self._is_connected = False
            return False

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram", call_id=self.call_id)
                    continue
                await self._handle_message(data)

        except websockets.exceptions.ConnectionClosed as e:
            logger.info("Deepgram connection closed", call_id=self.call_id, code=getattr(e, "code", None))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Deepgram receive loop error", call_id=self.call_id, error=str(e))
            await self._emit(RecognitionErrorEvent(message=str(e), generation=self.generation))
        finally:
            self._is_connected = False

        if not self._closing:
            await self._emit(StreamClosed(generation=self.generation))

    async def _handle_message(self, data: dict) -> None:
        """Handle a message from Deepgram."""
        msg_type = data.get("type", "")
        msg_type_norm = msg_type.lower() if isinstance(msg_type, str) else ""

        if msg_type_norm == "results":
            alternatives = data.get("channel", {}).get("alternatives", [])
            if not alternatives:
                return

            transcript = (alternatives[0].get("transcript") or "").strip()
            if not transcript:
                return

            stability = float(alternatives[0].get("confidence", 0.0) or 0.0)
            if data.get("is_final", False):
                event = TranscriptFinal(text=transcript, stability=stability, generation=self.generation)
            else:
                event = TranscriptInterim(text=transcript, stability=stability, generation=self.generation)

            latency_ms = (time.time() - self._last_audio_time) * 1000 if self._last_audio_time else 0.0
            logger.debug(
                "STT transcript",
                call_id=self.call_id,
                text=transcript[:50],
                is_final=isinstance(event, TranscriptFinal),
                latency_ms=round(latency_ms, 2),
            )
            await self._emit(event)

        elif msg_type_norm == "error":
            message = data.get("message") or data.get("description") or "Unknown"
            logger.error("Deepgram error", call_id=self.call_id, error=message, details=data)
            await self._emit(RecognitionErrorEvent(message=message, generation=self.generation))


async def open_deepgram_stream(call_id: str, emit: EventSink, generation: int = 0) -> DeepgramRecognizer:
    """RecognizerFactory for Deepgram: returns a connected stream or raises."""
    recognizer = DeepgramRecognizer(call_id, emit, generation=generation)
    if not await recognizer.connect():
        raise RecognitionError(f"Could not open Deepgram stream for call {call_id}")
    return recognizer

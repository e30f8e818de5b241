"""
Audio stream session: one per live call.

State machine:
    INITIALIZING -> ACTIVE -> RECOVERING -> INITIALIZING ... -> TERMINATED

The session owns its recognition stream, its timers and a bounded inbox of
typed events. A single consumer task drains the inbox, so media frames are
forwarded in arrival order and no two handlers for the same call ever run
concurrently. Different calls run fully concurrently on the same loop.

Recognition errors never escape the session; they only feed the counters read
by the health check, which decides between staying ACTIVE, RECOVERING (tear
down and reopen the stream with bounded backoff) and TERMINATED.

Final transcripts that pass the significance filter are sent to the responder
under a single-flight guard: a final that arrives while a reply is still being
generated for the same call is discarded. Replies go to the response sink.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping, Optional

import structlog

from src.helpline import events
from src.helpline.errors import RecognitionError
from src.helpline.significance import DEFAULT_SIMILARITY_THRESHOLD, is_significant
from src.helpline.stt import RecognitionStream, RecognizerFactory

logger = structlog.get_logger(__name__)

Responder = Callable[[str, str, Mapping[str, Any]], Awaitable[str]]
ResponseSink = Callable[[str, str], Any]


class SessionState(str, Enum):
    """Lifecycle state of an audio stream session."""
    INITIALIZING = "initializing"
    ACTIVE = "active"
    RECOVERING = "recovering"
    TERMINATED = "terminated"


class GenerationState(str, Enum):
    """Single-flight token for reply generation."""
    IDLE = "idle"
    GENERATING = "generating"


@dataclass(frozen=True)
class SessionSettings:
    """Timing and threshold knobs for a session (seconds unless noted)."""
    health_check_interval: float = 5.0
    inactivity_timeout: float = 10.0
    no_media_threshold: float = 10.0
    recover_after: float = 20.0
    terminate_after: float = 60.0
    max_consecutive_errors: int = 5
    max_reconnect_attempts: int = 5
    reconnect_base_delay: float = 0.5
    reconnect_max_delay: float = 8.0
    inbox_size: int = 512
    significance_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    fallback_reply: str = "Desculpe, não consegui processar sua mensagem. Pode repetir?"
    fallback_recognition: str = "Desculpe, não entendi. Pode repetir?"

    def reconnect_delay(self, attempt: int) -> float:
        """Exponential backoff for the given 1-based attempt, capped."""
        return min(self.reconnect_base_delay * (2 ** max(attempt - 1, 0)), self.reconnect_max_delay)


@dataclass
class SessionCounters:
    consecutive_errors: int = 0
    reconnect_attempts: int = 0
    media_packets: int = 0
    dropped_frames: int = 0
    discarded_transcripts: int = 0
    dispatched_replies: int = 0

    def to_dict(self) -> dict[str, int]:
        return dict(self.__dict__)


class SessionTimer:
    """One-shot cancellable timer that posts an event into a session inbox."""

    def __init__(self, name: str, post: Callable[[events.SessionEvent], Awaitable[None]]):
        self.name = name
        self._post = post
        self._task: Optional[asyncio.Task] = None

    @property
    def armed(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self, delay: float, event: events.SessionEvent) -> None:
        self.cancel()
        self._task = asyncio.create_task(self._fire(delay, event))

    def cancel(self) -> None:
        if self._task and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None

    async def _fire(self, delay: float, event: events.SessionEvent) -> None:
        await asyncio.sleep(delay)
        await self._post(event)


@dataclass
class _Timers:
    health: SessionTimer
    inactivity: SessionTimer
    reconnect: SessionTimer

    def all(self) -> tuple[SessionTimer, ...]:
        return (self.health, self.inactivity, self.reconnect)


class AudioStreamSession:
    """State machine for one call's recognition stream and reply dispatch."""

    def __init__(
        self,
        call_id: str,
        recognizer_factory: RecognizerFactory,
        responder: Responder,
        response_sink: ResponseSink,
        settings: Optional[SessionSettings] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        transport: Any = None,
        on_terminated: Optional[Callable[["AudioStreamSession"], Any]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.call_id = call_id
        self.settings = settings or SessionSettings()
        self.metadata: Mapping[str, Any] = MappingProxyType(dict(metadata or {}))
        self.transport = transport

        self._recognizer_factory = recognizer_factory
        self._responder = responder
        self._response_sink = response_sink
        self._on_terminated = on_terminated
        self._clock = clock
        self._log = logger.bind(call_id=call_id)

        self._state = SessionState.INITIALIZING
        self._generation_state = GenerationState.IDLE
        self._counters = SessionCounters()
        self._inbox: asyncio.Queue = asyncio.Queue(maxsize=self.settings.inbox_size)

        self._stream: Optional[RecognitionStream] = None
        self._stream_generation = 0
        self._awaiting_first_result = False
        self._ever_active = False
        self._last_transcript = ""

        self._created_at = clock()
        self._last_media_at: Optional[float] = None

        self._consumer_task: Optional[asyncio.Task] = None
        self._generation_task: Optional[asyncio.Task] = None
        self._terminated = asyncio.Event()
        self._timers = _Timers(
            health=SessionTimer("health", self._post),
            inactivity=SessionTimer("inactivity", self._post),
            reconnect=SessionTimer("reconnect", self._post),
        )

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def generation_state(self) -> GenerationState:
        return self._generation_state

    @property
    def counters(self) -> SessionCounters:
        return self._counters

    @property
    def last_transcript(self) -> str:
        return self._last_transcript

    @property
    def is_terminated(self) -> bool:
        return self._state is SessionState.TERMINATED

    async def start(self) -> None:
        """Start the inbox consumer; the recognition stream opens from there."""
        if self._consumer_task is not None or self.is_terminated:
            return
        self._consumer_task = asyncio.create_task(self._run(), name=f"session-{self.call_id}")

    async def feed_media(self, payload: bytes) -> bool:
        """Queue one inbound media frame. Returns False once terminated."""
        if self.is_terminated:
            return False
        await self._inbox.put(events.MediaFrame(payload=payload))
        return True

    def attach_transport(self, transport: Any) -> None:
        """Swap in a new media transport after a reconnection."""
        self.transport = transport
        self._log.info("Media transport attached")

    def detach_transport(self) -> None:
        self.transport = None

    async def wait_terminated(self) -> None:
        await self._terminated.wait()

    async def terminate(self, reason: str = "requested") -> None:
        """Cancel every timer, release the stream and stop the consumer. Idempotent."""
        if self.is_terminated:
            return

        self._set_state(SessionState.TERMINATED, reason=reason)
        for timer in self._timers.all():
            timer.cancel()

        current = asyncio.current_task()
        pending = [
            task for task in (self._consumer_task, self._generation_task)
            if task is not None and not task.done() and task is not current
        ]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        await self._release_stream()
        while not self._inbox.empty():
            self._inbox.get_nowait()

        self._terminated.set()
        self._log.info("Session terminated", reason=reason, **self._counters.to_dict())

        if self._on_terminated:
            try:
                self._on_terminated(self)
            except Exception as e:
                self._log.error("Session termination callback failed", error=str(e))

    def stats(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "state": self._state.value,
            "generation": self._generation_state.value,
            "transport_attached": self.transport is not None,
            **self._counters.to_dict(),
        }

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    async def _post(self, event: events.SessionEvent) -> None:
        if self.is_terminated:
            return
        await self._inbox.put(event)

    async def _run(self) -> None:
        self._timers.health.arm(self.settings.health_check_interval, events.HealthCheckDue())
        await self._open_stream()

        while not self.is_terminated:
            event = await self._inbox.get()
            try:
                await self._handle(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._log.error(
                    "Session event handler failed",
                    event=type(event).__name__,
                    error_type=type(e).__name__,
                    error=str(e),
                )

    async def _handle(self, event: events.SessionEvent) -> None:
        if isinstance(event, events.MediaFrame):
            await self._handle_media(event)
        elif isinstance(event, events.TranscriptFinal):
            await self._handle_final(event)
        elif isinstance(event, events.TranscriptInterim):
            self._handle_interim(event)
        elif isinstance(event, events.RecognitionError):
            await self._handle_recognition_error(event)
        elif isinstance(event, events.StreamClosed):
            await self._handle_stream_closed(event)
        elif isinstance(event, events.HealthCheckDue):
            await self._health_check()
            if not self.is_terminated:
                self._timers.health.arm(self.settings.health_check_interval, events.HealthCheckDue())
        elif isinstance(event, events.InactivityTimeout):
            self._log.info("Inactivity timeout", state=self._state.value)
            await self._health_check()
        elif isinstance(event, events.ReconnectDue):
            if self._state is SessionState.INITIALIZING:
                await self._open_stream()

    # ------------------------------------------------------------------
    # Recognition stream lifecycle
    # ------------------------------------------------------------------

    async def _emit_recognition(self, event: events.RecognitionEvent) -> None:
        await self._post(event)

    async def _connect(self) -> RecognitionStream:
        self._stream_generation += 1
        return await self._recognizer_factory(
            self.call_id, self._emit_recognition, self._stream_generation
        )

    async def _open_stream(self) -> None:
        """INITIALIZING: open a stream, or schedule a bounded backoff retry."""
        if self.is_terminated:
            return
        self._set_state(SessionState.INITIALIZING)

        try:
            self._stream = await self._connect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._counters.reconnect_attempts += 1
            attempts = self._counters.reconnect_attempts
            self._log.warning(
                "Recognition stream failed to open",
                attempt=attempts,
                max_attempts=self.settings.max_reconnect_attempts,
                error=str(e),
            )
            if attempts > self.settings.max_reconnect_attempts:
                await self.terminate(reason="reconnect_limit")
                return
            self._timers.reconnect.arm(self.settings.reconnect_delay(attempts), events.ReconnectDue())
            return

        self._awaiting_first_result = True
        self._ever_active = True
        self._set_state(SessionState.ACTIVE)
        self._timers.inactivity.arm(self.settings.inactivity_timeout, events.InactivityTimeout())

    async def _release_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            await stream.close()
        except Exception as e:
            self._log.warning("Recognition stream teardown failed", error=str(e))

    async def _rebuild_stream(self) -> bool:
        """Synchronously replace a torn-down stream while staying ACTIVE."""
        await self._release_stream()
        try:
            self._stream = await self._connect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.warning("Recognition stream rebuild failed", error=str(e))
            return False
        self._awaiting_first_result = True
        self._log.info("Recognition stream rebuilt", generation=self._stream_generation)
        return True

    async def _recover(self, reason: str) -> None:
        """RECOVERING: tear down the stream and re-enter INITIALIZING with backoff."""
        if self.is_terminated:
            return

        was_active = self._state is SessionState.ACTIVE
        self._set_state(SessionState.RECOVERING, reason=reason)
        await self._release_stream()

        self._counters.consecutive_errors = 0
        self._counters.reconnect_attempts += 1
        attempts = self._counters.reconnect_attempts

        if was_active:
            self._dispatch(self.settings.fallback_recognition)

        if attempts > self.settings.max_reconnect_attempts:
            await self.terminate(reason="reconnect_limit")
            return

        self._set_state(SessionState.INITIALIZING)
        # The first reconnect after recovery is immediate.
        delay = 0.0 if attempts == 1 else self.settings.reconnect_delay(attempts)
        self._timers.reconnect.arm(delay, events.ReconnectDue())

    def _set_state(self, state: SessionState, reason: Optional[str] = None) -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        # Timers tied to a specific state never outlive it.
        self._timers.inactivity.cancel()
        self._timers.reconnect.cancel()
        self._log.info(
            "Session state changed",
            previous=previous.value,
            state=state.value,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _handle_media(self, frame: events.MediaFrame) -> None:
        self._counters.media_packets += 1
        self._last_media_at = self._clock()

        if self._state is not SessionState.ACTIVE:
            self._counters.dropped_frames += 1
            return

        self._timers.inactivity.arm(self.settings.inactivity_timeout, events.InactivityTimeout())

        if self._stream is not None:
            try:
                await self._stream.send_audio(frame.payload)
                return
            except RecognitionError as e:
                self._log.warning("Media write failed, rebuilding stream", error=str(e))

        if await self._rebuild_stream():
            try:
                await self._stream.send_audio(frame.payload)
                return
            except RecognitionError as e:
                self._log.warning("Media write failed after rebuild", error=str(e))

        self._counters.dropped_frames += 1
        self._counters.consecutive_errors += 1
        await self._health_check()

    def _is_stale(self, event: Any) -> bool:
        return getattr(event, "generation", self._stream_generation) != self._stream_generation

    def _note_result(self) -> None:
        self._counters.consecutive_errors = 0
        if self._awaiting_first_result:
            self._awaiting_first_result = False
            self._counters.reconnect_attempts = 0
        if self._state is SessionState.ACTIVE:
            self._timers.inactivity.arm(self.settings.inactivity_timeout, events.InactivityTimeout())

    def _handle_interim(self, event: events.TranscriptInterim) -> None:
        if self._is_stale(event):
            return
        self._note_result()
        if len(event.text) > 10:
            self._log.debug("Interim transcript", text=event.text, stability=event.stability)

    async def _handle_final(self, event: events.TranscriptFinal) -> None:
        if self._is_stale(event) or self._state is not SessionState.ACTIVE:
            return
        self._note_result()
        self._log.info("Final transcript", text=event.text, stability=event.stability)

        if not is_significant(event.text, self._last_transcript, self.settings.significance_threshold):
            self._counters.discarded_transcripts += 1
            self._log.debug("Transcript too similar to previous, skipping", text=event.text)
            return

        self._last_transcript = event.text

        if self._generation_state is GenerationState.GENERATING:
            self._counters.discarded_transcripts += 1
            self._log.info("Generation already in flight, discarding transcript", text=event.text)
            return

        self._generation_state = GenerationState.GENERATING
        self._generation_task = asyncio.create_task(self._generate(event.text))

    async def _generate(self, transcript: str) -> None:
        try:
            reply = await self._responder(self.call_id, transcript, self.metadata)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.error("Reply generation failed", error_type=type(e).__name__, error=str(e))
            reply = self.settings.fallback_reply
        finally:
            self._generation_state = GenerationState.IDLE

        if reply and not self.is_terminated:
            self._dispatch(reply)

    async def _handle_recognition_error(self, event: events.RecognitionError) -> None:
        if self._is_stale(event):
            return
        self._counters.consecutive_errors += 1
        self._log.warning(
            "Recognition error",
            error=event.message,
            consecutive_errors=self._counters.consecutive_errors,
        )
        await self._health_check()

    async def _handle_stream_closed(self, event: events.StreamClosed) -> None:
        if self._is_stale(event):
            return
        self._counters.consecutive_errors += 1
        self._log.warning("Recognition stream closed", consecutive_errors=self._counters.consecutive_errors)
        await self._health_check()

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def _probe(self, silent_for: float) -> bool:
        transport_open = self.transport is not None and bool(getattr(self.transport, "is_open", True))
        stream_ok = False
        if self._stream is not None:
            try:
                stream_ok = await self._stream.probe()
            except Exception as e:
                self._log.warning("Recognition stream probe raised", error=str(e))
        self._log.warning(
            "No media received, probing connection",
            silent_for=round(silent_for, 2),
            transport_open=transport_open,
            stream_connected=stream_ok,
        )
        return transport_open and stream_ok

    async def _health_check(self) -> None:
        if self.is_terminated:
            return

        last_media = self._last_media_at if self._last_media_at is not None else self._created_at
        silent_for = self._clock() - last_media

        if silent_for > self.settings.no_media_threshold:
            if not self._ever_active:
                await self._recover(reason="no_media_before_active")
                return

            await self._probe(silent_for)
            if silent_for > self.settings.terminate_after:
                await self.terminate(reason="no_media")
                return
            if silent_for > self.settings.recover_after and self._state is SessionState.ACTIVE:
                await self._recover(reason="no_media")
                return

        if self._counters.consecutive_errors >= self.settings.max_consecutive_errors:
            await self._recover(reason="recognition_errors")

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _dispatch(self, text: str) -> None:
        try:
            self._response_sink(self.call_id, text)
            self._counters.dispatched_replies += 1
        except Exception as e:
            self._log.error("Failed to dispatch reply", error=str(e))

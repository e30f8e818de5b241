"""
Tests for the audio stream session state machine.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from conftest import FakeClock, FakeRecognizerFactory, FakeTransport, wait_until
from src.helpline import events
from src.helpline.session import (
    AudioStreamSession,
    GenerationState,
    SessionSettings,
    SessionState,
)

FAST = SessionSettings(
    health_check_interval=60.0,
    inactivity_timeout=60.0,
    reconnect_base_delay=0.01,
    reconnect_max_delay=0.02,
    max_consecutive_errors=3,
    max_reconnect_attempts=2,
)


class Recorder:
    """Responder + response sink pair."""

    def __init__(self, reply: str = "Tudo certo"):
        self.reply = reply
        self.requests = []
        self.dispatched = []
        self.gate = None
        self.error = None

    async def respond(self, call_id, transcript, metadata):
        self.requests.append((call_id, transcript, dict(metadata)))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.reply

    def sink(self, call_id, text):
        self.dispatched.append((call_id, text))


def make_session(factory, recorder, settings=FAST, **kwargs):
    return AudioStreamSession(
        "CA100",
        recognizer_factory=factory,
        responder=recorder.respond,
        response_sink=recorder.sink,
        settings=settings,
        transport=kwargs.pop("transport", FakeTransport()),
        **kwargs,
    )


async def started(factory, recorder, **kwargs):
    session = make_session(factory, recorder, **kwargs)
    await session.start()
    await wait_until(lambda: session.state is SessionState.ACTIVE)
    return session


async def say(factory, text, final=True, generation=None):
    stream = factory.latest
    cls = events.TranscriptFinal if final else events.TranscriptInterim
    await stream.emit(cls(text=text, stability=0.9, generation=stream.generation if generation is None else generation))


def record_transitions(session):
    """Collect (state, reason) for every state change of `session`."""
    transitions = []
    set_state = session._set_state

    def _record(state, reason=None):
        if state is not session.state:
            transitions.append((state, reason))
        set_state(state, reason=reason)

    session._set_state = _record
    return transitions


class TestSettings:
    def test_reconnect_delay_is_exponential_and_capped(self):
        settings = SessionSettings(reconnect_base_delay=0.5, reconnect_max_delay=8.0)
        assert settings.reconnect_delay(1) == 0.5
        assert settings.reconnect_delay(2) == 1.0
        assert settings.reconnect_delay(4) == 4.0
        assert settings.reconnect_delay(5) == 8.0
        assert settings.reconnect_delay(9) == 8.0


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_opens_stream_and_becomes_active(self, recognizer_factory):
        recorder = Recorder()
        session = await started(recognizer_factory, recorder)

        assert len(recognizer_factory.streams) == 1
        assert recognizer_factory.latest.call_id == "CA100"
        assert session.generation_state is GenerationState.IDLE
        await session.terminate()

    @pytest.mark.asyncio
    async def test_media_forwarded_in_arrival_order(self, recognizer_factory):
        session = await started(recognizer_factory, Recorder())

        frames = [bytes([i]) * 160 for i in range(5)]
        for frame in frames:
            assert await session.feed_media(frame)

        await wait_until(lambda: len(recognizer_factory.latest.sent) == 5)
        assert recognizer_factory.latest.sent == frames
        assert session.counters.media_packets == 5
        await session.terminate()

    @pytest.mark.asyncio
    async def test_terminate_is_idempotent(self, recognizer_factory):
        on_terminated = MagicMock()
        session = await started(recognizer_factory, Recorder(), on_terminated=on_terminated)

        await session.terminate(reason="test")
        await session.terminate(reason="again")

        assert session.state is SessionState.TERMINATED
        assert recognizer_factory.latest.closed
        on_terminated.assert_called_once_with(session)
        assert not await session.feed_media(b"\xff" * 160)
        await asyncio.wait_for(session.wait_terminated(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_never_active_session_terminates_after_reconnect_limit(self):
        factory = FakeRecognizerFactory(fail_opens=100)
        on_terminated = MagicMock()
        session = make_session(factory, Recorder(), on_terminated=on_terminated)

        await session.start()
        await asyncio.wait_for(session.wait_terminated(), timeout=2.0)

        assert session.state is SessionState.TERMINATED
        # initial attempt + max_reconnect_attempts retries
        assert factory.attempts == FAST.max_reconnect_attempts + 1
        on_terminated.assert_called_once_with(session)

    @pytest.mark.asyncio
    async def test_open_failure_retries_then_succeeds(self):
        factory = FakeRecognizerFactory(fail_opens=1)
        session = make_session(factory, Recorder())

        await session.start()
        await wait_until(lambda: session.state is SessionState.ACTIVE)

        assert factory.attempts == 2
        assert session.counters.reconnect_attempts == 1
        await session.terminate()

    @pytest.mark.asyncio
    async def test_never_active_without_media_recovers_then_terminates(self):
        clock = FakeClock()
        factory = FakeRecognizerFactory(fail_opens=100)
        recorder = Recorder()
        settings = SessionSettings(
            health_check_interval=0.01,
            inactivity_timeout=60.0,
            no_media_threshold=1.0,
            reconnect_base_delay=30.0,
            reconnect_max_delay=30.0,
            max_reconnect_attempts=2,
        )
        session = make_session(factory, recorder, settings=settings, clock=clock)
        transitions = record_transitions(session)

        await session.start()
        await wait_until(lambda: factory.attempts == 1)
        await asyncio.sleep(0.05)
        assert session.state is SessionState.INITIALIZING
        assert all(state is not SessionState.RECOVERING for state, _ in transitions)

        clock.now = 5.0
        await asyncio.wait_for(session.wait_terminated(), timeout=2.0)

        assert (SessionState.RECOVERING, "no_media_before_active") in transitions
        assert transitions[-1] == (SessionState.TERMINATED, "reconnect_limit")
        # The backoff timer never fired; the health check drove every step.
        assert factory.attempts == 1
        assert recorder.dispatched == []

    @pytest.mark.asyncio
    async def test_transport_can_be_swapped(self, recognizer_factory):
        session = await started(recognizer_factory, Recorder())
        replacement = FakeTransport()

        session.detach_transport()
        assert session.transport is None
        session.attach_transport(replacement)
        assert session.transport is replacement
        await session.terminate()


class TestTranscripts:
    @pytest.mark.asyncio
    async def test_final_transcript_dispatches_reply(self, recognizer_factory):
        recorder = Recorder(reply="Claro, vou verificar.")
        session = await started(recognizer_factory, recorder, metadata={"issue": "internet caiu"})

        await say(recognizer_factory, "minha internet caiu")

        await wait_until(lambda: recorder.dispatched)
        assert recorder.requests == [("CA100", "minha internet caiu", {"issue": "internet caiu"})]
        assert recorder.dispatched == [("CA100", "Claro, vou verificar.")]
        assert session.last_transcript == "minha internet caiu"
        assert session.generation_state is GenerationState.IDLE
        await session.terminate()

    @pytest.mark.asyncio
    async def test_interim_transcript_does_not_dispatch(self, recognizer_factory):
        recorder = Recorder()
        session = await started(recognizer_factory, recorder)

        await say(recognizer_factory, "minha internet", final=False)
        await asyncio.sleep(0.05)

        assert recorder.requests == []
        await session.terminate()

    @pytest.mark.asyncio
    async def test_single_flight_discards_transcript_during_generation(self, recognizer_factory):
        recorder = Recorder()
        recorder.gate = asyncio.Event()
        session = await started(recognizer_factory, recorder)

        await say(recognizer_factory, "minha internet caiu")
        await wait_until(lambda: session.generation_state is GenerationState.GENERATING)

        await say(recognizer_factory, "qual o prazo para o técnico chegar")
        await wait_until(lambda: session.counters.discarded_transcripts == 1)

        recorder.gate.set()
        await wait_until(lambda: recorder.dispatched)
        await asyncio.sleep(0.02)

        assert len(recorder.requests) == 1
        assert len(recorder.dispatched) == 1
        assert session.generation_state is GenerationState.IDLE
        await session.terminate()

    @pytest.mark.asyncio
    async def test_near_duplicate_transcript_is_skipped(self, recognizer_factory):
        recorder = Recorder()
        session = await started(recognizer_factory, recorder)

        await say(recognizer_factory, "eu preciso de ajuda com a internet")
        await wait_until(lambda: recorder.dispatched)
        await say(recognizer_factory, "eu preciso de ajuda com a internet agora")
        await wait_until(lambda: session.counters.discarded_transcripts == 1)

        assert len(recorder.requests) == 1
        assert session.last_transcript == "eu preciso de ajuda com a internet"
        await session.terminate()

    @pytest.mark.asyncio
    async def test_generation_failure_dispatches_fallback(self, recognizer_factory):
        recorder = Recorder()
        recorder.error = RuntimeError("llm down")
        session = await started(recognizer_factory, recorder)

        await say(recognizer_factory, "minha internet caiu")

        await wait_until(lambda: recorder.dispatched)
        assert recorder.dispatched == [("CA100", FAST.fallback_reply)]
        assert session.generation_state is GenerationState.IDLE
        await session.terminate()

    @pytest.mark.asyncio
    async def test_events_from_replaced_stream_are_ignored(self, recognizer_factory):
        recorder = Recorder()
        session = await started(recognizer_factory, recorder)

        await say(recognizer_factory, "minha internet caiu", generation=999)
        await asyncio.sleep(0.05)

        assert recorder.requests == []
        assert session.last_transcript == ""
        await session.terminate()


class TestRecovery:
    @pytest.mark.asyncio
    async def test_error_ceiling_triggers_recovery_and_reconnect(self, recognizer_factory):
        recorder = Recorder()
        session = await started(recognizer_factory, recorder)
        first = recognizer_factory.latest

        for _ in range(FAST.max_consecutive_errors):
            await first.emit(events.RecognitionError(message="boom", generation=first.generation))

        await wait_until(lambda: len(recognizer_factory.streams) == 2 and session.state is SessionState.ACTIVE)

        assert first.closed
        assert recorder.dispatched == [("CA100", FAST.fallback_recognition)]
        assert session.counters.consecutive_errors == 0
        assert session.counters.reconnect_attempts == 1

        # First result on the new stream resets the reconnect budget
        await say(recognizer_factory, "alô", final=False)
        await wait_until(lambda: session.counters.reconnect_attempts == 0)
        await session.terminate()

    @pytest.mark.asyncio
    async def test_first_reconnect_after_recovery_is_immediate(self, recognizer_factory):
        settings = SessionSettings(
            health_check_interval=60.0,
            inactivity_timeout=60.0,
            reconnect_base_delay=30.0,
            reconnect_max_delay=30.0,
            max_consecutive_errors=3,
        )
        session = await started(recognizer_factory, Recorder(), settings=settings)
        first = recognizer_factory.latest

        for _ in range(settings.max_consecutive_errors):
            await first.emit(events.RecognitionError(message="boom", generation=first.generation))

        await wait_until(
            lambda: len(recognizer_factory.streams) == 2 and session.state is SessionState.ACTIVE,
            timeout=1.0,
        )
        await session.terminate()

    @pytest.mark.asyncio
    async def test_errors_below_ceiling_keep_session_active(self, recognizer_factory):
        session = await started(recognizer_factory, Recorder())
        stream = recognizer_factory.latest

        for _ in range(FAST.max_consecutive_errors - 1):
            await stream.emit(events.RecognitionError(message="blip", generation=stream.generation))
        await wait_until(lambda: session.counters.consecutive_errors == FAST.max_consecutive_errors - 1)

        assert session.state is SessionState.ACTIVE
        assert len(recognizer_factory.streams) == 1
        await session.terminate()

    @pytest.mark.asyncio
    async def test_media_write_failure_rebuilds_stream(self, recognizer_factory):
        session = await started(recognizer_factory, Recorder())
        first = recognizer_factory.latest
        first.fail_sends = True

        frame = b"\x7f" * 160
        await session.feed_media(frame)

        await wait_until(lambda: len(recognizer_factory.streams) == 2 and recognizer_factory.latest.sent)
        assert recognizer_factory.latest.sent == [frame]
        assert first.closed
        assert session.state is SessionState.ACTIVE
        assert session.counters.dropped_frames == 0
        await session.terminate()

    @pytest.mark.asyncio
    async def test_failed_rebuild_drops_frame_and_counts_error(self):
        factory = FakeRecognizerFactory()
        session = await started(factory, Recorder())
        factory.latest.fail_sends = True
        factory.fail_opens = 1

        await session.feed_media(b"\x7f" * 160)

        await wait_until(lambda: session.counters.dropped_frames == 1)
        assert session.counters.consecutive_errors == 1
        await session.terminate()

    @pytest.mark.asyncio
    async def test_silence_probes_then_recovers_then_terminates(self, recognizer_factory):
        clock = FakeClock()
        recorder = Recorder()
        settings = SessionSettings(
            health_check_interval=0.02,
            inactivity_timeout=60.0,
            reconnect_base_delay=0.01,
            reconnect_max_delay=0.02,
            max_reconnect_attempts=50,
        )
        session = await started(recognizer_factory, recorder, settings=settings, clock=clock)
        await session.feed_media(b"\xff" * 160)
        await wait_until(lambda: recognizer_factory.latest.sent)

        # Past no_media and recover_after: probe, then tear down and reconnect
        clock.now = 25.0
        await wait_until(lambda: len(recognizer_factory.streams) >= 2)
        assert recognizer_factory.streams[0].probes >= 1
        assert ("CA100", settings.fallback_recognition) in recorder.dispatched

        # Past terminate_after
        clock.now = 100.0
        await asyncio.wait_for(session.wait_terminated(), timeout=2.0)
        assert session.state is SessionState.TERMINATED

    @pytest.mark.asyncio
    async def test_stats_reports_state_and_counters(self, recognizer_factory):
        session = await started(recognizer_factory, Recorder())
        await session.feed_media(b"\xff" * 160)
        await wait_until(lambda: session.counters.media_packets == 1)

        stats = session.stats()
        assert stats["call_id"] == "CA100"
        assert stats["state"] == "active"
        assert stats["generation"] == "idle"
        assert stats["transport_attached"] is True
        assert stats["media_packets"] == 1
        await session.terminate()

"""
Call orchestrator: the public entry points of the voice agent core.

Owns the session registry and the response delivery queue, and wires each
AudioStreamSession to the conversation agent (replies) and the delivery
queue (speech back to the caller).

Lifecycle of a call:
    place_call / register_pending_call  -> metadata parked in the registry
    on_call_started                     -> session created, or reused on reconnection
    on_media_frame                      -> frames routed to the session inbox
    on_call_stopped                     -> transport detached, grace period armed
    on_call_terminated / grace expiry   -> session, queue and history released
"""

import asyncio
from typing import Any, Dict, Mapping, Optional, Protocol, Set

import structlog

from src.helpline.config import get_config
from src.helpline.delivery import ResponseDeliveryQueue
from src.helpline.registry import SessionRegistry
from src.helpline.session import AudioStreamSession, SessionSettings
from src.helpline.stt import RecognizerFactory

logger = structlog.get_logger(__name__)

ISSUE_KEY = "issue"


class Agent(Protocol):
    async def generate_reply(self, call_id: str, transcript: str, metadata: Mapping[str, Any]) -> str: ...

    async def generate_welcome(self, call_id: str, metadata: Mapping[str, Any]) -> str: ...

    def forget(self, call_id: str) -> None: ...


class CallOrchestrator:
    def __init__(
        self,
        recognizer_factory: RecognizerFactory,
        agent: Agent,
        delivery: ResponseDeliveryQueue,
        telephony: Any = None,
        settings: Optional[SessionSettings] = None,
        stop_grace_period: float = 15.0,
        fallback_greeting: str = "Olá! Como posso te ajudar?",
        registry: Optional[SessionRegistry] = None,
    ):
        self.registry = registry or SessionRegistry()
        self.delivery = delivery
        self.settings = settings or SessionSettings()
        self.stop_grace_period = stop_grace_period
        self.fallback_greeting = fallback_greeting

        self._recognizer_factory = recognizer_factory
        self._agent = agent
        self._telephony = telephony
        self._grace_tasks: Dict[str, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._closing = False

    async def start(self) -> None:
        await self.delivery.start()
        logger.info("Call orchestrator started")

    # ------------------------------------------------------------------
    # Outbound calls
    # ------------------------------------------------------------------

    def register_pending_call(self, call_id: str, metadata: Optional[Mapping[str, Any]] = None) -> None:
        """Park metadata for a call whose media stream has not started yet."""
        self.registry.register_pending(call_id, metadata)
        logger.info("Pending call registered", call_id=call_id, keys=sorted((metadata or {}).keys()))

    async def place_call(
        self,
        to: str,
        metadata: Optional[Mapping[str, Any]],
        answer_url: str,
        status_callback: Optional[str] = None,
    ) -> str:
        if self._telephony is None:
            raise RuntimeError("No telephony client configured")
        call_id = await self._telephony.create_call(to, answer_url, status_callback)
        self.register_pending_call(call_id, metadata)
        return call_id

    # ------------------------------------------------------------------
    # Media stream events
    # ------------------------------------------------------------------

    async def on_call_started(
        self,
        call_id: str,
        transport: Any,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> AudioStreamSession:
        """
        Start (or resume) the session for `call_id`.

        A start for a call that still has a live session is a reconnection:
        the new transport is attached and the session keeps its state.
        """
        self._cancel_grace(call_id)

        existing = self.registry.get(call_id)
        if existing is not None and not existing.is_terminated:
            existing.attach_transport(transport)
            logger.info("Media stream reconnected", call_id=call_id, state=existing.state.value)
            return existing

        combined = {**dict(metadata or {}), **self.registry.claim_pending(call_id)}
        session = AudioStreamSession(
            call_id,
            recognizer_factory=self._recognizer_factory,
            responder=self._respond,
            response_sink=self._enqueue_reply,
            settings=self.settings,
            metadata=combined,
            transport=transport,
            on_terminated=self._session_ended,
        )
        self.registry.add(session)
        await session.start()
        logger.info("Session started", call_id=call_id, issue=str(combined.get(ISSUE_KEY, ""))[:100])

        if combined.get(ISSUE_KEY):
            self._spawn(self._send_welcome(call_id, session.metadata), name=f"welcome-{call_id}")
        return session

    async def on_media_frame(self, call_id: str, payload: bytes) -> bool:
        """Route one inbound frame. Returns False when no live session exists."""
        session = self.registry.get(call_id)
        if session is None:
            return False
        return await session.feed_media(payload)

    async def on_call_stopped(self, call_id: str, transport: Any = None) -> None:
        """
        The media stream ended. Keep the session for a grace period so a
        reconnection for the same call can resume it.
        """
        session = self.registry.get(call_id)
        if session is None:
            return
        if transport is not None and session.transport is not transport:
            logger.debug("Ignoring stop from a replaced transport", call_id=call_id)
            return

        session.detach_transport()
        self._cancel_grace(call_id)
        self._grace_tasks[call_id] = asyncio.create_task(
            self._expire_after_grace(call_id, session), name=f"grace-{call_id}"
        )
        logger.info("Media stream stopped, grace period started", call_id=call_id, grace_s=self.stop_grace_period)

    async def on_call_terminated(self, call_id: str, status: Optional[str] = None) -> None:
        """The control plane reports the call is over; release everything now."""
        logger.info("Call terminated", call_id=call_id, status=status)
        await self._cleanup(call_id, reason=status or "terminated")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _spawn(self, coro: Any, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _cancel_grace(self, call_id: str) -> None:
        task = self._grace_tasks.pop(call_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _expire_after_grace(self, call_id: str, session: AudioStreamSession) -> None:
        try:
            await asyncio.sleep(self.stop_grace_period)
        finally:
            if self._grace_tasks.get(call_id) is asyncio.current_task():
                del self._grace_tasks[call_id]

        if self.registry.get(call_id) is session and session.transport is None:
            logger.info("Grace period expired without reconnection", call_id=call_id)
            await self._cleanup(call_id, reason="stream_stopped")

    async def _cleanup(self, call_id: str, reason: str) -> None:
        self._cancel_grace(call_id)
        self.registry.discard_pending(call_id)

        session = self.registry.remove(call_id)
        if session is not None:
            await session.terminate(reason=reason)

        await self.delivery.cancel(call_id)
        self._agent.forget(call_id)
        logger.info("Call resources released", call_id=call_id, reason=reason)

    def _session_ended(self, session: AudioStreamSession) -> None:
        removed = self.registry.remove(session.call_id, session)
        if removed is None or self._closing:
            return
        # Session gave up on its own (reconnect limit, silence); release the rest.
        self._spawn(self._release_call(session.call_id), name=f"release-{session.call_id}")

    async def _release_call(self, call_id: str) -> None:
        if call_id in self.registry:
            return
        self._cancel_grace(call_id)
        await self.delivery.cancel(call_id)
        self._agent.forget(call_id)
        logger.info("Call resources released", call_id=call_id, reason="session_ended")

    async def _respond(self, call_id: str, transcript: str, metadata: Mapping[str, Any]) -> str:
        return await self._agent.generate_reply(call_id, transcript, metadata)

    def _enqueue_reply(self, call_id: str, text: str) -> None:
        self.delivery.enqueue(call_id, text)

    async def _send_welcome(self, call_id: str, metadata: Mapping[str, Any]) -> None:
        try:
            text = await self._agent.generate_welcome(call_id, metadata)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Welcome message generation failed, using fallback", call_id=call_id, error=str(e))
            text = self.fallback_greeting

        if call_id not in self.registry:
            return
        self.delivery.enqueue(call_id, text)
        logger.info("Welcome message queued", call_id=call_id, text=text[:100])

    # ------------------------------------------------------------------
    # Shutdown / stats
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Terminate every session, cancel every queue and stop background work."""
        self._closing = True
        for call_id in list(self._grace_tasks):
            self._cancel_grace(call_id)

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        sessions = self.registry.sessions()
        for session in sessions:
            self.registry.remove(session.call_id, session)
            await session.terminate(reason="shutdown")
            self._agent.forget(session.call_id)

        await self.delivery.stop()
        logger.info("Call orchestrator stopped", sessions_terminated=len(sessions))

    def stats(self) -> Dict[str, Any]:
        calls = []
        for session in self.registry.sessions():
            entry = session.stats()
            entry["delivery"] = self.delivery.call_stats(session.call_id)
            calls.append(entry)
        return {
            "sessions": len(self.registry),
            "pending_calls": self.registry.pending_count,
            "grace_periods": len(self._grace_tasks),
            "delivery": self.delivery.stats(),
            "calls": calls,
        }


def create_orchestrator(config: Optional[Any] = None, agent: Optional[Agent] = None) -> CallOrchestrator:
    """Build the production wiring: Deepgram, OpenAI/Cartesia TTS, Twilio, local artifacts."""
    from src.helpline.artifacts import LocalArtifactStore
    from src.helpline.llm import create_agent
    from src.helpline.stt import open_deepgram_stream
    from src.helpline.telephony import TwilioTelephony
    from src.helpline.tts import create_synthesizer

    config = config or get_config()
    telephony = TwilioTelephony(config)
    delivery = ResponseDeliveryQueue(
        synthesizer=create_synthesizer(config),
        artifact_store=LocalArtifactStore(config=config),
        telephony=telephony,
        stream_url=config.stream_url,
        settings=config.delivery_settings(),
    )
    return CallOrchestrator(
        recognizer_factory=open_deepgram_stream,
        agent=agent or create_agent(config),
        delivery=delivery,
        telephony=telephony,
        settings=config.session_settings(),
        stop_grace_period=config.stop_grace_period,
        fallback_greeting=config.fallback_greeting,
    )

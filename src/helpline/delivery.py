"""
Response delivery queue.

Per-call FIFO of outbound replies. For each reply, in order:
synthesize -> store artifact -> push a <Play> update into the live call.

Guarantees:
- Within a call, replies reach the telephony control plane in enqueue order.
- At most one reply per call is in flight; one processing task per call.
- Failed attempts back off and retry up to a ceiling, then the reply is dropped.
- A "call not found" answer cancels the whole queue immediately.
- Artifacts are deleted on cancel, and a background sweep removes any older
  than the retention window.
"""

import asyncio
import itertools
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol

import structlog

from src.helpline.artifacts import ArtifactStore
from src.helpline.audio import wav_duration_seconds
from src.helpline.errors import CallNotFoundError
from src.helpline.tts import Synthesizer
from src.helpline.twiml import build_playback_twiml

logger = structlog.get_logger(__name__)


class CallUpdater(Protocol):
    async def update_call(self, call_sid: str, twiml: str) -> None: ...


@dataclass(frozen=True)
class DeliverySettings:
    max_attempts: int = 3
    inter_message_delay: float = 2.0
    retry_base_delay: float = 1.0
    retry_max_delay: float = 5.0
    sweep_interval: float = 60.0
    artifact_retention: float = 600.0
    pause_seconds: int = 60

    def retry_delay(self, retries: int) -> float:
        """Backoff proportional to the retry count, capped."""
        return min(self.retry_base_delay * retries, self.retry_max_delay)


@dataclass
class Artifact:
    """A stored synthesized utterance awaiting cleanup."""
    artifact_id: str
    url: str
    created_at: float
    duration: Optional[float] = None


@dataclass
class QueuedResponse:
    text: str
    id: int
    created_at: float = field(default_factory=time.time)
    retries: int = 0
    artifact: Optional[Artifact] = None


@dataclass
class CallQueue:
    call_id: str
    entries: Deque[QueuedResponse] = field(default_factory=deque)
    is_processing: bool = False
    artifacts: List[Artifact] = field(default_factory=list)
    task: Optional[asyncio.Task] = None
    # Loop time before which the previous utterance is still playing.
    quiet_at: float = 0.0
    delivered: int = 0
    dropped: int = 0
    retried: int = 0


class ResponseDeliveryQueue:
    """Ordered, retried delivery of synthesized replies, keyed by call id."""

    def __init__(
        self,
        synthesizer: Synthesizer,
        artifact_store: ArtifactStore,
        telephony: CallUpdater,
        stream_url: str,
        settings: Optional[DeliverySettings] = None,
        document_builder: Callable[..., str] = build_playback_twiml,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or DeliverySettings()
        self._synthesizer = synthesizer
        self._artifacts = artifact_store
        self._telephony = telephony
        self._stream_url = stream_url
        self._document_builder = document_builder
        self._clock = clock
        self._queues: Dict[str, CallQueue] = {}
        self._ids = itertools.count(1)
        self._sweep_task: Optional[asyncio.Task] = None

    def __contains__(self, call_id: str) -> bool:
        return call_id in self._queues

    def __len__(self) -> int:
        return len(self._queues)

    def pending(self, call_id: str) -> List[str]:
        call_queue = self._queues.get(call_id)
        return [entry.text for entry in call_queue.entries] if call_queue else []

    def is_processing(self, call_id: str) -> bool:
        call_queue = self._queues.get(call_id)
        return bool(call_queue and call_queue.is_processing)

    def artifact_count(self, call_id: Optional[str] = None) -> int:
        if call_id is not None:
            call_queue = self._queues.get(call_id)
            return len(call_queue.artifacts) if call_queue else 0
        return sum(len(q.artifacts) for q in self._queues.values())

    # ------------------------------------------------------------------
    # Enqueue / processing loop
    # ------------------------------------------------------------------

    def enqueue(self, call_id: str, text: str) -> Optional[QueuedResponse]:
        """
        Append a reply for `call_id` and start its processing loop if idle.

        Must be called from within the running event loop.
        """
        text = (text or "").strip()
        if not text:
            return None

        call_queue = self._queues.get(call_id)
        if call_queue is None:
            call_queue = CallQueue(call_id=call_id)
            self._queues[call_id] = call_queue

        entry = QueuedResponse(text=text, id=next(self._ids))
        call_queue.entries.append(entry)
        logger.info(
            "Response queued",
            call_id=call_id,
            response_id=entry.id,
            text=text[:50],
            depth=len(call_queue.entries),
        )

        if not call_queue.is_processing:
            call_queue.is_processing = True
            call_queue.task = asyncio.create_task(
                self._process(call_queue), name=f"delivery-{call_id}"
            )
        return entry

    async def _process(self, call_queue: CallQueue) -> None:
        log = logger.bind(call_id=call_queue.call_id)
        loop = asyncio.get_running_loop()
        try:
            while call_queue.entries:
                wait = call_queue.quiet_at - loop.time()
                if wait > 0:
                    await asyncio.sleep(wait)

                entry = call_queue.entries[0]
                try:
                    duration = await self._deliver(call_queue, entry)
                except asyncio.CancelledError:
                    raise
                except CallNotFoundError as e:
                    log.warning("Call no longer exists, cancelling queue", error=str(e))
                    call_queue.task = None
                    await self.cancel(call_queue.call_id)
                    return
                except Exception as e:
                    entry.retries += 1
                    if entry.retries >= self.settings.max_attempts:
                        call_queue.entries.popleft()
                        call_queue.dropped += 1
                        log.error(
                            "Response dropped after max attempts",
                            response_id=entry.id,
                            attempts=entry.retries,
                            text=entry.text[:50],
                            error_type=type(e).__name__,
                            error=str(e),
                        )
                        continue

                    call_queue.retried += 1
                    delay = self.settings.retry_delay(entry.retries)
                    log.warning(
                        "Response delivery failed, retrying",
                        response_id=entry.id,
                        retries=entry.retries,
                        delay_s=delay,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    call_queue.quiet_at = loop.time() + delay
                    continue

                call_queue.entries.popleft()
                call_queue.delivered += 1
                entry.retries = 0
                call_queue.quiet_at = loop.time() + max(self.settings.inter_message_delay, duration or 0.0)
                log.info(
                    "Response delivered",
                    response_id=entry.id,
                    remaining=len(call_queue.entries),
                    duration_s=round(duration, 2) if duration else None,
                )
        finally:
            if call_queue.task is asyncio.current_task():
                call_queue.task = None
            call_queue.is_processing = False

    async def _deliver(self, call_queue: CallQueue, entry: QueuedResponse) -> Optional[float]:
        """One attempt: synthesize (once), store, publish. Returns audio duration."""
        if entry.artifact is None:
            audio = await self._synthesizer.synthesize(entry.text)
            entry.artifact = await self._store(call_queue, audio)

        document = self._document_builder(
            entry.artifact.url, self._stream_url, pause_seconds=self.settings.pause_seconds
        )
        await self._telephony.update_call(call_queue.call_id, document)
        return entry.artifact.duration

    async def _store(self, call_queue: CallQueue, audio: bytes) -> Artifact:
        """
        Save `audio` as a new artifact owned by `call_queue`.

        The artifact is tracked before the write starts, and the write runs
        shielded: a cancel that lands mid-save waits for the file to land and
        then deletes it.
        """
        artifact = Artifact(
            artifact_id=f"{call_queue.call_id}-{uuid.uuid4().hex}",
            url="",
            created_at=self._clock(),
            duration=wav_duration_seconds(audio),
        )
        call_queue.artifacts.append(artifact)

        save = asyncio.ensure_future(self._artifacts.save(artifact.artifact_id, audio))
        try:
            artifact.url = await asyncio.shield(save)
        except asyncio.CancelledError:
            await asyncio.gather(save, return_exceptions=True)
            await self._discard(call_queue, artifact)
            raise
        except Exception:
            await self._discard(call_queue, artifact)
            raise
        return artifact

    async def _discard(self, call_queue: CallQueue, artifact: Artifact) -> None:
        if artifact in call_queue.artifacts:
            call_queue.artifacts.remove(artifact)
        await self._delete_artifact(artifact)

    # ------------------------------------------------------------------
    # Cancellation and cleanup
    # ------------------------------------------------------------------

    async def cancel(self, call_id: str) -> None:
        """Drop the queue for `call_id` and delete its artifacts. Idempotent."""
        call_queue = self._queues.pop(call_id, None)
        if call_queue is None:
            return

        task = call_queue.task
        call_queue.task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        pending = len(call_queue.entries)
        call_queue.entries.clear()
        call_queue.is_processing = False

        artifacts, call_queue.artifacts = call_queue.artifacts, []
        for artifact in artifacts:
            await self._delete_artifact(artifact)

        logger.info(
            "Response queue cancelled",
            call_id=call_id,
            pending_dropped=pending,
            artifacts_released=len(artifacts),
        )

    async def _delete_artifact(self, artifact: Artifact) -> None:
        try:
            await self._artifacts.delete(artifact.artifact_id)
        except Exception as e:
            logger.warning("Failed to delete artifact", artifact_id=artifact.artifact_id, error=str(e))

    async def sweep_expired(self) -> int:
        """Delete artifacts older than the retention window across all calls."""
        now = self._clock()
        removed = 0
        for call_queue in list(self._queues.values()):
            in_use = {id(entry.artifact) for entry in call_queue.entries if entry.artifact}
            expired = [
                artifact for artifact in call_queue.artifacts
                if now - artifact.created_at > self.settings.artifact_retention
                and artifact.url
                and id(artifact) not in in_use
            ]
            if not expired:
                continue
            # Detach before awaiting; a concurrent cancel swaps the list out.
            call_queue.artifacts = [a for a in call_queue.artifacts if a not in expired]
            for artifact in expired:
                await self._delete_artifact(artifact)
                removed += 1

        if removed:
            logger.info("Expired artifacts swept", removed=removed)
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sweep_interval)
            try:
                await self.sweep_expired()
            except Exception as e:
                logger.error("Artifact sweep failed", error=str(e))

    async def start(self) -> None:
        """Start the background artifact sweep."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="artifact-sweep")

    async def stop(self) -> None:
        """Stop the sweep and cancel every call queue, then close the synthesizer."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None

        for call_id in list(self._queues):
            await self.cancel(call_id)

        close = getattr(self._synthesizer, "close", None)
        if close is not None:
            await close()

    def call_stats(self, call_id: str) -> Dict[str, Any]:
        call_queue = self._queues.get(call_id)
        if call_queue is None:
            return {}
        return {
            "pending": len(call_queue.entries),
            "processing": call_queue.is_processing,
            "artifacts": len(call_queue.artifacts),
            "delivered": call_queue.delivered,
            "dropped": call_queue.dropped,
            "retried": call_queue.retried,
        }

    def stats(self) -> Dict[str, Any]:
        return {
            "queues": len(self._queues),
            "processing": sum(1 for q in self._queues.values() if q.is_processing),
            "pending": sum(len(q.entries) for q in self._queues.values()),
            "artifacts": self.artifact_count(),
            "delivered": sum(q.delivered for q in self._queues.values()),
            "dropped": sum(q.dropped for q in self._queues.values()),
        }

"""
Session registry: call id -> live AudioStreamSession.

Also holds per-call metadata registered when a call is placed, until the
call's media stream starts and a session claims it.

Every mutation is a plain dict operation with no `await` in between, so it is
atomic with respect to other tasks on the loop.
"""

from typing import Any, Dict, List, Mapping, Optional

import structlog

from src.helpline.session import AudioStreamSession

logger = structlog.get_logger(__name__)


class SessionRegistry:
    def __init__(self) -> None:
        self._sessions: Dict[str, AudioStreamSession] = {}
        self._pending: Dict[str, Dict[str, Any]] = {}

    def __contains__(self, call_id: str) -> bool:
        return call_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, call_id: str) -> Optional[AudioStreamSession]:
        return self._sessions.get(call_id)

    def add(self, session: AudioStreamSession) -> None:
        """Register a session; replacing a live one for the same call is an error."""
        existing = self._sessions.get(session.call_id)
        if existing is not None and existing is not session and not existing.is_terminated:
            raise ValueError(f"Session already registered for call {session.call_id}")
        self._sessions[session.call_id] = session
        logger.debug("Session registered", call_id=session.call_id, sessions=len(self._sessions))

    def remove(self, call_id: str, session: Optional[AudioStreamSession] = None) -> Optional[AudioStreamSession]:
        """
        Remove the entry for `call_id`.

        When `session` is given, the entry is removed only if it is that exact
        session, so a late callback from an old session cannot evict its
        replacement.
        """
        current = self._sessions.get(call_id)
        if current is None or (session is not None and current is not session):
            return None
        del self._sessions[call_id]
        logger.debug("Session unregistered", call_id=call_id, sessions=len(self._sessions))
        return current

    def sessions(self) -> List[AudioStreamSession]:
        return list(self._sessions.values())

    # ------------------------------------------------------------------
    # Metadata for calls that have not streamed yet
    # ------------------------------------------------------------------

    def register_pending(self, call_id: str, metadata: Optional[Mapping[str, Any]] = None) -> None:
        self._pending[call_id] = dict(metadata or {})

    def claim_pending(self, call_id: str) -> Dict[str, Any]:
        """Pop the metadata registered for `call_id` (empty if none)."""
        return self._pending.pop(call_id, {})

    def discard_pending(self, call_id: str) -> None:
        self._pending.pop(call_id, None)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

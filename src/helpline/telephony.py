"""
Twilio control plane: originate calls and replace a live call's TwiML.

The Twilio SDK is blocking; every request runs in a worker thread.
"""

import asyncio
from typing import Any, Optional, Sequence

import structlog
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from src.helpline.config import get_config
from src.helpline.errors import CallNotFoundError, ControlDocumentTooLargeError, TelephonyError

logger = structlog.get_logger(__name__)

# Twilio rejects inline TwiML above this size.
MAX_TWIML_LENGTH = 4000

TERMINAL_CALL_STATUSES = frozenset({"completed", "failed", "busy", "no-answer", "canceled"})

# 20404: resource not found; 21220: call is not in-progress.
CALL_NOT_FOUND_CODES = frozenset({20404, 21220})

STATUS_CALLBACK_EVENTS = ("answered", "completed")


def is_terminal_status(status: Optional[str]) -> bool:
    return (status or "").strip().lower() in TERMINAL_CALL_STATUSES


def _translate(exc: TwilioRestException, call_sid: Optional[str] = None) -> TelephonyError:
    status = getattr(exc, "status", None)
    code = getattr(exc, "code", None)
    message = getattr(exc, "msg", None) or str(exc)
    if status == 404 or code in CALL_NOT_FOUND_CODES:
        return CallNotFoundError(f"Call {call_sid} not found: {message}", status=status, code=code)
    return TelephonyError(message, status=status, code=code)


class TwilioTelephony:
    """Thin async facade over `twilio.rest.Client`."""

    def __init__(self, config: Optional[Any] = None, client: Optional[Client] = None):
        self.config = config or get_config()
        self._client = client or Client(self.config.twilio_account_sid, self.config.twilio_auth_token)

    async def create_call(
        self,
        to: str,
        answer_url: str,
        status_callback: Optional[str] = None,
        status_events: Sequence[str] = STATUS_CALLBACK_EVENTS,
    ) -> str:
        """Place an outbound call; returns the call sid."""
        kwargs = {
            "to": to,
            "from_": self.config.twilio_phone_number,
            "url": answer_url,
            "timeout": self.config.call_timeout_seconds,
        }
        if status_callback:
            kwargs["status_callback"] = status_callback
            kwargs["status_callback_event"] = list(status_events)

        try:
            call = await asyncio.to_thread(self._client.calls.create, **kwargs)
        except TwilioRestException as e:
            logger.error("Failed to create call", to=to, status=e.status, code=e.code, error=e.msg)
            raise _translate(e) from e

        logger.info("Outbound call created", call_sid=call.sid, to=to)
        return call.sid

    async def update_call(self, call_sid: str, twiml: str) -> None:
        """
        Replace the TwiML of an in-progress call.

        Raises:
            ControlDocumentTooLargeError: If the document exceeds Twilio's limit
            CallNotFoundError: If the call no longer exists or has ended
            TelephonyError: For any other Twilio failure
        """
        if len(twiml) > MAX_TWIML_LENGTH:
            raise ControlDocumentTooLargeError(
                f"TwiML is {len(twiml)} chars, limit is {MAX_TWIML_LENGTH}"
            )

        try:
            await asyncio.to_thread(self._client.calls(call_sid).update, twiml=twiml)
        except TwilioRestException as e:
            raise _translate(e, call_sid) from e

        logger.debug("Call TwiML updated", call_sid=call_sid, length=len(twiml))

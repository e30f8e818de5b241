"""
Twilio Media Streams WebSocket protocol (inbound side).

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid and callSid
- media: Audio data as base64 mu-law 8kHz
- mark: Playback marker acknowledgment
- dtmf: DTMF tone detected
- stop: Stream stopped

Replies are not sent over this socket; they reach the caller through
call updates (see telephony.py), so only parsing lives here.
"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Tuple, Union

import msgspec
import structlog

logger = structlog.get_logger(__name__)

decoder = msgspec.json.Decoder()


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    account_sid: str
    tracks: List[str]
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        start = message.get("start") or {}
        return cls(
            stream_sid=message.get("streamSid") or start.get("streamSid", ""),
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            tracks=list(start.get("tracks") or []),
            custom_parameters=dict(start.get("customParameters") or {}),
        )


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: bytes  # Decoded audio bytes (mu-law)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        media = message.get("media") or {}
        try:
            payload = base64.b64decode(media.get("payload", ""), validate=True)
        except (binascii.Error, ValueError):
            logger.debug("Undecodable media payload", stream_sid=message.get("streamSid", ""))
            payload = b""

        try:
            chunk = int(media.get("chunk", 0))
        except (TypeError, ValueError):
            chunk = 0

        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track", "inbound"),
            chunk=chunk,
            timestamp=str(media.get("timestamp", "")),
            payload=payload,
        )


@dataclass
class TwilioMarkEvent:
    stream_sid: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        mark = message.get("mark") or {}
        return cls(stream_sid=message.get("streamSid", ""), name=mark.get("name", ""))


@dataclass
class TwilioDTMFEvent:
    stream_sid: str
    digit: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioDTMFEvent":
        dtmf = message.get("dtmf") or {}
        return cls(stream_sid=message.get("streamSid", ""), digit=dtmf.get("digit", ""))


@dataclass
class TwilioStopEvent:
    """Parsed Twilio stop event."""
    stream_sid: str
    call_sid: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStopEvent":
        stop = message.get("stop") or {}
        return cls(
            stream_sid=message.get("streamSid", ""),
            call_sid=stop.get("callSid", ""),
        )


TwilioEvent = Union[
    Dict[str, Any],
    TwilioStartEvent,
    TwilioMediaEvent,
    TwilioMarkEvent,
    TwilioDTMFEvent,
    TwilioStopEvent,
]


def parse_twilio_message(raw_message: Union[str, bytes]) -> Tuple[TwilioEventType, TwilioEvent]:
    """
    Parse a raw Twilio WebSocket message.

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If the message is not JSON or has an unknown event type
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        logger.error("Failed to parse Twilio message", error=str(e))
        raise ValueError(f"Invalid JSON: {e}") from e

    if not isinstance(message, dict):
        raise ValueError("Twilio message is not a JSON object")

    event_type_str = message.get("event", "")
    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        logger.warning("Unknown Twilio event type", event_type=event_type_str)
        raise ValueError(f"Unknown event type: {event_type_str}") from None

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    if event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    if event_type == TwilioEventType.MARK:
        return event_type, TwilioMarkEvent.from_message(message)
    if event_type == TwilioEventType.DTMF:
        return event_type, TwilioDTMFEvent.from_message(message)
    if event_type == TwilioEventType.STOP:
        return event_type, TwilioStopEvent.from_message(message)
    return event_type, message

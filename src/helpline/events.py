"""
Typed events consumed by an AudioStreamSession inbox.

Media intake, recognition callbacks and timers never touch session state
directly; they post one of these events and the session handles them one at a
time, in order.
"""

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class MediaFrame:
    """Raw inbound caller audio (mu-law 8kHz)."""
    payload: bytes


@dataclass(frozen=True)
class TranscriptInterim:
    text: str
    stability: float = 0.0
    generation: int = 0


@dataclass(frozen=True)
class TranscriptFinal:
    text: str
    stability: float = 0.0
    generation: int = 0


@dataclass(frozen=True)
class RecognitionError:
    """The recognition stream reported an error."""
    message: str
    generation: int = 0


@dataclass(frozen=True)
class StreamClosed:
    """The recognition stream closed underneath the session."""
    generation: int = 0


@dataclass(frozen=True)
class HealthCheckDue:
    pass


@dataclass(frozen=True)
class InactivityTimeout:
    pass


@dataclass(frozen=True)
class ReconnectDue:
    pass


RecognitionEvent = Union[TranscriptInterim, TranscriptFinal, RecognitionError, StreamClosed]

SessionEvent = Union[
    MediaFrame,
    TranscriptInterim,
    TranscriptFinal,
    RecognitionError,
    StreamClosed,
    HealthCheckDue,
    InactivityTimeout,
    ReconnectDue,
]

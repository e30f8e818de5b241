"""
Exception taxonomy for the helpline agent.

Transient transport failures (recognition, synthesis, telephony) are retried by
their owners; CallNotFoundError is authoritative and triggers immediate cleanup;
ConfigError is fatal at startup.
"""

from typing import Optional


class HelplineError(Exception):
    """Base class for all helpline errors."""


class ConfigError(HelplineError):
    """Raised when configuration is invalid or missing."""


class RecognitionError(HelplineError):
    """Speech recognition stream failed to open or errored."""


class RecognitionStreamClosedError(RecognitionError):
    """Audio was written to a recognition stream that is no longer open."""


class SynthesisError(HelplineError):
    """Speech synthesis failed for a response."""


class GenerationError(HelplineError):
    """The generative text service failed to produce a reply."""


class ArtifactStoreError(HelplineError):
    """A synthesized audio artifact could not be stored."""


class TelephonyError(HelplineError):
    """A telephony control-plane request failed."""

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[int] = None):
        super().__init__(message)
        self.status = status
        self.code = code


class CallNotFoundError(TelephonyError):
    """The control plane reports the call no longer exists."""


class ControlDocumentTooLargeError(TelephonyError):
    """A call-control document exceeds the control plane's size limit."""

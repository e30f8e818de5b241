"""
Audio helpers for synthesized replies.

Twilio plays WAV/MP3 from a URL; the delivery queue only needs to know how
long an utterance lasts so the next update does not cut it off.
"""

import io
import wave
from typing import Optional

WAV_MIME_TYPE = "audio/wav"


def is_wav(audio_bytes: bytes) -> bool:
    return len(audio_bytes) >= 12 and audio_bytes[:4] == b"RIFF" and audio_bytes[8:12] == b"WAVE"


def wav_duration_seconds(audio_bytes: bytes) -> Optional[float]:
    """
    Duration of a WAV byte string in seconds.

    Returns None for anything that is not a readable WAV (e.g. MP3 bytes).
    """
    if not is_wav(audio_bytes):
        return None
    try:
        with wave.open(io.BytesIO(audio_bytes), "rb") as wf:
            frames = wf.getnframes()
            rate = wf.getframerate()
    except (wave.Error, EOFError):
        return None
    if rate <= 0:
        return None
    # Streaming encoders write a placeholder frame count; duration is unknown then.
    if frames <= 0 or frames >= 0x7FFFFFFF:
        return None
    return frames / rate


def write_wav_mono_pcm16(pcm_bytes: bytes, sample_rate: int) -> bytes:
    """Create a mono 16-bit PCM WAV byte string from PCM bytes."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm_bytes or b"")
    return buf.getvalue()

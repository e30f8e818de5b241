"""
Call-control documents (TwiML).

Every document restarts the inbound media stream first: updating a live call
replaces its TwiML, which ends the previous <Stream>, so each reply has to
reopen it for the caller to keep being heard.
"""

from typing import Optional

from twilio.twiml.voice_response import VoiceResponse

INBOUND_TRACK = "inbound_track"


def _start_stream(response: VoiceResponse, stream_url: str) -> None:
    start = response.start()
    start.stream(url=stream_url, track=INBOUND_TRACK)


def build_answer_twiml(
    stream_url: str,
    greeting: Optional[str] = None,
    language: str = "pt-BR",
    voice: str = "alice",
    pause_seconds: int = 300,
) -> str:
    """TwiML returned when the callee answers: hold greeting + media stream."""
    response = VoiceResponse()
    _start_stream(response, stream_url)
    if greeting:
        response.say(greeting, voice=voice, language=language)
    response.pause(length=pause_seconds)
    return str(response)


def build_playback_twiml(audio_url: str, stream_url: str, pause_seconds: int = 60) -> str:
    """TwiML pushed into a live call to play one synthesized reply."""
    response = VoiceResponse()
    _start_stream(response, stream_url)
    response.play(audio_url)
    response.pause(length=pause_seconds)
    return str(response)

"""
Transcript significance filter.

Phone-call recognition frequently re-emits near-duplicate finals during
disfluencies. A final transcript is only worth a new reply when it differs
materially from the last one we answered.

This is a heuristic: genuinely new but lexically similar input can be missed.
"""

from typing import Optional

DEFAULT_SIMILARITY_THRESHOLD = 0.6


def _tokens(text: str) -> set[str]:
    return set((text or "").lower().split())


def token_similarity(a: str, b: str) -> float:
    """
    Ratio of whitespace tokens common to both texts over the larger token set.

    Comparison is case-insensitive. Two empty texts are considered identical.
    """
    tokens_a = _tokens(a)
    tokens_b = _tokens(b)
    largest = max(len(tokens_a), len(tokens_b))
    if largest == 0:
        return 1.0
    return len(tokens_a & tokens_b) / largest


def is_significant(
    transcript: str,
    previous: Optional[str],
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> bool:
    """Return True if `transcript` should be treated as new user input."""
    if not transcript or not transcript.strip():
        return False
    if not previous or not previous.strip():
        return True
    return token_similarity(transcript, previous) < threshold

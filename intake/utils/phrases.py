"""Patient phrase vocabularies and matching helpers.

All matching is done on normalized text: lower-cased, trimmed, with
typographic apostrophes folded to ASCII.
"""

from enum import Enum
from typing import Tuple


# Commands to end intake immediately
DONE_PHRASES: Tuple[str, ...] = (
    "done",
    "i'm done",
    "im done",
    "finish",
    "end",
    "complete",
    "stop",
    "enough",
)

# Commands to skip the current section
SKIP_PHRASES: Tuple[str, ...] = (
    "skip",
    "next",
    "move on",
    "next question",
    "next section",
)

# Phrases explicitly requesting to finish/book
EXPLICIT_FINISH_PHRASES: Tuple[str, ...] = (
    "can we wrap up",
    "i want to book",
    "let's book",
    "lets book",
    "ready to book",
    "finish up",
    "wrap this up",
    "i'm ready",
    "im ready",
    "book now",
    "schedule now",
    "can i book",
    "want to schedule",
    "ready for appointment",
    "i'm done",
    "im done",
)

# Phrases indicating the patient has shared everything
COMPLETION_PHRASES: Tuple[str, ...] = (
    "that's all",
    "thats all",
    "that is all",
    "nothing else",
    "no more",
    "that's it",
    "thats it",
    "no other",
    "nothing more",
    "i think that's everything",
    "that covers it",
    "i'm healthy",
    "im healthy",
    "no issues",
    "no problems",
    "no concerns",
    "that's everything",
    "thats everything",
)

UNCERTAINTY_PHRASES: Tuple[str, ...] = (
    "i don't know",
    "i dont know",
    "not sure",
    "unsure",
    "no idea",
    "can't remember",
    "cant remember",
    "i forget",
    "maybe",
    "possibly",
    "i think so",
    "not certain",
    "hard to say",
    "difficult to say",
)

NEGATIVE_RESPONSES: Tuple[str, ...] = (
    "no",
    "none",
    "nothing",
    "nope",
    "n/a",
    "na",
    "not really",
    "not that i know of",
    "negative",
    "no i don't",
    "no i dont",
    "i don't think so",
    "i dont think so",
    "not at all",
    "i don't have any",
    "i dont have any",
    "don't have any",
    "dont have any",
    "i have none",
    "have none",
    "i have no",
    "have no",
    "i don't have",
    "i dont have",
    "don't have",
    "dont have",
    "proceed",
    "skip",
    "move on",
    "next",
    "continue",
    "no records",
    "no documents",
    "no files",
    "no photos",
    "nothing to upload",
    "nothing to share",
)


class MatchMode(str, Enum):
    EXACT_OR_PREFIX = "exact_or_prefix"
    SUBSTRING = "substring"
    LEADING = "leading"  # exact, or followed by space/comma/period


def normalize(message: str) -> str:
    return (message or "").replace("’", "'").replace("‘", "'").lower().strip()


def matches_any(text: str, phrases: Tuple[str, ...], mode: MatchMode) -> bool:
    """Check normalized ``text`` against ``phrases`` with the given mode."""
    if not text:
        return False
    if mode == MatchMode.SUBSTRING:
        return any(phrase in text for phrase in phrases)
    if mode == MatchMode.EXACT_OR_PREFIX:
        return any(text == phrase or text.startswith(phrase + " ") for phrase in phrases)
    return any(
        text == phrase or any(text.startswith(phrase + sep) for sep in (" ", ",", "."))
        for phrase in phrases
    )

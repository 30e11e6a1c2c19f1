"""
Cleaning of email text before it reaches a generative prompt or the
feedback store.

Anyone can send mail that says "ignore previous instructions", so phrases
that try to steer the model are replaced with a marker rather than passed
through.
"""

import logging
import re
import unicodedata
from typing import Dict, List

logger = logging.getLogger(__name__)

MAX_SUBJECT_LENGTH = 500
MAX_BODY_LENGTH = 8000
MAX_SENDER_LENGTH = 320

FILTERED = "[FILTERED]"

_STEERING: Dict[str, List[str]] = {
    "override": [
        r"(?i)ignore\s+(previous|all|above)\s+(instructions?|prompts?)",
        r"(?i)disregard\s+(previous|all|above)",
        r"(?i)forget\s+(everything|all|previous)",
        r"(?i)new\s+instructions?:",
    ],
    "role": [
        r"(?im)^\s*(system|assistant)\s*:",
        r"(?i)you\s+are\s+now",
        r"(?i)pretend\s+(to\s+be|you\s+are)",
    ],
    # Mail that tries to dictate the classifier's JSON answer
    "verdict": [
        r"(?i)respond\s+with\s+\{",
        r'(?i)"is_job_related"\s*:',
    ],
    "delimiter": [
        r"```system",
        r"<\|im_(start|end)\|>",
        r"\[/?INST\]",
    ],
}

_PATTERNS: Dict[str, List["re.Pattern"]] = {
    kind: [re.compile(p) for p in patterns] for kind, patterns in _STEERING.items()
}

# Keeps \t \n \r
_CONTROL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_ANY_CONTROL = re.compile(r"[\x00-\x1f\x7f]")


def _neutralize(text: str) -> str:
    hits = []
    for kind, patterns in _PATTERNS.items():
        for pattern in patterns:
            text, n = pattern.subn(FILTERED, text)
            if n:
                hits.append(kind)
    if hits:
        logger.warning(f"Prompt steering neutralized in email text ({', '.join(sorted(set(hits)))})")
    return text


def sanitize_text(text: str, max_length: int = MAX_BODY_LENGTH) -> str:
    """
    Strip control characters, NFKC-normalize, cap at `max_length` (an
    ellipsis marks the cut) and neutralize prompt steering.
    """
    if not text:
        return ""

    text = unicodedata.normalize("NFKC", _CONTROL.sub("", str(text)))
    if len(text) > max_length:
        logger.debug(f"Text truncated from {len(text)} to {max_length} characters")
        text = text[:max_length] + "..."
    return _neutralize(text)


def sanitize_subject(subject: str) -> str:
    cleaned = sanitize_text(subject, MAX_SUBJECT_LENGTH)
    return cleaned.replace("\r", " ").replace("\n", " ")


def sanitize_body(body: str, max_length: int = MAX_BODY_LENGTH) -> str:
    return sanitize_text(body, max_length)


def sanitize_sender(sender: str) -> str:
    """Sender header: one line, no control characters."""
    if not sender:
        return ""
    return _ANY_CONTROL.sub("", str(sender)[:MAX_SENDER_LENGTH]).strip()

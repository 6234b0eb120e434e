"""Deterministic keyword grammar that produces an Intent from raw text.

Used when the analysis provider is unavailable or its response is not
valid JSON. ``parse_fallback_intent`` is stable on its own rendered
output: ``parse(intent_to_text(parse(t))) == parse(t)``.
"""

from __future__ import annotations

import re
from typing import Sequence

from app.schemas.intent import Intent

LEAVE_AT_DOOR = "leave at door"
SIGNATURE_REQUIRED = "signature required"
MENTIONED_ISSUES = "Customer mentioned issues"


def _compile(patterns: Sequence[str]) -> list[re.Pattern[str]]:
    return [re.compile(pattern, re.IGNORECASE) for pattern in patterns]


_URGENT = _compile([r"\burgent(ly)?\b", r"\basap\b", r"\ba\.s\.a\.p\b", r"\bimmediately\b"])
_HIGH = _compile([r"\bimportant\b", r"\bplease\b"])
_LEAVE_AT_DOOR = _compile([
    r"\bleave\s+(?:it\s+|them\s+|the\s+(?:package|parcel|box)\s+)?(?:at|by|outside)\s+(?:the\s+|my\s+)?(?:front\s+|back\s+|side\s+)?door\b",
    r"\bno\s+signature\b",
])
_SIGNATURE = _compile([r"\bsignature\s+(?:is\s+)?required\b", r"\bmust\s+sign\b"])
_CONCERN = _compile([r"\bproblems?\b", r"\bissues?\b", r"\bconcern(s|ed)?\b"])
_NEGATIVE = _compile([r"\bangry\b", r"\bupset\b", r"\bunhappy\b", r"\bfrustrated\b", r"\bterrible\b", r"\bdisappointed\b"])
_POSITIVE = _compile([r"\bthanks\b", r"\bthank\s+you\b", r"\bgreat\b", r"\bappreciate\b"])


def _matches(patterns: Sequence[re.Pattern[str]], text: str) -> bool:
    return any(pattern.search(text) for pattern in patterns)


def parse_fallback_intent(text: str | None) -> Intent:
    """Populate an Intent from keywords in ``text``; unmatched fields keep defaults."""
    text = text or ""
    intent = Intent()

    if _matches(_URGENT, text):
        intent.priority = "urgent"
        intent.time_sensitive = True
    elif _matches(_HIGH, text):
        intent.priority = "high"

    if _matches(_NEGATIVE, text):
        intent.sentiment = "negative"
    elif _matches(_POSITIVE, text):
        intent.sentiment = "positive"

    if _matches(_LEAVE_AT_DOOR, text):
        intent.conditions.append(LEAVE_AT_DOOR)
    if _matches(_SIGNATURE, text):
        intent.conditions.append(SIGNATURE_REQUIRED)

    if _matches(_CONCERN, text):
        intent.concerns.append(MENTIONED_ISSUES)

    return intent


def intent_to_text(intent: Intent) -> str:
    """Render an Intent as plain text the grammar reads back to the same Intent."""
    parts: list[str] = []
    if intent.priority == "urgent":
        parts.append("urgent")
    elif intent.priority == "high":
        parts.append("important")

    if intent.sentiment == "negative":
        parts.append("upset")
    elif intent.sentiment == "positive":
        parts.append("thanks")

    parts.extend(intent.conditions)
    parts.extend(intent.concerns)
    parts.extend(intent.instructions)
    return ". ".join(parts)

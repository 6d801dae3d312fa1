"""Keyword-based scoring of finished call transcripts.

Derives lead, appointment, qualification, sentiment, quality and resolution
signals from the final transcript. Everything here is a fixed heuristic:
the lexicons and cutoffs below are the whole model.
"""

import logging
import re

from .models import DerivedSignals, Utterance

logger = logging.getLogger(__name__)


# --- Lexicons ---

LEAD_KEYWORDS = frozenset({
    "interested",
    "quote",
    "quotes",
    "buy",
    "buying",
    "purchase",
    "pricing",
    "price",
    "cost",
    "estimate",
    "hire",
})

APPOINTMENT_KEYWORDS = frozenset({
    "schedule",
    "scheduled",
    "scheduling",
    "book",
    "booked",
    "booking",
    "appointment",
    "appointments",
})

QUALIFICATION_KEYWORDS = frozenset({
    "budget",
    "timeline",
    "authority",
    "need",
})

POSITIVE_KEYWORDS = frozenset({
    "great",
    "good",
    "excellent",
    "perfect",
    "wonderful",
    "awesome",
    "happy",
    "thanks",
    "thank",
    "appreciate",
    "helpful",
    "love",
})

NEGATIVE_KEYWORDS = frozenset({
    "bad",
    "terrible",
    "awful",
    "horrible",
    "angry",
    "upset",
    "frustrated",
    "annoyed",
    "disappointed",
    "complaint",
    "problem",
    "hate",
    "wrong",
})

# --- Cutoffs ---

LEAD_POINTS_PER_KEYWORD = 10
MAX_LEAD_SCORE = 100
LEAD_CAPTURE_MIN_LEAD_HITS = 2
LEAD_CAPTURE_MIN_APPOINTMENT_HITS = 1
APPOINTMENT_BOOKED_MIN_HITS = 2
SALES_QUALIFIED_MIN_HITS = 2
GOOD_QUALITY_MIN_SECONDS = 30  # exclusive
FAIR_QUALITY_MIN_SECONDS = 10  # exclusive

TRANSFERRED_REASON = "call-transferred"

# Ordered: first matching rule wins.
RESOLUTION_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("transferred", ("transfer",)),
    ("appointment", ("schedule", "appointment")),
    ("information", ("information", "answer")),
    ("callback", ("callback", "call back")),
)
DEFAULT_RESOLUTION = "general"

_TOKEN_RE = re.compile(r"[a-z0-9']+")


def flatten_transcript(transcript: list[Utterance]) -> str:
    """Join all utterance text into a single lowercase string."""
    return " ".join(u.text for u in transcript if u.text).lower()


def count_keywords(tokens: list[str], lexicon: frozenset[str]) -> int:
    """Count token occurrences that belong to the lexicon."""
    return sum(1 for token in tokens if token in lexicon)


def sentiment_score(positive: int, negative: int) -> float:
    """Balance of positive vs negative hits in [-1, 1]; 0 with no hits."""
    total = positive + negative
    if total == 0:
        return 0.0
    return (positive - negative) / total


def quality_bucket(duration_seconds: int) -> str:
    """Bucket a call by length: >30s good, >10s fair, otherwise poor."""
    if duration_seconds > GOOD_QUALITY_MIN_SECONDS:
        return "good"
    if duration_seconds > FAIR_QUALITY_MIN_SECONDS:
        return "fair"
    return "poor"


def resolution_type(text: str, ended_reason: str | None) -> str:
    """Classify how the call was resolved from transcript mentions."""
    for resolution, phrases in RESOLUTION_RULES:
        if resolution == "transferred" and ended_reason == TRANSFERRED_REASON:
            return resolution
        if any(phrase in text for phrase in phrases):
            return resolution
    return DEFAULT_RESOLUTION


def analyze(
    transcript: list[Utterance],
    duration_seconds: int,
    ended_reason: str | None,
) -> DerivedSignals:
    """Derive structured signals from a finished call.

    Pure and deterministic: identical inputs always produce an identical
    result, and empty input degrades to zero/default values.

    Args:
        transcript: Final transcript snapshot
        duration_seconds: Call length in seconds
        ended_reason: Provider's end reason (may be None)

    Returns:
        DerivedSignals for the call
    """
    text = flatten_transcript(transcript or [])
    tokens = _TOKEN_RE.findall(text)

    lead_hits = count_keywords(tokens, LEAD_KEYWORDS)
    appointment_hits = count_keywords(tokens, APPOINTMENT_KEYWORDS)
    qualification_hits = count_keywords(tokens, QUALIFICATION_KEYWORDS)
    positive_hits = count_keywords(tokens, POSITIVE_KEYWORDS)
    negative_hits = count_keywords(tokens, NEGATIVE_KEYWORDS)

    signals = DerivedSignals(
        lead_score=min(lead_hits * LEAD_POINTS_PER_KEYWORD, MAX_LEAD_SCORE),
        sentiment_score=sentiment_score(positive_hits, negative_hits),
        quality_bucket=quality_bucket(max(duration_seconds or 0, 0)),
        resolution_type=resolution_type(text, ended_reason),
        lead_captured=(
            lead_hits >= LEAD_CAPTURE_MIN_LEAD_HITS
            or appointment_hits >= LEAD_CAPTURE_MIN_APPOINTMENT_HITS
        ),
        appointment_booked=appointment_hits >= APPOINTMENT_BOOKED_MIN_HITS,
        sales_qualified=qualification_hits >= SALES_QUALIFIED_MIN_HITS,
    )
    logger.debug(
        f"Transcript analyzed: lead={lead_hits} appointment={appointment_hits} "
        f"qualification={qualification_hits} pos={positive_hits} neg={negative_hits}"
    )
    return signals

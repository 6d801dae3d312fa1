"""Resolve a caller's question against Q&A overrides, then the knowledge base.

The cascade is strict: an assistant's Q&A pairs are checked in priority
order first, semantic search over knowledge chunks second, and when neither
yields anything the caller is escalated to a human. Nothing is ever made up.
"""

import asyncio
import logging
import re
from collections.abc import Awaitable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, TypeVar

from .models import QAPair
from .vector_search import SearchResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

ATTRIBUTION_PREFIX = "Based on our information: "
ESCALATION_MESSAGE = (
    "I don't have specific information about that. "
    "Let me transfer you to someone who can help."
)

KEYWORD_MIN_LENGTH = 4  # words of 3 characters or fewer are ignored
KEYWORD_OVERLAP_RATIO = 0.6
DEFAULT_SIMILARITY_THRESHOLD = 0.7
DEFAULT_TOP_K = 3
DEFAULT_TIMEOUT_SECONDS = 5.0

_NON_WORD_RE = re.compile(r"[^a-z0-9]+")


class MatchRule(Enum):
    """How a Q&A pair matched the query."""

    EXACT = "exact"
    SUBSTRING = "substring"
    KEYWORD_OVERLAP = "keyword_overlap"


class ExternalServiceTimeout(Exception):
    """Embedding or vector search backend did not answer in time."""


@dataclass
class Answer:
    """A grounded answer for the caller.

    Attributes:
        text: What to say
        source: "qa_pair" or "knowledge_base"
        match_rule: Rule that matched (Q&A answers only)
        qa_pair_id: Matching pair (Q&A answers only)
        scores: Similarity scores of the chunks used (knowledge answers only)
    """

    text: str
    source: str
    match_rule: MatchRule | None = None
    qa_pair_id: str | None = None
    scores: list[float] = field(default_factory=list)


@dataclass
class Escalate:
    """No confident answer; offer the caller a human."""

    reason: str
    message: str = ESCALATION_MESSAGE


class QAPairSource(Protocol):
    def list_for_assistant(self, assistant_id: str) -> list[QAPair]: ...


class SemanticSearch(Protocol):
    async def embed_text(self, text: str) -> list[float]: ...

    async def search_knowledge(
        self,
        assistant_id: str,
        query_vector: list[float],
        threshold: float,
        limit: int,
    ) -> list[SearchResult]: ...


def normalize(text: str) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    return _NON_WORD_RE.sub(" ", (text or "").lower()).strip()


def keywords(text: str) -> set[str]:
    """Significant words of a string (longer than three characters)."""
    return {word for word in normalize(text).split() if len(word) >= KEYWORD_MIN_LENGTH}


def match_rule(query: str, question: str) -> MatchRule | None:
    """Test one Q&A question against a query, strongest rule first.

    Args:
        query: Caller's query
        question: Configured question

    Returns:
        The first rule that matches, or None
    """
    normalized_query = normalize(query)
    normalized_question = normalize(question)
    if not normalized_query or not normalized_question:
        return None

    if normalized_query == normalized_question:
        return MatchRule.EXACT

    if normalized_query in normalized_question or normalized_question in normalized_query:
        return MatchRule.SUBSTRING

    query_words = keywords(normalized_query)
    question_words = keywords(normalized_question)
    if query_words and question_words:
        overlap = len(query_words & question_words)
        smaller = min(len(query_words), len(question_words))
        if overlap >= KEYWORD_OVERLAP_RATIO * smaller:
            return MatchRule.KEYWORD_OVERLAP

    return None


class KnowledgeResolver:
    """Answers caller questions from an assistant's configured knowledge."""

    def __init__(
        self,
        qa_pairs: QAPairSource,
        semantic_search: SemanticSearch | None = None,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        top_k: int = DEFAULT_TOP_K,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the resolver.

        Args:
            qa_pairs: Source of an assistant's Q&A pairs
            semantic_search: Embedding + vector search backend (optional)
            similarity_threshold: Minimum similarity for knowledge chunks
            top_k: Maximum number of knowledge chunks in an answer
            timeout_seconds: Limit for each external call
        """
        self._qa_pairs = qa_pairs
        self._semantic_search = semantic_search
        self._threshold = similarity_threshold
        self._top_k = top_k
        self._timeout = timeout_seconds

    async def resolve(self, assistant_id: str, query: str) -> Answer | Escalate:
        """Resolve a query to an answer or an escalation.

        Args:
            assistant_id: Assistant handling the call
            query: Caller's question as transcribed

        Returns:
            Answer from a Q&A pair or the knowledge base, otherwise Escalate
        """
        if not normalize(query):
            return Escalate(reason="empty query")

        pairs = sorted(
            self._qa_pairs.list_for_assistant(assistant_id),
            key=lambda p: p.priority,
        )
        for pair in pairs:
            rule = match_rule(query, pair.question)
            if rule is not None:
                logger.info(
                    f"Q&A match for assistant {assistant_id}: pair {pair.id} "
                    f"(priority {pair.priority}, {rule.value})"
                )
                return Answer(
                    text=pair.answer,
                    source="qa_pair",
                    match_rule=rule,
                    qa_pair_id=pair.id,
                )

        results = await self._semantic_results(assistant_id, query)
        if results:
            logger.info(
                f"Knowledge base match for assistant {assistant_id}: "
                f"{len(results)} chunks"
            )
            return Answer(
                text=ATTRIBUTION_PREFIX + "\n\n".join(r.content for r in results),
                source="knowledge_base",
                scores=[r.score for r in results],
            )

        logger.info(f"No knowledge for assistant {assistant_id}; escalating")
        return Escalate(reason="no matching knowledge")

    async def _semantic_results(self, assistant_id: str, query: str) -> list[SearchResult]:
        """Vector search the knowledge base; any failure means no results."""
        if self._semantic_search is None:
            return []

        try:
            vector = await self._with_timeout(
                self._semantic_search.embed_text(query), "embedding"
            )
            results = await self._with_timeout(
                self._semantic_search.search_knowledge(
                    assistant_id, vector, self._threshold, self._top_k
                ),
                "vector search",
            )
        except ExternalServiceTimeout as e:
            logger.warning(f"{e}; treating as no semantic result")
            return []
        except Exception as e:
            logger.warning(f"Semantic search failed: {e}; treating as no semantic result")
            return []

        matches = [r for r in results if r.score >= self._threshold and r.content]
        return matches[: self._top_k]

    async def _with_timeout(self, awaitable: Awaitable[T], label: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError:
            raise ExternalServiceTimeout(
                f"{label} timed out after {self._timeout:.1f}s"
            ) from None

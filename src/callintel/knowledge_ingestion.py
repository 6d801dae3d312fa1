"""Knowledge base ingestion: chunk, embed and store assistant content."""

import logging
import math
import re

from pymongo import UpdateOne
from pymongo.errors import BulkWriteError

from .models import KnowledgeChunk
from .vector_search import VectorSearch

logger = logging.getLogger(__name__)

MAX_CHUNK_TOKENS = 800
CHARS_PER_TOKEN = 4
EMBED_BATCH_SIZE = 10

_PARAGRAPH_RE = re.compile(r"\n\s*\n")
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")


def estimate_tokens(text: str) -> int:
    """Rough token estimate (4 characters per token)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _split_long_paragraph(paragraph: str, max_tokens: int) -> list[str]:
    """Split an oversized paragraph on sentence boundaries."""
    pieces: list[str] = []
    current = ""
    for sentence in _SENTENCE_RE.split(paragraph):
        candidate = f"{current} {sentence}".strip() if current else sentence
        if current and estimate_tokens(candidate) > max_tokens:
            pieces.append(current)
            current = sentence
        else:
            current = candidate
    if current:
        pieces.append(current)
    return pieces


def chunk_content(content: str, max_tokens: int = MAX_CHUNK_TOKENS) -> list[str]:
    """Group paragraphs into chunks that stay under the token budget.

    Args:
        content: Raw knowledge base text
        max_tokens: Estimated token budget per chunk

    Returns:
        Ordered list of chunk texts
    """
    paragraphs = [p.strip() for p in _PARAGRAPH_RE.split(content or "") if p.strip()]
    chunks: list[str] = []
    current = ""

    for paragraph in paragraphs:
        parts = (
            _split_long_paragraph(paragraph, max_tokens)
            if estimate_tokens(paragraph) > max_tokens
            else [paragraph]
        )
        for part in parts:
            if current and estimate_tokens(current) + estimate_tokens(part) > max_tokens:
                chunks.append(current)
                current = part
            else:
                current = f"{current}\n\n{part}" if current else part

    if current:
        chunks.append(current)

    return chunks


class KnowledgeIngestion:
    """Handles ingesting an assistant's knowledge base into MongoDB.

    Splits content into chunks, generates embeddings with Voyage AI in
    batches, and replaces the assistant's previous chunks.
    """

    def __init__(self, vector_search: VectorSearch):
        """Initialize KnowledgeIngestion with a VectorSearch instance.

        Args:
            vector_search: VectorSearch instance for embedding generation
        """
        self._vector_search = vector_search

    async def ingest(self, assistant_id: str, content: str) -> int:
        """Replace an assistant's knowledge chunks with freshly embedded content.

        Every batch is embedded before anything is written, so an embedding
        failure leaves the previous knowledge base untouched. New chunks
        overwrite old ones by index and leftover higher indexes are removed
        last.

        Args:
            assistant_id: Assistant that owns the content
            content: Raw knowledge base text

        Returns:
            Count of chunks stored
        """
        chunks = chunk_content(content)
        logger.info(f"Created {len(chunks)} chunks for assistant {assistant_id}")

        batches: list[list[UpdateOne]] = []
        total_batches = math.ceil(len(chunks) / EMBED_BATCH_SIZE)
        for start in range(0, len(chunks), EMBED_BATCH_SIZE):
            batch = chunks[start:start + EMBED_BATCH_SIZE]
            embeddings = await self._vector_search.embed_texts(batch)

            operations = []
            for offset, (text, embedding) in enumerate(zip(batch, embeddings)):
                chunk = KnowledgeChunk(
                    assistant_id=assistant_id,
                    content=text,
                    chunk_index=start + offset,
                    embedding=embedding,
                )
                operations.append(
                    UpdateOne({"_id": chunk.id}, {"$set": chunk.to_dict()}, upsert=True)
                )
            batches.append(operations)

            logger.info(
                f"Embedded batch {len(batches)}/{total_batches} "
                f"for assistant {assistant_id}"
            )

        collection = self._vector_search.knowledge_collection
        stored = 0
        for number, operations in enumerate(batches, start=1):
            try:
                result = collection.bulk_write(operations, ordered=False)
                stored += result.matched_count + result.upserted_count
            except BulkWriteError as e:
                # Some operations may have succeeded
                stored += e.details.get("nMatched", 0) + len(e.details.get("upserted", []))
                logger.error(f"Failed to store chunk batch {number} for {assistant_id}: {e}")

        collection.delete_many(
            {"assistant_id": assistant_id, "chunk_index": {"$gte": len(chunks)}}
        )

        return stored

"""Vector search functionality using Voyage AI embeddings and MongoDB Atlas."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import voyageai
from pymongo.collection import Collection

from .config import get_settings
from .database import DatabaseManager

logger = logging.getLogger(__name__)


@dataclass
class SearchResult:
    """Result from a vector search query.

    Attributes:
        content: The matched knowledge chunk text
        metadata: Additional metadata about the match
        score: Similarity score (higher is more relevant)
    """

    content: str
    metadata: dict[str, Any]
    score: float


class VectorSearch:
    """Handles embedding generation and MongoDB Atlas vector search.

    Uses Voyage AI for generating 1024-dimension embeddings and MongoDB Atlas
    vector search over each assistant's knowledge chunks. The Voyage client
    and pymongo are blocking, so calls run in a worker thread and callers can
    bound them with a timeout.
    """

    EMBEDDING_DIMENSIONS = 1024
    VECTOR_INDEX = "knowledge_vector_index"
    DEFAULT_LIMIT = 3

    def __init__(
        self,
        voyage_api_key: str | None = None,
        db_manager: DatabaseManager | None = None,
        model: str | None = None,
    ):
        """Initialize VectorSearch with Voyage AI client and MongoDB connection.

        Args:
            voyage_api_key: Voyage AI API key (defaults to settings)
            db_manager: Database manager instance (defaults to global instance)
            model: Embedding model name (defaults to settings)
        """
        settings = get_settings()
        self._api_key = voyage_api_key or settings.voyage_api_key
        self._model = model or settings.embedding_model
        self._voyage_client = voyageai.Client(api_key=self._api_key)

        if db_manager is not None:
            self._db_manager = db_manager
        else:
            from .database import get_database
            self._db_manager = get_database()

    @property
    def knowledge_collection(self) -> Collection:
        """Get the knowledge_chunks collection."""
        return self._db_manager.knowledge_chunks

    async def embed_text(self, text: str) -> list[float]:
        """Generate embedding vector using Voyage AI.

        Args:
            text: Text to embed

        Returns:
            List of 1024 floats representing the embedding vector
        """
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")

        embeddings = await self.embed_texts([text])
        return embeddings[0]

    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for a batch of texts in one request.

        Args:
            texts: Non-empty texts to embed

        Returns:
            One embedding per input text, in order
        """
        if not texts:
            return []

        result = await asyncio.to_thread(
            self._voyage_client.embed,
            texts=texts,
            model=self._model,
        )
        return result.embeddings

    async def search_knowledge(
        self,
        assistant_id: str,
        query_vector: list[float],
        threshold: float,
        limit: int = DEFAULT_LIMIT,
    ) -> list[SearchResult]:
        """Search an assistant's knowledge chunks by vector similarity.

        Args:
            assistant_id: Assistant whose chunks are searched
            query_vector: Embedding of the caller's query
            threshold: Minimum similarity score to keep a match
            limit: Maximum number of results

        Returns:
            List of SearchResult objects sorted by relevance (highest first)
        """
        pipeline = [
            {
                "$vectorSearch": {
                    "index": self.VECTOR_INDEX,
                    "path": "embedding",
                    "queryVector": query_vector,
                    "numCandidates": limit * 10,  # Search more candidates for better results
                    "limit": limit,
                    "filter": {"assistant_id": assistant_id},
                }
            },
            {
                "$project": {
                    "_id": 1,
                    "assistant_id": 1,
                    "content": 1,
                    "chunk_index": 1,
                    "score": {"$meta": "vectorSearchScore"},
                }
            },
            {"$match": {"score": {"$gte": threshold}}},
        ]

        docs = await asyncio.to_thread(
            lambda: list(self.knowledge_collection.aggregate(pipeline))
        )

        results = [
            SearchResult(
                content=doc.get("content", ""),
                metadata={
                    "id": str(doc.get("_id", "")),
                    "assistant_id": doc.get("assistant_id", ""),
                    "chunk_index": doc.get("chunk_index"),
                },
                score=doc.get("score", 0.0),
            )
            for doc in docs
            if doc.get("content")
        ]

        # Ensure results are sorted by score descending (highest first)
        results.sort(key=lambda r: r.score, reverse=True)

        return results

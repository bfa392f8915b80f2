"""Embedding client: batched, order-preserving text-to-vector mapping."""
from dataclasses import dataclass
from typing import List, Optional, Sequence

import structlog

from notechat.config import RagConfig
from notechat.errors import UpstreamError
from notechat.rag.chunker import Chunk
from notechat.retry import call_with_retry

logger = structlog.get_logger()

# Probe text used to learn the model's dimensionality
DIMENSION_PROBE = "dimension probe"


@dataclass(frozen=True)
class EmbeddedChunk:
    """A chunk together with its embedding vector."""

    chunk: Chunk
    vector: List[float]


class EmbeddingClient:
    """Maps texts to vectors through the provider, one batch call per slice.

    ``backend`` is any object with an async ``embeddings(texts, model)``
    method returning one vector per text, such as :class:`OpenAIClient`.
    """

    def __init__(self, backend, rag_config: Optional[RagConfig] = None):
        self.backend = backend
        self.config = rag_config or RagConfig()
        self._dimension: Optional[int] = None

    async def _embed_batch(self, batch: List[str]) -> List[List[float]]:
        vectors = await call_with_retry(
            lambda: self.backend.embeddings(batch, model=self.config.embedding_model),
            attempts=self.config.max_retries,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
            op_name="embed_batch",
        )
        if len(vectors) != len(batch):
            raise UpstreamError(
                f"Embedding backend returned {len(vectors)} vectors for {len(batch)} texts",
                retryable=False,
            )
        return vectors

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed texts, one vector per input, preserving order.

        Raises:
            UpstreamError: When a batch still fails after retries
        """
        texts = list(texts)
        if not texts:
            return []

        size = self.config.embedding_batch_size
        vectors: List[List[float]] = []
        for i in range(0, len(texts), size):
            vectors.extend(await self._embed_batch(texts[i:i + size]))

        logger.debug("texts_embedded", count=len(texts), batches=-(-len(texts) // size))
        return vectors

    async def embed_query(self, text: str) -> List[float]:
        """Embed a single query string."""
        return (await self.embed([text]))[0]

    async def embed_chunks(self, chunks: Sequence[Chunk]) -> List[EmbeddedChunk]:
        """Embed chunk texts and pair each chunk with its vector."""
        vectors = await self.embed([chunk.text for chunk in chunks])
        return [EmbeddedChunk(chunk=c, vector=v) for c, v in zip(chunks, vectors)]

    async def detect_dimension(self) -> int:
        """Detect (and cache) the embedding dimension by embedding a probe string."""
        if self._dimension is None:
            logger.info("detecting_embedding_dimension", model=self.config.embedding_model)
            self._dimension = len(await self.embed_query(DIMENSION_PROBE))
            logger.info("embedding_dimension_detected", dimension=self._dimension)
        return self._dimension

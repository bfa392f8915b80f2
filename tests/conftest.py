"""Pytest fixtures for pipeline tests.

No network: the LLM/embedding provider is a deterministic fake and the
vector index lives in memory unless a test passes a directory.
"""
import asyncio
from typing import Dict, List, Optional, Sequence

import pytest

from notechat.config import RagConfig
from notechat.errors import UpstreamError
from notechat.rag.embeddings import EmbeddingClient
from notechat.rag.ingest import Indexer
from notechat.rag.md_parser import Document
from notechat.rag.retriever import ConversationalRetriever
from notechat.rag.store_faiss import VectorIndex

# Each vector dimension counts one keyword; the last is a constant bias
VOCABULARY = ("cat", "dog", "coffee", "python", "garden", "train")


def keyword_vector(text: str) -> List[float]:
    lowered = text.lower()
    return [float(lowered.count(word)) for word in VOCABULARY] + [0.1]


class FakeProvider:
    """Stands in for OpenAIClient: embeddings, chat and streamed chat."""

    def __init__(
        self,
        tokens: Sequence[str] = ("Hel", "lo", " wor", "ld"),
        fail_after: Optional[int] = None,
        fail_embedding_on: Optional[str] = None,
        standalone: Optional[str] = None,
    ):
        self.tokens = list(tokens)
        self.fail_after = fail_after
        self.fail_embedding_on = fail_embedding_on
        self.standalone = standalone
        self.stream_failures_before_first_token = 0
        self.gate: Optional[asyncio.Event] = None

        self.embedded: List[str] = []
        self.chat_calls: List[List[Dict[str, str]]] = []
        self.stream_calls: List[List[Dict[str, str]]] = []
        self.streams_closed = 0

    async def embeddings(self, texts: List[str], model: str = None) -> List[List[float]]:
        if self.fail_embedding_on and any(self.fail_embedding_on in t for t in texts):
            raise UpstreamError("embedding rejected", status_code=400, retryable=False)
        self.embedded.extend(texts)
        return [keyword_vector(t) for t in texts]

    async def chat(self, messages, model=None, temperature=None) -> str:
        self.chat_calls.append(messages)
        return self.standalone or messages[-1]["content"]

    async def stream_chat(self, messages, model=None, temperature=None):
        self.stream_calls.append(messages)
        try:
            if self.stream_failures_before_first_token:
                self.stream_failures_before_first_token -= 1
                raise UpstreamError("connection reset", retryable=True)
            for i, token in enumerate(self.tokens):
                if self.fail_after is not None and i == self.fail_after:
                    raise UpstreamError("connection reset", retryable=True)
                if i == 1 and self.gate is not None:
                    await self.gate.wait()
                await asyncio.sleep(0)
                yield token
        finally:
            self.streams_closed += 1

    async def list_models(self) -> List[str]:
        return ["gpt-4"]


@pytest.fixture
def rag_config() -> RagConfig:
    return RagConfig(
        chunk_size=120,
        chunk_overlap=20,
        top_k=4,
        max_documents=None,
        embedding_batch_size=3,
        collection_name="test-notes",
        memory_window=None,
        max_retries=2,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
    )


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def vector_index() -> VectorIndex:
    return VectorIndex()


@pytest.fixture
def embedding_client(provider, rag_config) -> EmbeddingClient:
    return EmbeddingClient(provider, rag_config)


@pytest.fixture
def indexer(vector_index, embedding_client, rag_config) -> Indexer:
    return Indexer(vector_index, embedding_client, rag_config)


@pytest.fixture
def retriever(provider, embedding_client, vector_index, rag_config) -> ConversationalRetriever:
    return ConversationalRetriever(provider, embedding_client, vector_index, rag_config)


@pytest.fixture
def documents() -> List[Document]:
    return [
        Document(id="pets/cats.md", name="cats", raw_text="My cat sleeps all day. The cat likes the garden."),
        Document(id="pets/dogs.md", name="dogs", raw_text="The dog wants a walk. A dog barks at the train."),
        Document(id="kitchen/coffee.md", name="coffee", raw_text="Coffee beans from the market. Brew coffee slowly."),
    ]

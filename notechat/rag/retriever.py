"""Conversational retrieval over indexed notes.

Handles:
- History-aware reformulation of follow-up questions
- Query embedding and vector search
- Prompt composition (instructions, memory, attributed note excerpts)
- Streaming the answer token by token
"""
import asyncio
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional

import structlog

from notechat.config import RagConfig
from notechat.errors import StreamInterrupted, UpstreamError
from notechat.memory.manager import ConversationMemory
from notechat.rag.chunker import Chunk
from notechat.rag.embeddings import EmbeddingClient
from notechat.rag.store_faiss import VectorIndex
from notechat.retry import backoff_delay, call_with_retry, is_retryable

logger = structlog.get_logger()

SYSTEM_INSTRUCTIONS = """You are a helpful assistant answering questions about the user's notes.
Use the note excerpts below to answer the question at the end.
If the excerpts don't contain the answer, say that you don't know rather than making one up.
When you use an excerpt, mention the note it came from."""

NO_CONTEXT = "(No relevant notes were found.)"

CONDENSE_PROMPT = """Given the following conversation and a follow up question, rephrase the follow up question to be a standalone question, in its original language.

Chat History:
{history}
Follow Up Input: {question}
Standalone question:"""


@dataclass(frozen=True)
class RetrievalResult:
    """A retrieved chunk with its similarity to the query."""

    chunk: Chunk
    score: float

    @property
    def source(self) -> str:
        return self.chunk.source_document_name


def format_context(results: List[RetrievalResult]) -> str:
    """Render retrieved chunks, each attributed to its note."""
    if not results:
        return NO_CONTEXT
    parts = [
        f"[Source {i}: {result.source}]\n{result.chunk.text.strip()}\n"
        for i, result in enumerate(results, 1)
    ]
    return "\n".join(parts)


def compose_prompt(
    question: str,
    memory: ConversationMemory,
    results: List[RetrievalResult],
) -> List[Dict[str, str]]:
    """Build the generation messages: system + context, memory transcript, question."""
    system_content = f"{SYSTEM_INSTRUCTIONS}\n\nNOTES CONTEXT:\n{format_context(results)}"
    return (
        [{"role": "system", "content": system_content}]
        + memory.as_messages()
        + [{"role": "user", "content": question}]
    )


class AnswerStream:
    """Async iterator over answer tokens for one question.

    Consumable once. On normal completion the exchange is added to memory
    and ``status`` becomes ``completed``. If the provider fails after at
    least one token, iteration raises :class:`StreamInterrupted` and the
    partial ``answer`` is kept; a failure before any token raises the
    provider's ``UpstreamError`` once retries are exhausted.
    """

    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def __init__(
        self,
        llm,
        question: str,
        messages: List[Dict[str, str]],
        results: List[RetrievalResult],
        memory: ConversationMemory,
        rag_config: RagConfig,
    ):
        self._llm = llm
        self._memory = memory
        self._config = rag_config
        self.question = question
        self.messages = messages
        self.results = results
        self.answer = ""
        self.status = self.PENDING
        self.error: Optional[BaseException] = None

    @property
    def source_chunks(self) -> List[Chunk]:
        return [result.chunk for result in self.results]

    def __aiter__(self) -> AsyncIterator[str]:
        return self.tokens()

    async def tokens(self) -> AsyncIterator[str]:
        if self.status != self.PENDING:
            raise RuntimeError("An answer stream can only be consumed once")
        self.status = self.STREAMING

        attempt = 0
        while True:
            stream = self._llm.stream_chat(self.messages, temperature=self._config.temperature)
            try:
                async with aclosing(stream):
                    async for token in stream:
                        self.answer += token
                        yield token
                break
            except UpstreamError as e:
                self.error = e
                if self.answer:
                    self.status = self.INTERRUPTED
                    logger.error(
                        "answer_stream_interrupted",
                        partial_length=len(self.answer),
                        error=str(e),
                    )
                    raise StreamInterrupted(self.answer, f"Answer stream interrupted: {e}") from e
                if not is_retryable(e) or attempt >= self._config.max_retries:
                    self.status = self.FAILED
                    logger.error("answer_stream_failed", attempts=attempt + 1, error=str(e))
                    raise
                delay = backoff_delay(attempt, self._config.retry_base_delay, self._config.retry_max_delay)
                logger.warning("answer_stream_retry", attempt=attempt + 1, delay=delay, error=str(e))
                await asyncio.sleep(delay)
                attempt += 1
            except (asyncio.CancelledError, GeneratorExit):
                self.status = self.CANCELLED
                raise

        self.status = self.COMPLETED
        self._memory.add(self.question, self.answer)
        logger.info(
            "answer_completed",
            answer_length=len(self.answer),
            sources=len(self.results),
        )

    async def collect(self) -> str:
        """Consume the whole stream and return the answer text."""
        async for _ in self:
            pass
        return self.answer


class ConversationalRetriever:
    """Answers questions from notes with conversational context."""

    def __init__(
        self,
        llm,
        embedding_client: EmbeddingClient,
        vector_index: VectorIndex,
        rag_config: Optional[RagConfig] = None,
    ):
        """Initialize the retriever.

        Args:
            llm: Chat backend with async ``chat`` and ``stream_chat`` methods
            embedding_client: Client used to embed questions
            vector_index: Index holding the note collection
            rag_config: Pipeline configuration (defaults from config)
        """
        self.llm = llm
        self.embedding_client = embedding_client
        self.vector_index = vector_index
        self.config = rag_config or RagConfig()

        logger.info(
            "retriever_initialized",
            collection=self.config.collection_name,
            top_k=self.config.top_k,
        )

    async def _retry(self, operation, op_name: str):
        return await call_with_retry(
            operation,
            attempts=self.config.max_retries,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
            op_name=op_name,
        )

    async def condense_question(self, question: str, memory: ConversationMemory) -> str:
        """Rewrite a follow-up question so it stands on its own.

        Returns the question unchanged when there is no history.
        """
        if not len(memory):
            return question

        prompt = CONDENSE_PROMPT.format(history=memory.transcript(), question=question)
        standalone = await self._retry(
            lambda: self.llm.chat([{"role": "user", "content": prompt}], temperature=0),
            "condense_question",
        )
        standalone = standalone.strip()

        logger.info(
            "question_condensed",
            original_length=len(question),
            standalone_length=len(standalone),
        )
        return standalone or question

    async def retrieve(self, query: str, top_k: Optional[int] = None) -> List[RetrievalResult]:
        """Retrieve the chunks most similar to ``query``.

        An empty list means nothing relevant was indexed; failures raise.

        Raises:
            UpstreamError: If the query cannot be embedded
            IndexUnavailableError: If the index cannot be searched
            DimensionMismatchError: If embedding and index configuration drifted
        """
        top_k = top_k or self.config.top_k
        query_vector = await self.embedding_client.embed_query(query)
        hits = await self._retry(
            lambda: self.vector_index.search(self.config.collection_name, query_vector, top_k),
            "vector_search",
        )
        results = [RetrievalResult(chunk=record.chunk, score=score) for record, score in hits]

        logger.info(
            "retrieval_completed",
            query_length=len(query),
            results_returned=len(results),
            top_score=results[0].score if results else None,
        )
        return results

    async def ask(self, question: str, memory: ConversationMemory) -> AnswerStream:
        """Prepare an answer for ``question``.

        Reformulation, embedding and search happen here, so their failures
        raise before any token is produced. The returned stream performs
        the generation.
        """
        question = question.strip()
        if not question:
            raise ValueError("Question cannot be empty")

        standalone = await self.condense_question(question, memory)
        results = await self.retrieve(standalone)
        messages = compose_prompt(question, memory, results)

        return AnswerStream(
            self.llm,
            question=question,
            messages=messages,
            results=results,
            memory=memory,
            rag_config=self.config,
        )

"""Chat session: ordered message history fed by streamed answers."""
import asyncio
import copy
import inspect
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Tuple, Union

import structlog

from notechat.errors import NoteChatError, SessionClosedError, StreamInterrupted
from notechat.memory.manager import ConversationMemory
from notechat.rag.chunker import Chunk
from notechat.rag.retriever import ConversationalRetriever

logger = structlog.get_logger()


@dataclass
class Message:
    """One chat message.

    ``source_chunks`` is only filled on an assistant message once its
    answer completed. ``status`` is ``complete`` for user messages and for
    finished answers; ``pending``, ``interrupted``, ``failed`` or
    ``cancelled`` otherwise.
    """

    role: str
    content: str = ""
    source_chunks: Tuple[Chunk, ...] = ()
    status: str = "complete"
    error: Optional[str] = None

    @property
    def incomplete(self) -> bool:
        return self.status in ("interrupted", "failed", "cancelled")


History = Tuple[Message, ...]
Renderer = Callable[[History], Union[None, Awaitable[None]]]


class ChatSession:
    """One conversation with the notes.

    Messages sent while an answer is in flight are queued and answered in
    submission order. The renderer receives a snapshot of the history
    after every token and once when an answer completes or fails.
    """

    def __init__(
        self,
        retriever: ConversationalRetriever,
        renderer: Optional[Renderer] = None,
        memory: Optional[ConversationMemory] = None,
    ):
        self.retriever = retriever
        self.renderer = renderer
        self.memory = memory if memory is not None else ConversationMemory(
            retriever.config.memory_window
        )
        self._messages: list = []
        self._lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def history(self) -> History:
        """Read-only snapshot of all messages, oldest first."""
        return tuple(copy.copy(m) for m in self._messages)

    async def _render(self, renderer: Optional[Renderer] = None) -> None:
        if self._closed:
            return
        for target in (self.renderer, renderer):
            if target is None:
                continue
            result = target(self.history())
            if inspect.isawaitable(result):
                await result

    async def send(self, user_text: str, renderer: Optional[Renderer] = None) -> Message:
        """Submit user input and stream the answer into a new assistant message.

        Args:
            user_text: The question as typed
            renderer: Receives the renders of this answer only, after the
                session renderer

        Returns:
            A snapshot of the finished assistant message

        Raises:
            SessionClosedError: If the session was closed
            StreamInterrupted: If the answer was cut off after some tokens
            NoteChatError: If retrieval or generation failed before any token
        """
        if self._closed:
            raise SessionClosedError("Chat session is closed")
        text = user_text.strip()
        if not text:
            raise ValueError("Message cannot be empty")

        self._messages.append(Message(role="user", content=text))
        placeholder = Message(role="assistant", status="pending")
        self._messages.append(placeholder)

        async with self._lock:
            if self._closed:
                placeholder.status = "cancelled"
                raise SessionClosedError("Chat session closed before the message was answered")

            self._inflight = asyncio.ensure_future(self._answer(text, placeholder, renderer))
            try:
                await self._inflight
            except asyncio.CancelledError:
                if not (self._closed and self._inflight.cancelled()):
                    raise
                placeholder.status = "cancelled"
                logger.info("chat_answer_cancelled", partial_length=len(placeholder.content))
            finally:
                self._inflight = None

        return copy.copy(placeholder)

    async def _fail(self, placeholder: Message, error: Exception, renderer: Optional[Renderer]) -> None:
        placeholder.status = "failed"
        placeholder.error = str(error) or type(error).__name__
        if isinstance(error, NoteChatError):
            logger.error("chat_answer_failed", error=str(error), error_type=type(error).__name__)
        else:
            logger.exception("chat_answer_unexpected_error", error_type=type(error).__name__)
        await self._render(renderer)

    async def _answer(self, question: str, placeholder: Message, renderer: Optional[Renderer]) -> None:
        try:
            stream = await self.retriever.ask(question, self.memory)
        except Exception as e:
            await self._fail(placeholder, e, renderer)
            raise

        try:
            async with aclosing(stream.tokens()) as tokens:
                async for token in tokens:
                    placeholder.content += token
                    await self._render(renderer)
        except StreamInterrupted as e:
            placeholder.status = "interrupted"
            placeholder.error = str(e)
            await self._render(renderer)
            raise
        except Exception as e:
            await self._fail(placeholder, e, renderer)
            raise

        placeholder.source_chunks = tuple(stream.source_chunks)
        placeholder.status = "complete"
        await self._render(renderer)

    async def close(self) -> None:
        """End the session: stop rendering, cancel the in-flight answer, forget memory."""
        if self._closed:
            return
        self._closed = True
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            inflight.cancel()
            if inflight is asyncio.current_task():
                # Closed from inside the renderer; the cancel lands at its next await
                self.memory.clear()
                return
            try:
                await inflight
            except asyncio.CancelledError:
                pass
            except NoteChatError as e:
                logger.debug("inflight_error_after_close", error=str(e))
        self.memory.clear()
        logger.info("chat_session_closed", messages=len(self._messages))

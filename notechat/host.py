"""Boundary between the chat core and whatever UI hosts it.

The core only ever calls ``render(history)``; user input reaches the core
through :meth:`ChatSession.send`.
"""
import asyncio
from typing import Any, Dict, List, Optional, Protocol, Sequence
from urllib.parse import urlencode

from notechat import config
from notechat.chat.session import Message
from notechat.rag.chunker import Chunk


class HostSurface(Protocol):
    """What a UI must provide to display a chat session."""

    def render(self, history: Sequence[Message]) -> Any:
        """Redraw from the full history; may be called once per token."""


def document_link(name: str, vault: Optional[str] = None) -> str:
    """Navigation target that opens the named note in the vault."""
    query = urlencode({"vault": vault or config.VAULT_NAME, "file": name})
    return f"obsidian://open?{query}"


def source_to_dict(chunk: Chunk, vault: Optional[str] = None) -> Dict[str, Any]:
    return {
        "name": chunk.source_document_name,
        "document_id": chunk.source_document_id,
        "ordinal": chunk.ordinal,
        "preview": chunk.text[:200] + "..." if len(chunk.text) > 200 else chunk.text,
        "link": document_link(chunk.source_document_name, vault),
    }


def message_to_dict(message: Message, vault: Optional[str] = None) -> Dict[str, Any]:
    data = {
        "role": message.role,
        "content": message.content,
        "status": message.status,
    }
    if message.role == "assistant":
        # The same note can back several chunks; link it once
        seen = set()
        sources = []
        for chunk in message.source_chunks:
            if chunk.source_document_id not in seen:
                seen.add(chunk.source_document_id)
                sources.append(source_to_dict(chunk, vault))
        data["sources"] = sources
    if message.error:
        data["error"] = message.error
    return data


def history_to_dict(history: Sequence[Message], vault: Optional[str] = None) -> List[Dict[str, Any]]:
    return [message_to_dict(m, vault) for m in history]


class SseChatView:
    """HostSurface for one server-sent-events response.

    Created per submitted message and passed to ``ChatSession.send``, so
    it only sees the renders of that message's answer. Each render
    replaces the whole view; consumers never accumulate tokens themselves.
    """

    def __init__(self, vault: Optional[str] = None):
        self.vault = vault
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def close(self) -> None:
        """Stop queueing; the response has ended."""
        self.closed = True

    def render(self, history: Sequence[Message]) -> None:
        if not self.closed:
            self.queue.put_nowait({"messages": history_to_dict(history, self.vault)})

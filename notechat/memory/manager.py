"""Conversation memory for multi-turn chat over notes.

Memory is scoped to one chat session: it grows with every completed
answer and is cleared when the session ends.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class Exchange:
    """One completed question/answer pair."""

    question: str
    answer: str


class ConversationMemory:
    """Ordered record of prior exchanges used as context for the next question."""

    def __init__(self, context_window_size: Optional[int] = None):
        """Initialize the memory.

        Args:
            context_window_size: Number of most recent exchanges included in
                prompts (all of them if None)
        """
        self.context_window_size = context_window_size
        self._exchanges: List[Exchange] = []

    def __len__(self) -> int:
        return len(self._exchanges)

    def add(self, question: str, answer: str) -> None:
        """Append a completed exchange."""
        self._exchanges.append(Exchange(question=question, answer=answer))
        logger.debug("memory_exchange_added", exchanges=len(self._exchanges))

    def clear(self) -> None:
        self._exchanges.clear()

    @property
    def exchanges(self) -> List[Exchange]:
        """All exchanges, oldest first (a copy)."""
        return list(self._exchanges)

    def recent(self) -> List[Exchange]:
        """Exchanges inside the context window, oldest first."""
        if self.context_window_size is None:
            return list(self._exchanges)
        return self._exchanges[-self.context_window_size:]

    def as_messages(self) -> List[Dict[str, str]]:
        """Format the windowed history as alternating user/assistant messages."""
        messages = []
        for exchange in self.recent():
            messages.append({"role": "user", "content": exchange.question})
            messages.append({"role": "assistant", "content": exchange.answer})
        return messages

    def transcript(self) -> str:
        """Format the windowed history as plain text, one turn per line."""
        lines = []
        for exchange in self.recent():
            lines.append(f"Human: {exchange.question}")
            lines.append(f"Assistant: {exchange.answer}")
        return "\n".join(lines)

"""Recursive text chunking with overlap for the RAG pipeline.

Character-based to avoid tokenizer dependencies. Text is cut at the most
natural boundary available (paragraph, line, sentence, word) and only
falls back to hard character cuts when a segment has no usable separator.
"""
from dataclasses import dataclass
from typing import List, Sequence

import structlog

from notechat import config
from notechat.rag.md_parser import Document

logger = structlog.get_logger()

DEFAULT_SEPARATORS = ("\n\n", "\n", ". ", "! ", "? ", " ", "")


@dataclass(frozen=True)
class Chunk:
    """A bounded slice of a document's text, the retrieval unit.

    ``overlap`` is the number of leading characters duplicated from the
    end of the previous chunk; ``text[overlap:]`` is new content.
    """

    source_document_id: str
    source_document_name: str
    text: str
    ordinal: int
    char_start: int
    char_end: int
    overlap: int = 0


class RecursiveTextChunker:
    """Splits text on a priority list of separators, then adds overlap."""

    def __init__(
        self,
        chunk_size: int = None,
        chunk_overlap: int = None,
        separators: Sequence[str] = DEFAULT_SEPARATORS,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Maximum chunk length in characters (default from config)
            chunk_overlap: Characters repeated from the previous chunk (default from config)
            separators: Boundaries to try, most natural first

        Raises:
            ValueError: If sizes are not usable
        """
        self.chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size
        self.chunk_overlap = config.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap
        self.separators = tuple(separators)

        if self.chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {self.chunk_size}")
        if self.chunk_overlap < 0 or self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"Overlap ({self.chunk_overlap}) must be in [0, chunk size "
                f"({self.chunk_size}))"
            )

    @property
    def piece_budget(self) -> int:
        """Room for new content in a chunk once the overlap is prepended."""
        return self.chunk_size - self.chunk_overlap

    def chunk(self, doc: Document) -> List[Chunk]:
        """Split a document into ordered, overlapping chunks."""
        text = doc.raw_text
        if not text:
            return []

        chunks: List[Chunk] = []
        start = 0
        for ordinal, piece in enumerate(self.split_text(text)):
            overlap = 0
            if chunks:
                overlap = min(self.chunk_overlap, len(chunks[-1].text))
            end = start + len(piece)
            chunks.append(
                Chunk(
                    source_document_id=doc.id,
                    source_document_name=doc.name,
                    text=text[start - overlap:end],
                    ordinal=ordinal,
                    char_start=start - overlap,
                    char_end=end,
                    overlap=overlap,
                )
            )
            start = end

        logger.debug(
            "text_chunked",
            document=doc.id,
            text_length=len(text),
            chunk_count=len(chunks),
        )
        return chunks

    def split_text(self, text: str) -> List[str]:
        """Split text into non-overlapping pieces that concatenate back to ``text``.

        Every piece is at most ``piece_budget`` characters long.
        """
        if not text:
            return []
        return self._split(text, self.separators)

    def _split(self, text: str, separators: Sequence[str]) -> List[str]:
        budget = self.piece_budget
        if len(text) <= budget:
            return [text]

        for index, separator in enumerate(separators):
            if separator == "":
                break
            if separator not in text:
                continue

            # Keep each separator attached to the segment it ends
            parts = text.split(separator)
            segments = [part + separator for part in parts[:-1]]
            if parts[-1]:
                segments.append(parts[-1])

            return self._merge(segments, separators[index + 1:])

        return [text[i:i + budget] for i in range(0, len(text), budget)]

    def _merge(self, segments: List[str], finer: Sequence[str]) -> List[str]:
        """Greedily pack segments into pieces, recursing into oversized ones."""
        budget = self.piece_budget
        pieces: List[str] = []
        current = ""

        for segment in segments:
            if len(segment) > budget:
                if current:
                    pieces.append(current)
                sub_pieces = self._split(segment, finer)
                pieces.extend(sub_pieces[:-1])
                current = sub_pieces[-1]
            elif len(current) + len(segment) <= budget:
                current += segment
            else:
                pieces.append(current)
                current = segment

        if current:
            pieces.append(current)
        return pieces


def chunk_document(doc: Document, max_size: int, overlap: int) -> List[Chunk]:
    """Chunk one document with the given size and overlap (convenience function)."""
    return RecursiveTextChunker(chunk_size=max_size, chunk_overlap=overlap).chunk(doc)

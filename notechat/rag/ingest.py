"""Reindex pipeline for notes.

Orchestrates:
- File discovery and markdown reading
- Text chunking
- Embedding generation
- Building and publishing a fresh vector collection
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from notechat.config import RagConfig
from notechat.errors import DimensionMismatchError, IndexUnavailableError, PartialIndexFailure, UpstreamError
from notechat.rag.chunker import RecursiveTextChunker
from notechat.rag.embeddings import EmbeddingClient
from notechat.rag.md_parser import Document, MarkdownParser
from notechat.rag.store_faiss import IndexRecord, VectorIndex

logger = structlog.get_logger()

ProgressCallback = Callable[[int, int, Document], None]


@dataclass
class IndexStats:
    """Outcome of a reindex, counted per document."""

    processed: int = 0
    skipped: int = 0
    failed: int = 0
    chunks_indexed: int = 0
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.processed + self.skipped + self.failed

    def record_failure(self, doc_id: str, error: BaseException) -> None:
        self.failed += 1
        self.failures[doc_id] = f"{type(error).__name__}: {error}"

    def raise_for_failures(self) -> None:
        """Raise PartialIndexFailure if any document failed."""
        if self.failed:
            raise PartialIndexFailure(self)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "chunks_indexed": self.chunks_indexed,
            "failures": dict(self.failures),
        }


def discover_markdown_files(notes_dir: Path) -> List[Path]:
    """Find all markdown files under ``notes_dir``, in sorted order.

    Raises:
        FileNotFoundError: If notes directory doesn't exist
    """
    if not notes_dir.exists():
        raise FileNotFoundError(f"Notes directory not found: {notes_dir}")

    md_files = sorted(notes_dir.rglob("*.md"))
    logger.info("markdown_files_discovered", count=len(md_files), notes_dir=str(notes_dir))
    return md_files


class Indexer:
    """Chunks, embeds and stores a corpus; owns the reindex lifecycle."""

    def __init__(
        self,
        vector_index: VectorIndex,
        embedding_client: EmbeddingClient,
        rag_config: Optional[RagConfig] = None,
        parser: Optional[MarkdownParser] = None,
    ):
        self.vector_index = vector_index
        self.embedding_client = embedding_client
        self.config = rag_config or RagConfig()
        self.parser = parser or MarkdownParser()

    async def reindex(
        self,
        documents: Sequence[Document],
        rag_config: Optional[RagConfig] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> IndexStats:
        """Rebuild the collection from ``documents``.

        The new collection is built off to the side and swapped in at the
        end, so readers see the old collection until then. A document whose
        chunks fail to embed or store counts as ``failed``; processing goes
        on with the next one.

        Args:
            documents: Documents to index, in order
            rag_config: Overrides the indexer's configuration for this run
            progress_callback: Optional callback(current, total, document)

        Returns:
            IndexStats with processed/skipped/failed counts

        Raises:
            UpstreamError: If the embedding dimension cannot be detected
                (the existing collection is left untouched)
            IndexUnavailableError: If the new collection cannot be published
        """
        cfg = rag_config or self.config
        chunker = RecursiveTextChunker(chunk_size=cfg.chunk_size, chunk_overlap=cfg.chunk_overlap)
        stats = IndexStats()

        selected = list(documents)
        if cfg.max_documents is not None and len(selected) > cfg.max_documents:
            stats.skipped += len(selected) - cfg.max_documents
            selected = selected[:cfg.max_documents]

        async with self.vector_index.reindex_lock:
            logger.info(
                "reindex_started",
                collection=cfg.collection_name,
                documents=len(selected),
                limit_skipped=stats.skipped,
            )
            dimension = await self.embedding_client.detect_dimension()
            staging = self.vector_index.new_collection(cfg.collection_name, dimension)

            for idx, doc in enumerate(selected, 1):
                if progress_callback:
                    progress_callback(idx, len(selected), doc)

                chunks = chunker.chunk(doc)
                if not chunks:
                    logger.info("document_skipped_empty", document=doc.id)
                    stats.skipped += 1
                    continue

                try:
                    embedded = await self.embedding_client.embed_chunks(chunks)
                    records = [IndexRecord.create(e.chunk, e.vector) for e in embedded]
                    staging.upsert(records)
                except (UpstreamError, IndexUnavailableError, DimensionMismatchError) as e:
                    logger.error(
                        "document_index_failed",
                        document=doc.id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    stats.record_failure(doc.id, e)
                    continue

                stats.processed += 1
                stats.chunks_indexed += len(records)
                logger.debug("document_indexed", document=doc.id, chunks=len(records))

            await self.vector_index.publish(staging)

        logger.info("reindex_completed", **stats.as_dict())
        return stats

    def load_documents(self, notes_dir: Path, stats: IndexStats) -> List[Document]:
        """Read every markdown note; unreadable files are counted as failed."""
        documents = []
        for path in discover_markdown_files(notes_dir):
            try:
                documents.append(self.parser.parse_file(path, root=notes_dir))
            except (OSError, UnicodeDecodeError) as e:
                logger.error("document_read_failed", path=str(path), error=str(e))
                stats.record_failure(path.relative_to(notes_dir).as_posix(), e)
        return documents

    async def reindex_notes(
        self,
        notes_dir: Path,
        rag_config: Optional[RagConfig] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> IndexStats:
        """Read the notes directory and reindex it (the "reindex" command)."""
        read_stats = IndexStats()
        documents = self.load_documents(notes_dir, read_stats)
        stats = await self.reindex(documents, rag_config=rag_config, progress_callback=progress_callback)
        stats.failed += read_stats.failed
        stats.failures.update(read_stats.failures)
        return stats

"""FAISS vector index for semantic search over note chunks.

Handles:
- Named collections with a fixed embedding dimension
- Cosine similarity search (inner product over L2-normalized vectors)
- Record upsert/delete keyed by opaque record ids
- Atomic collection replacement for reindexing
- Persistence of published collections (index file + records JSON)
"""
import asyncio
import json
import os
import re
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import faiss
import numpy as np
import structlog

from notechat.errors import (
    CollectionNotFoundError,
    DimensionMismatchError,
    IndexUnavailableError,
)
from notechat.rag.chunker import Chunk

logger = structlog.get_logger()


@dataclass(frozen=True)
class IndexRecord:
    """Persisted form of an embedded chunk inside a collection."""

    record_id: str
    chunk: Chunk
    vector: List[float]

    @classmethod
    def create(cls, chunk: Chunk, vector: List[float]) -> "IndexRecord":
        return cls(record_id=uuid.uuid4().hex, chunk=chunk, vector=list(vector))


class Collection:
    """One named set of records sharing an embedding dimension.

    Every record gets an insertion sequence number used both as its FAISS
    id and as the tie-breaker for equal similarity scores.
    """

    def __init__(self, name: str, dimension: int):
        if dimension <= 0:
            raise ValueError(f"Dimension must be positive, got {dimension}")
        self.name = name
        self.dimension = dimension
        self.index = faiss.IndexIDMap2(faiss.IndexFlatIP(dimension))
        self.records: Dict[int, IndexRecord] = {}
        self._seq_by_id: Dict[str, int] = {}
        self._next_seq = 0

    def __len__(self) -> int:
        return len(self.records)

    def _as_matrix(self, vectors: Sequence[Sequence[float]]) -> np.ndarray:
        for vector in vectors:
            if len(vector) != self.dimension:
                raise DimensionMismatchError(self.dimension, len(vector))
        matrix = np.ascontiguousarray(np.array(vectors, dtype=np.float32))
        faiss.normalize_L2(matrix)
        return matrix

    def upsert(self, records: Sequence[IndexRecord]) -> None:
        """Insert or replace records. All vectors are validated before any write.

        A replaced record keeps its original insertion position.

        Raises:
            DimensionMismatchError: If any vector has the wrong length
        """
        if not records:
            return
        matrix = self._as_matrix([r.vector for r in records])

        replaced = [self._seq_by_id[r.record_id] for r in records if r.record_id in self._seq_by_id]
        if replaced:
            self.index.remove_ids(np.array(replaced, dtype=np.int64))

        seqs = []
        for record in records:
            seq = self._seq_by_id.get(record.record_id)
            if seq is None:
                seq = self._next_seq
                self._next_seq += 1
                self._seq_by_id[record.record_id] = seq
            self.records[seq] = record
            seqs.append(seq)

        self.index.add_with_ids(matrix, np.array(seqs, dtype=np.int64))

    def delete(self, record_ids: Iterable[str]) -> int:
        """Remove records by id; unknown ids are ignored. Returns the number removed."""
        seqs = [self._seq_by_id.pop(rid) for rid in record_ids if rid in self._seq_by_id]
        if not seqs:
            return 0
        self.index.remove_ids(np.array(seqs, dtype=np.int64))
        for seq in seqs:
            del self.records[seq]
        return len(seqs)

    def search(self, query_vector: Sequence[float], k: int) -> List[Tuple[IndexRecord, float]]:
        """Return up to ``k`` records by descending cosine similarity.

        Equal scores are ordered by insertion (earliest first).

        Raises:
            DimensionMismatchError: If the query has the wrong length
        """
        query = self._as_matrix([query_vector])
        total = self.index.ntotal
        if k <= 0 or total == 0:
            return []

        # Score everything so ties at the k-th position resolve by insertion order
        scores, ids = self.index.search(query, total)
        hits = [
            (int(seq), float(score))
            for seq, score in zip(ids[0].tolist(), scores[0].tolist())
            if seq != -1
        ]
        hits.sort(key=lambda hit: (-hit[1], hit[0]))

        return [(self.records[seq], score) for seq, score in hits[:k]]

    def to_json(self, embedding_model: Optional[str] = None) -> Dict[str, Any]:
        return {
            "name": self.name,
            "dimension": self.dimension,
            "embedding_model": embedding_model,
            "next_seq": self._next_seq,
            "records": [
                {"seq": seq, "record_id": r.record_id, "chunk": asdict(r.chunk)}
                for seq, r in sorted(self.records.items())
            ],
        }

    @classmethod
    def from_files(cls, index: faiss.Index, metadata: Dict[str, Any]) -> "Collection":
        collection = cls(metadata["name"], metadata["dimension"])
        collection.index = index
        collection._next_seq = metadata["next_seq"]
        for item in metadata["records"]:
            seq = item["seq"]
            # Vectors come back L2-normalized, as stored
            vector = index.reconstruct(seq).tolist()
            record = IndexRecord(
                record_id=item["record_id"],
                chunk=Chunk(**item["chunk"]),
                vector=vector,
            )
            collection.records[seq] = record
            collection._seq_by_id[record.record_id] = seq
        return collection


class VectorIndex:
    """Collection-oriented FAISS store.

    Readers resolve a collection name to a ``Collection`` object once per
    call, so a concurrent :meth:`publish` never leaves them with nothing:
    they see either the old or the new collection.
    """

    def __init__(self, index_dir: Optional[Path] = None, embedding_model: Optional[str] = None):
        """Initialize the vector index.

        Args:
            index_dir: Directory to persist collections in (in-memory only if None)
            embedding_model: Model name recorded alongside persisted collections
        """
        self.index_dir = index_dir
        self.embedding_model = embedding_model
        self._collections: Dict[str, Collection] = {}
        # Held for the whole of a reindex; reindexes run one at a time
        self.reindex_lock = asyncio.Lock()

        logger.info(
            "vector_index_initialized",
            index_dir=str(index_dir) if index_dir else None,
            embedding_model=embedding_model,
        )

    def _paths(self, name: str) -> Tuple[Path, Path]:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", name)
        return self.index_dir / f"{safe}.index", self.index_dir / f"{safe}.json"

    def _save(self, collection: Collection) -> None:
        if self.index_dir is None:
            return
        index_path, meta_path = self._paths(collection.name)
        try:
            self.index_dir.mkdir(parents=True, exist_ok=True)
            tmp_index = index_path.with_suffix(".index.tmp")
            tmp_meta = meta_path.with_suffix(".json.tmp")
            faiss.write_index(collection.index, str(tmp_index))
            with open(tmp_meta, "w", encoding="utf-8") as f:
                json.dump(collection.to_json(self.embedding_model), f)
            os.replace(tmp_index, index_path)
            os.replace(tmp_meta, meta_path)
        except (OSError, RuntimeError) as e:
            logger.error("collection_save_failed", collection=collection.name, error=str(e))
            raise IndexUnavailableError(f"Failed to save collection {collection.name}: {e}") from e

        logger.info("collection_saved", collection=collection.name, vector_count=len(collection))

    def _load(self, name: str) -> Optional[Collection]:
        if self.index_dir is None:
            return None
        index_path, meta_path = self._paths(name)
        if not (index_path.exists() and meta_path.exists()):
            return None
        try:
            with open(meta_path, "r", encoding="utf-8") as f:
                metadata = json.load(f)
            index = faiss.read_index(str(index_path))
            collection = Collection.from_files(index, metadata)
        except (OSError, RuntimeError, ValueError, KeyError, TypeError) as e:
            logger.error("collection_load_failed", collection=name, error=str(e))
            raise IndexUnavailableError(f"Failed to load collection {name}: {e}") from e

        logger.info(
            "collection_loaded",
            collection=name,
            dimension=collection.dimension,
            vector_count=len(collection),
        )
        return collection

    def _get(self, name: str) -> Collection:
        collection = self._collections.get(name)
        if collection is None:
            collection = self._load(name)
            if collection is None:
                raise CollectionNotFoundError(name)
            self._collections.setdefault(name, collection)
        return collection

    async def ensure_collection(self, name: str, dimension: int) -> bool:
        """Make sure the collection exists.

        Returns:
            True if it already existed, False if it was just created

        Raises:
            DimensionMismatchError: If it exists with another dimension
        """
        try:
            collection = self._get(name)
        except CollectionNotFoundError:
            collection = Collection(name, dimension)
            self._save(collection)
            self._collections[name] = collection
            logger.info("collection_created", collection=name, dimension=dimension)
            return False

        if collection.dimension != dimension:
            raise DimensionMismatchError(collection.dimension, dimension)
        return True

    async def drop_collection(self, name: str) -> bool:
        """Delete a collection from memory and disk. Returns whether it existed."""
        existed = self._collections.pop(name, None) is not None
        if self.index_dir is not None:
            for path in self._paths(name):
                if path.exists():
                    path.unlink()
                    existed = True
        if existed:
            logger.warning("collection_dropped", collection=name)
        return existed

    def new_collection(self, name: str, dimension: int) -> Collection:
        """Create a detached collection, invisible to readers until published."""
        return Collection(name, dimension)

    async def publish(self, collection: Collection) -> None:
        """Replace the live collection of the same name in one step.

        The new collection is persisted first; if that fails the old one
        stays live.
        """
        self._save(collection)
        self._collections[collection.name] = collection
        logger.info(
            "collection_published",
            collection=collection.name,
            vector_count=len(collection),
        )

    async def upsert(self, name: str, records: Sequence[IndexRecord]) -> None:
        """Insert or replace records in a live collection."""
        collection = self._get(name)
        collection.upsert(records)
        self._save(collection)
        logger.debug("records_upserted", collection=name, count=len(records))

    async def delete(self, name: str, record_ids: Iterable[str]) -> int:
        """Delete records from a live collection. Returns the number removed."""
        collection = self._get(name)
        removed = collection.delete(record_ids)
        if removed:
            self._save(collection)
        return removed

    async def search(
        self, name: str, query_vector: Sequence[float], k: int
    ) -> List[Tuple[IndexRecord, float]]:
        """Nearest-neighbour search, most similar first.

        Raises:
            CollectionNotFoundError: If the collection was never built
            IndexUnavailableError: If the persisted collection cannot be read
            DimensionMismatchError: If the query length disagrees with the collection
        """
        collection = self._get(name)
        results = collection.search(query_vector, k)
        logger.info(
            "vector_search_completed",
            collection=name,
            top_k=k,
            results_found=len(results),
        )
        return results

    async def count(self, name: str) -> int:
        return len(self._get(name))

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the loaded collections."""
        return {
            "index_dir": str(self.index_dir) if self.index_dir else None,
            "collections": {
                name: {"dimension": c.dimension, "vector_count": len(c)}
                for name, c in self._collections.items()
            },
        }

"""Vector index gateway: pairs chunks with vectors and talks to the vector store."""

import logging
from typing import Any, Dict, List, Optional

from primer.core.errors import IndexWriteFailure
from primer.core.faiss_index import VectorStore
from primer.core.models import (
    ChunkMetadata,
    ContentChunk,
    EmbeddingVector,
    IndexedRecord,
    IndexStats,
    QueryMatch,
    UpsertResult,
)

logger = logging.getLogger(__name__)


class VectorIndexGateway:
    """Upsert chunk vectors with flattened metadata and run top-k queries."""

    def __init__(self, store: VectorStore, upsert_batch_size: int = 100):
        self.store = store
        self.upsert_batch_size = upsert_batch_size

    def build_records(
        self,
        chunks: List[ContentChunk],
        vectors: List[EmbeddingVector],
        title: Optional[str] = None,
        has_math_content: bool = False,
    ) -> List[IndexedRecord]:
        """
        Pair chunks and vectors by position.

        Raises:
            ValueError: counts differ or a vector belongs to a different chunk
        """
        if len(chunks) != len(vectors):
            raise ValueError(
                f"Got {len(chunks)} chunks but {len(vectors)} vectors; they must pair 1:1"
            )

        records = []
        for chunk, vector in zip(chunks, vectors):
            if chunk.id != vector.chunk_id:
                raise ValueError(f"Vector for {vector.chunk_id} paired with chunk {chunk.id}")
            records.append(IndexedRecord(
                id=chunk.id,
                values=vector.values,
                metadata=ChunkMetadata.from_chunk(chunk, title, has_math_content),
            ))
        return records

    def upsert(
        self,
        chunks: List[ContentChunk],
        vectors: List[EmbeddingVector],
        title: Optional[str] = None,
        has_math_content: bool = False,
    ) -> UpsertResult:
        """
        Write chunk vectors to the store in batches.

        Args:
            chunks: Chunks, in the same order as vectors
            vectors: One vector per chunk
            title: Document title stored in every record
            has_math_content: Document-level math flag stored in every record

        Returns:
            UpsertResult with the number of records written

        Raises:
            IndexWriteFailure: the store rejected a batch; carries the count already written
        """
        records = self.build_records(chunks, vectors, title, has_math_content)
        written = 0

        for start in range(0, len(records), self.upsert_batch_size):
            batch = records[start:start + self.upsert_batch_size]
            try:
                self.store.upsert(batch)
            except IndexWriteFailure as e:
                raise IndexWriteFailure(str(e), success_count=written) from e
            except Exception as e:
                raise IndexWriteFailure(
                    f"Vector store rejected upsert: {e}", success_count=written
                ) from e
            written += len(batch)
            logger.debug(f"Upserted batch of {len(batch)} vectors ({written}/{len(records)})")

        logger.info(f"Upserted {written} vectors")
        return UpsertResult(success_count=written)

    def query(
        self,
        vector: List[float],
        top_k: int = 10,
        metadata_filter: Optional[Dict[str, Any]] = None,
    ) -> List[QueryMatch]:
        """Top-k cosine matches, optionally narrowed by exact metadata matches."""
        if top_k < 1:
            raise ValueError("top_k must be at least 1")
        return self.store.query(vector, top_k, metadata_filter)

    def document_ids(self, document_id: str) -> List[str]:
        return self.store.ids_matching({"document_id": document_id})

    def delete(self, ids: List[str]) -> int:
        if not ids:
            return 0
        return self.store.delete(ids)

    def delete_document(self, document_id: str) -> int:
        """Remove every record of a document."""
        removed = self.store.delete(self.document_ids(document_id))
        logger.info(f"Deleted {removed} vectors of {document_id}")
        return removed

    def stats(self) -> IndexStats:
        return self.store.stats()

    def clear(self) -> None:
        """Delete everything in the store."""
        self.store.clear()

    def persist(self) -> None:
        self.store.persist()

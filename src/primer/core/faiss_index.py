"""Vector store boundary and its FAISS implementation with on-disk persistence."""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional

import faiss
import numpy as np

from primer.core.errors import IndexWriteFailure, PrimerError
from primer.core.models import IndexedRecord, IndexStats, QueryMatch

logger = logging.getLogger(__name__)

INDEX_FILE = "faiss.index"
METADATA_FILE = "metadata.json"
BYTES_PER_COMPONENT = 4  # float32


def matches_filter(metadata: Dict[str, Any], metadata_filter: Optional[Dict[str, Any]]) -> bool:
    """Exact-match filter; list-valued metadata matches when it contains the value."""
    if not metadata_filter:
        return True
    for key, expected in metadata_filter.items():
        actual = metadata.get(key)
        if isinstance(actual, list) and not isinstance(expected, list):
            if expected not in actual:
                return False
        elif actual != expected:
            return False
    return True


class VectorStore(ABC):
    """Storage for vectors keyed by chunk id, with cosine top-k search."""

    @abstractmethod
    def upsert(self, records: List[IndexedRecord]) -> int:
        """Insert or replace records; returns the number written."""

    @abstractmethod
    def query(
        self,
        vector: List[float],
        top_k: int,
        metadata_filter: Optional[Dict[str, Any]] = None,
    ) -> List[QueryMatch]:
        """Best matches by cosine similarity, ties in insertion order."""

    @abstractmethod
    def delete(self, ids: List[str]) -> int:
        """Remove records by id; returns the number removed."""

    @abstractmethod
    def ids_matching(self, metadata_filter: Dict[str, Any]) -> List[str]:
        """Ids of all records whose metadata matches the filter."""

    @abstractmethod
    def stats(self) -> IndexStats:
        ...

    @abstractmethod
    def clear(self) -> None:
        """Remove every record."""

    def persist(self) -> None:
        """Flush to durable storage, if the store has any."""


class FaissStoreError(PrimerError):
    """The FAISS index or its metadata could not be read or written."""


class FaissVectorStore(VectorStore):
    """
    Exact cosine search over L2-normalized vectors in a FAISS IndexFlatIP.

    String chunk ids are mapped onto FAISS int64 ids through IndexIDMap2.
    Every public method takes the instance lock.
    """

    def __init__(self, dimensions: int, index_path: Optional[Path] = None):
        self.dimensions = dimensions
        self.index_path = Path(index_path) if index_path else None
        self._lock = RLock()
        self._reset()

    def _reset(self) -> None:
        self._index = faiss.IndexIDMap2(faiss.IndexFlatIP(self.dimensions))
        self._int_ids: Dict[str, int] = {}
        # FAISS id -> {"id", "seq", "metadata"}
        self._records: Dict[int, Dict[str, Any]] = {}
        self._next_id = 0
        self._next_seq = 0

    def _prepare(self, values: List[List[float]]) -> np.ndarray:
        vectors = np.ascontiguousarray(np.asarray(values, dtype="float32"))
        faiss.normalize_L2(vectors)
        return vectors

    def upsert(self, records: List[IndexedRecord]) -> int:
        if not records:
            return 0

        # Last write wins for ids repeated within one call
        records = list({r.id: r for r in records}.values())

        for record in records:
            if len(record.values) != self.dimensions:
                raise IndexWriteFailure(
                    f"Vector for {record.id} has {len(record.values)} dimensions, "
                    f"index expects {self.dimensions}",
                    success_count=0,
                )

        with self._lock:
            # Maps are committed only once FAISS has accepted the vectors
            next_id, next_seq = self._next_id, self._next_seq
            replaced, ids, entries = [], [], {}
            for record in records:
                existing = self._int_ids.get(record.id)
                if existing is not None:
                    # Replaced records keep their original insertion order for tie-breaking
                    seq = self._records[existing]["seq"]
                    replaced.append(existing)
                else:
                    seq = next_seq
                    next_seq += 1
                ids.append(next_id)
                entries[next_id] = {
                    "id": record.id,
                    "seq": seq,
                    "metadata": record.metadata.flat(),
                }
                next_id += 1

            try:
                self._index.add_with_ids(
                    self._prepare([r.values for r in records]),
                    np.asarray(ids, dtype="int64"),
                )
            except Exception as exc:
                raise IndexWriteFailure(
                    f"Failed to add vectors to FAISS: {type(exc).__name__}: {exc}"
                ) from exc

            if replaced:
                self._index.remove_ids(np.asarray(replaced, dtype="int64"))
                for faiss_id in replaced:
                    del self._records[faiss_id]
            self._records.update(entries)
            for faiss_id, entry in entries.items():
                self._int_ids[entry["id"]] = faiss_id
            self._next_id, self._next_seq = next_id, next_seq

            logger.debug(f"Upserted {len(records)} vectors ({len(replaced)} replaced)")
            return len(records)

    def query(
        self,
        vector: List[float],
        top_k: int,
        metadata_filter: Optional[Dict[str, Any]] = None,
    ) -> List[QueryMatch]:
        if top_k < 1:
            raise ValueError("top_k must be at least 1")
        if len(vector) != self.dimensions:
            raise ValueError(
                f"Query vector has {len(vector)} dimensions, index expects {self.dimensions}"
            )

        with self._lock:
            total = self._index.ntotal
            if total == 0:
                return []

            # Flat index, so searching everything is exact and lets the filter
            # and the insertion-order tie-break see every candidate
            scores, faiss_ids = self._index.search(self._prepare([vector]), total)

            candidates = []
            for score, faiss_id in zip(scores[0], faiss_ids[0]):
                record = self._records.get(int(faiss_id))
                if record is None or not matches_filter(record["metadata"], metadata_filter):
                    continue
                candidates.append((float(np.clip(score, -1.0, 1.0)), record))

            candidates.sort(key=lambda item: (-item[0], item[1]["seq"]))
            return [
                QueryMatch(id=record["id"], score=score, metadata=dict(record["metadata"]))
                for score, record in candidates[:top_k]
            ]

    def delete(self, ids: List[str]) -> int:
        with self._lock:
            faiss_ids = [self._int_ids.pop(i) for i in ids if i in self._int_ids]
            if not faiss_ids:
                return 0
            self._index.remove_ids(np.asarray(faiss_ids, dtype="int64"))
            for faiss_id in faiss_ids:
                self._records.pop(faiss_id, None)
            return len(faiss_ids)

    def ids_matching(self, metadata_filter: Dict[str, Any]) -> List[str]:
        with self._lock:
            ordered = sorted(self._records.values(), key=lambda r: r["seq"])
            return [r["id"] for r in ordered if matches_filter(r["metadata"], metadata_filter)]

    def stats(self) -> IndexStats:
        with self._lock:
            count = self._index.ntotal
            return IndexStats(
                vector_count=count,
                dimensions=self.dimensions,
                total_size=count * self.dimensions * BYTES_PER_COMPONENT,
            )

    def clear(self) -> None:
        with self._lock:
            count = self._index.ntotal
            self._reset()
            logger.warning(f"Cleared vector index ({count} vectors removed)")
            self.persist()

    def persist(self) -> None:
        """Write the index and id/metadata maps under index_path."""
        if self.index_path is None:
            return

        with self._lock:
            self.index_path.mkdir(parents=True, exist_ok=True)
            try:
                faiss.write_index(self._index, str(self.index_path / INDEX_FILE))
            except Exception as exc:
                raise FaissStoreError(f"Failed to write FAISS index: {exc}") from exc

            meta = {
                "dimensions": self.dimensions,
                "next_id": self._next_id,
                "next_seq": self._next_seq,
                "records": {str(k): v for k, v in self._records.items()},
            }
            with open(self.index_path / METADATA_FILE, "w", encoding="utf-8") as f:
                json.dump(meta, f)

            logger.info(f"Saved FAISS index with {self._index.ntotal} vectors to {self.index_path}")

    def load(self) -> bool:
        """Load a previously persisted index; False when there is nothing to load."""
        if self.index_path is None:
            return False

        index_file = self.index_path / INDEX_FILE
        metadata_file = self.index_path / METADATA_FILE
        if not index_file.exists() or not metadata_file.exists():
            logger.info("No existing FAISS index found")
            return False

        with self._lock:
            try:
                index = faiss.read_index(str(index_file))
                with open(metadata_file, "r", encoding="utf-8") as f:
                    meta = json.load(f)
            except Exception as exc:
                raise FaissStoreError(f"Failed to load FAISS index: {exc}") from exc

            if meta.get("dimensions") != self.dimensions:
                raise FaissStoreError(
                    f"Stored index has {meta.get('dimensions')} dimensions, "
                    f"configured embeddings have {self.dimensions}; run 'primer clear' first"
                )

            self._index = index
            self._records = {int(k): v for k, v in meta.get("records", {}).items()}
            self._int_ids = {v["id"]: k for k, v in self._records.items()}
            self._next_id = int(meta.get("next_id", 0))
            self._next_seq = int(meta.get("next_seq", 0))

            logger.info(f"Loaded FAISS index with {self._index.ntotal} vectors")
            return True

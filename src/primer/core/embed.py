"""Embedding generation: batching, bounded concurrency, per-chunk retry and validation."""

import time
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Tuple, Union

import numpy as np
import openai
from tenacity import Retrying, stop_after_attempt, wait_exponential

from primer.core.config import PipelineConfig
from primer.core.errors import ConfigurationError, EmbeddingFailure, EmbeddingValidationError
from primer.core.models import (
    ContentChunk,
    EmbeddingBatchResult,
    EmbeddingFailureRecord,
    EmbeddingStats,
    EmbeddingVector,
)

logger = logging.getLogger(__name__)

# Rough token estimate used for statistics and truncation
CHARS_PER_TOKEN = 4


class EmbeddingProvider(ABC):
    """Anything that turns a batch of texts into vectors."""

    @abstractmethod
    def create_embeddings(self, model: str, texts: List[str], dimensions: int) -> List[List[float]]:
        """Return one vector per input text, in input order."""


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embeddings from the OpenAI API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        max_tokens: int = 8191,
        client: Optional[openai.OpenAI] = None,
    ):
        if client is None:
            if not api_key:
                raise ConfigurationError("OpenAI API key not found (set OPENAI_API_KEY)")
            client = openai.OpenAI(api_key=api_key)
        self.client = client
        self.max_tokens = max_tokens

    def create_embeddings(self, model: str, texts: List[str], dimensions: int) -> List[List[float]]:
        limit = self.max_tokens * CHARS_PER_TOKEN
        truncated_texts = []
        for text in texts:
            if len(text) > limit:
                logger.warning(f"Truncated text from {len(text)} to {limit} characters")
                text = text[:limit]
            truncated_texts.append(text)

        kwargs = {"model": model, "input": truncated_texts}
        # Only the v3 models accept a custom output size
        if model.startswith("text-embedding-3"):
            kwargs["dimensions"] = dimensions

        response = self.client.embeddings.create(**kwargs)
        return [item.embedding for item in response.data]


class EmbeddingGenerator:
    """Turn chunks into validated vectors through an EmbeddingProvider."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        config: Optional[PipelineConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.config = config or PipelineConfig()
        self._sleep = sleep

    @property
    def model(self) -> str:
        return self.config.embedding_model

    @property
    def dimensions(self) -> int:
        return self.config.embedding_dimensions

    def service_info(self) -> Dict[str, object]:
        return {
            "provider": type(self.provider).__name__,
            "model": self.model,
            "dimensions": self.dimensions,
            "batch_size": self.config.batch_size,
            "max_concurrent_requests": self.config.max_concurrent_requests,
            "max_retries": self.config.max_retries,
        }

    def validate_vector(self, chunk_id: str, values) -> EmbeddingVector:
        """
        Check a provider vector and wrap it.

        Raises:
            EmbeddingValidationError: wrong length or non-finite components
        """
        try:
            array = np.asarray(values, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise EmbeddingValidationError(f"Vector is not numeric: {e}", chunk_id) from e

        if array.ndim != 1 or array.shape[0] != self.dimensions:
            raise EmbeddingValidationError(
                f"Expected {self.dimensions} dimensions, got shape {array.shape}", chunk_id
            )
        if not np.isfinite(array).all():
            raise EmbeddingValidationError("Vector contains non-finite values", chunk_id)

        return EmbeddingVector(
            chunk_id=chunk_id,
            values=array.tolist(),
            model=self.model,
            dimensions=self.dimensions,
            generated_at_ms=int(time.time() * 1000),
        )

    def embed_one(self, item: Union[ContentChunk, str], chunk_id: Optional[str] = None) -> EmbeddingVector:
        """
        Embed a single chunk or query text, retrying with exponential backoff.

        Raises:
            EmbeddingFailure: once all attempts are used up
        """
        if isinstance(item, ContentChunk):
            return self._embed_with_retry(item.id, item.text)
        return self._embed_with_retry(chunk_id or "query", item)

    def _embed_with_retry(self, chunk_id: str, text: str) -> EmbeddingVector:
        retryer = Retrying(
            stop=stop_after_attempt(self.config.max_retries),
            wait=wait_exponential(multiplier=self.config.retry_delay, min=0, max=60),
            sleep=self._sleep,
            reraise=True,
        )
        attempts = 0
        try:
            for attempt in retryer:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    values = self.provider.create_embeddings(self.model, [text], self.dimensions)
                    if len(values) != 1:
                        raise EmbeddingValidationError(
                            f"Provider returned {len(values)} vectors for one input", chunk_id
                        )
                    return self.validate_vector(chunk_id, values[0])
        except EmbeddingFailure as e:
            e.chunk_id = chunk_id
            e.attempts = attempts
            raise
        except Exception as e:
            raise EmbeddingFailure(
                f"Embedding failed after {attempts} attempts: {e}", chunk_id, attempts
            ) from e

    def embed_many(
        self,
        chunks: List[ContentChunk],
        cancel: Optional[threading.Event] = None,
    ) -> EmbeddingBatchResult:
        """
        Embed chunks in batches under the configured concurrency limit.

        Per-chunk failures never raise; they are returned in ``failures``.

        Args:
            chunks: Chunks to embed
            cancel: When set, batches that have not started are recorded as failed

        Returns:
            EmbeddingBatchResult with vectors in chunk order, failures and stats
        """
        start_time = time.time()
        stats = EmbeddingStats(total_chunks=len(chunks))
        if not chunks:
            return EmbeddingBatchResult(stats=stats)

        size = self.config.batch_size
        batches = [chunks[i:i + size] for i in range(0, len(chunks), size)]
        stats.batches = len(batches)
        logger.info(
            f"Embedding {len(chunks)} chunks in {len(batches)} batches "
            f"(max {self.config.max_concurrent_requests} concurrent)"
        )

        outcomes: List[Tuple[List[EmbeddingVector], List[EmbeddingFailureRecord]]] = []
        with ThreadPoolExecutor(max_workers=self.config.max_concurrent_requests) as pool:
            futures = []
            for batch_num, batch in enumerate(batches):
                if batch_num > 0 and self.config.batch_delay > 0:
                    self._sleep(self.config.batch_delay)
                futures.append(pool.submit(self._process_batch, batch_num, batch, cancel))
            for future in futures:
                outcomes.append(future.result())

        vectors: List[EmbeddingVector] = []
        failures: List[EmbeddingFailureRecord] = []
        for batch_vectors, batch_failures in outcomes:
            vectors.extend(batch_vectors)
            failures.extend(batch_failures)

        stats.successful = len(vectors)
        stats.failed = len(failures)
        stats.estimated_tokens = sum(len(c.text) // CHARS_PER_TOKEN for c in chunks)
        stats.processing_time_ms = (time.time() - start_time) * 1000

        logger.info(
            f"Generated {stats.successful} embeddings ({stats.failed} failed) "
            f"in {stats.processing_time_ms:.0f}ms"
        )
        return EmbeddingBatchResult(vectors=vectors, failures=failures, stats=stats)

    def _process_batch(
        self,
        batch_num: int,
        batch: List[ContentChunk],
        cancel: Optional[threading.Event],
    ) -> Tuple[List[EmbeddingVector], List[EmbeddingFailureRecord]]:
        if cancel is not None and cancel.is_set():
            return [], [EmbeddingFailureRecord(chunk_id=c.id, error="cancelled") for c in batch]

        by_id: Dict[str, EmbeddingVector] = {}
        retry_chunks: List[ContentChunk] = []

        try:
            raw = self.provider.create_embeddings(
                self.model, [c.text for c in batch], self.dimensions
            )
            if len(raw) != len(batch):
                raise EmbeddingValidationError(
                    f"Provider returned {len(raw)} vectors for {len(batch)} inputs"
                )
        except Exception as e:
            logger.warning(
                f"Batch {batch_num + 1} failed ({e}), retrying its {len(batch)} chunks individually"
            )
            retry_chunks = list(batch)
        else:
            for chunk, values in zip(batch, raw):
                try:
                    by_id[chunk.id] = self.validate_vector(chunk.id, values)
                except EmbeddingValidationError as e:
                    logger.warning(f"Invalid vector for chunk {chunk.id}: {e}")
                    retry_chunks.append(chunk)

        failures: List[EmbeddingFailureRecord] = []
        for chunk in retry_chunks:
            if cancel is not None and cancel.is_set():
                failures.append(EmbeddingFailureRecord(chunk_id=chunk.id, error="cancelled"))
                continue
            try:
                by_id[chunk.id] = self._embed_with_retry(chunk.id, chunk.text)
            except EmbeddingFailure as e:
                logger.error(f"Giving up on chunk {chunk.id}: {e}")
                failures.append(EmbeddingFailureRecord(
                    chunk_id=chunk.id, error=str(e), attempts=e.attempts
                ))

        vectors = [by_id[c.id] for c in batch if c.id in by_id]
        return vectors, failures

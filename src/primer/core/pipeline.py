"""Per-document ingestion state machine, directory ingestion and query API."""

import time
import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from primer.core.chunker import ContentSegmenter
from primer.core.config import MODEL_DIMENSIONS, PipelineConfig
from primer.core.embed import EmbeddingGenerator, EmbeddingProvider, OpenAIEmbeddingProvider
from primer.core.errors import IndexWriteFailure, IngestionError, NoDocumentsProcessedError
from primer.core.faiss_index import FaissVectorStore, VectorStore
from primer.core.index import VectorIndexGateway
from primer.core.ingest import PdfTextExtractor, calculate_sha256, document_id_for, find_pdfs
from primer.core.local_embeddings import DEFAULT_LOCAL_MODEL, LocalEmbeddingProvider
from primer.core.logging_config import (
    get_audit_logger,
    log_embedding_stats,
    log_ingestion_event,
    log_ingestion_failure,
    log_query_event,
)
from primer.core.models import (
    BatchIngestSummary,
    DocumentOutline,
    IngestResult,
    PipelineStage,
    ProcessingProgress,
    ProgressStage,
    QueryMatch,
)
from primer.core.normalize import TextNormalizer
from primer.core.structure import StructureDetector

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ProcessingProgress], None]

# Progress reported when each stage starts
STAGE_PROGRESS = {
    PipelineStage.EXTRACTING: (ProgressStage.EXTRACTING, 0.0, "Extracting text"),
    PipelineStage.NORMALIZING: (ProgressStage.EXTRACTING, 10.0, "Normalizing text"),
    PipelineStage.DETECTING_STRUCTURE: (ProgressStage.EXTRACTING, 20.0, "Detecting structure"),
    PipelineStage.CHUNKING: (ProgressStage.CHUNKING, 30.0, "Chunking content"),
    PipelineStage.EMBEDDING: (ProgressStage.EMBEDDING, 50.0, "Generating embeddings"),
    PipelineStage.INDEXING: (ProgressStage.INDEXING, 80.0, "Indexing vectors"),
    PipelineStage.COMPLETE: (ProgressStage.COMPLETE, 100.0, "Complete"),
}


class RagPipeline:
    """
    Sequence extraction, normalization, structure detection, chunking,
    embedding and indexing for each document, and answer queries.

    Components are built from the injected config; the embedding provider
    and vector store are passed in so they can be swapped or faked.
    """

    def __init__(
        self,
        config: PipelineConfig,
        provider: EmbeddingProvider,
        store: VectorStore,
        extractor: Optional[PdfTextExtractor] = None,
        on_progress: Optional[ProgressListener] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        config.validate()
        self.config = config
        self.extractor = extractor or PdfTextExtractor()
        self.normalizer = TextNormalizer()
        self.detector = StructureDetector(min_chapter_confidence=config.min_chapter_confidence)
        self.segmenter = ContentSegmenter(config)
        self.embedder = EmbeddingGenerator(provider, config, sleep=sleep)
        self.index = VectorIndexGateway(store, upsert_batch_size=config.upsert_batch_size)
        self.on_progress = on_progress
        self.stage = PipelineStage.PENDING
        self.audit_logger = get_audit_logger("pipeline")

    def _enter(self, stage: PipelineStage, source: str) -> None:
        self.stage = stage
        progress_stage, percent, message = STAGE_PROGRESS[stage]
        logger.debug(f"{source}: {stage.value}")
        if self.on_progress:
            self.on_progress(ProcessingProgress(
                stage=progress_stage, percent=percent, message=message, document=source
            ))

    @contextmanager
    def _stage(self, stage: PipelineStage, source: str, partial: Dict[str, Any]):
        """Run a block as one pipeline stage; any error moves the document to FAILED."""
        self._enter(stage, source)
        try:
            yield
        except Exception as e:
            self.stage = PipelineStage.FAILED
            log_ingestion_failure(self.audit_logger, source, stage.value, str(e), dict(partial))
            raise IngestionError(stage.value, source, str(e), dict(partial)) from e

    def ingest(self, pdf_path: Union[str, Path], cancel: Optional[threading.Event] = None) -> IngestResult:
        """
        Ingest one PDF.

        Args:
            pdf_path: Path to the PDF file
            cancel: Optional cancellation flag checked between embedding batches

        Returns:
            IngestResult with chunks, embeddings and the indexed count

        Raises:
            IngestionError: the stage that failed, the document and partial counts
        """
        pdf_path = Path(pdf_path)
        source = str(pdf_path)
        start_time = time.time()

        with self._stage(PipelineStage.EXTRACTING, source, {}):
            extracted = self.extractor.extract_file(pdf_path)

        info = extracted.document_info
        return self._process(
            text=extracted.text,
            source=source,
            document_id=info.id,
            title=info.title,
            page_count=extracted.page_count,
            start_time=start_time,
            cancel=cancel,
        )

    def ingest_text(
        self,
        text: str,
        source: str,
        document_id: Optional[str] = None,
        title: Optional[str] = None,
        page_count: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
    ) -> IngestResult:
        """Ingest already-extracted text (e.g. from another extractor)."""
        return self._process(
            text=text,
            source=source,
            document_id=document_id or document_id_for(calculate_sha256(text.encode("utf-8"))),
            title=title,
            page_count=page_count,
            start_time=time.time(),
            cancel=cancel,
        )

    def _process(
        self,
        text: str,
        source: str,
        document_id: str,
        title: Optional[str],
        page_count: Optional[int],
        start_time: float,
        cancel: Optional[threading.Event],
    ) -> IngestResult:
        partial: Dict[str, Any] = {"document_id": document_id}

        with self._stage(PipelineStage.NORMALIZING, source, partial):
            normalized = self.normalizer.normalize(text)

        with self._stage(PipelineStage.DETECTING_STRUCTURE, source, partial):
            if self.config.detect_structure:
                outline = self.detector.detect(normalized.text, page_count=page_count)
            else:
                outline = DocumentOutline()
            partial["chapters"] = len(outline.chapters)
            partial["sections"] = len(outline.sections)

        with self._stage(PipelineStage.CHUNKING, source, partial):
            chunking = self.segmenter.chunk_document(
                normalized.text, outline, document_id=document_id, source=source
            )
            chunks = chunking.chunks
            partial["chunks"] = len(chunks)

        with self._stage(PipelineStage.EMBEDDING, source, partial):
            embedded = self.embedder.embed_many(chunks, cancel=cancel)
            partial["embeddings"] = len(embedded.vectors)
            partial["embedding_failures"] = len(embedded.failures)
            log_embedding_stats(self.audit_logger, document_id, embedded.stats.model_dump())

        with self._stage(PipelineStage.INDEXING, source, partial):
            new_ids = {c.id for c in chunks}
            stale = [i for i in self.index.document_ids(document_id) if i not in new_ids]
            removed = self.index.delete(stale)

            vector_by_id = {v.chunk_id: v for v in embedded.vectors}
            indexed_chunks = [c for c in chunks if c.id in vector_by_id]
            try:
                upserted = self.index.upsert(
                    indexed_chunks,
                    [vector_by_id[c.id] for c in indexed_chunks],
                    title=title,
                    has_math_content=normalized.has_math_content,
                )
            except IndexWriteFailure as e:
                partial["indexed"] = e.success_count
                raise
            partial["indexed"] = upserted.success_count
            self.index.persist()

        self._enter(PipelineStage.COMPLETE, source)

        result = IngestResult(
            document_id=document_id,
            source=source,
            title=title,
            outline=outline,
            chunks=chunks,
            embeddings=embedded.vectors,
            embedding_failures=embedded.failures,
            indexed_count=upserted.success_count,
            removed_stale=removed,
            has_math_content=normalized.has_math_content,
            fallback_used=chunking.fallback_used,
            processing_time_ms=(time.time() - start_time) * 1000,
        )

        if embedded.failures:
            logger.warning(
                f"{source}: {len(embedded.failures)} of {len(chunks)} chunks could not be embedded"
            )
        log_ingestion_event(
            self.audit_logger,
            source=source,
            document_id=document_id,
            pages=page_count or 0,
            chunks_created=len(chunks),
            vectors_indexed=result.indexed_count,
            embedding_failures=len(embedded.failures),
            fallback_used=chunking.fallback_used,
            processing_time_ms=result.processing_time_ms,
        )
        return result

    def ingest_directory(
        self,
        directory_path: Union[str, Path],
        cancel: Optional[threading.Event] = None,
        on_document: Optional[Callable[[Path, Optional[IngestResult], Optional[Exception]], None]] = None,
    ) -> BatchIngestSummary:
        """
        Ingest every PDF in a directory, continuing past failed documents.

        Args:
            directory_path: Directory containing PDF files
            cancel: Optional cancellation flag; remaining documents are skipped once set
            on_document: Called after each document with its result or error

        Returns:
            BatchIngestSummary

        Raises:
            NoDocumentsProcessedError: no PDFs found, or every document failed
        """
        start_time = time.time()
        pdf_files = find_pdfs(Path(directory_path))
        if not pdf_files:
            raise NoDocumentsProcessedError(f"No PDF files found in {directory_path}")

        logger.info(f"Found {len(pdf_files)} PDF files to ingest")
        summary = BatchIngestSummary()

        for pdf_path in pdf_files:
            if cancel is not None and cancel.is_set():
                summary.documents_failed += 1
                summary.errors[str(pdf_path)] = "cancelled"
                continue
            try:
                result = self.ingest(pdf_path, cancel=cancel)
            except IngestionError as e:
                logger.error(f"Failed to ingest {pdf_path}: {e}")
                summary.documents_failed += 1
                summary.errors[str(pdf_path)] = str(e)
                if on_document:
                    on_document(pdf_path, None, e)
                continue

            summary.documents_processed += 1
            summary.total_chunks += len(result.chunks)
            summary.total_embeddings += len(result.embeddings)
            summary.indexed_vectors += result.indexed_count
            if on_document:
                on_document(pdf_path, result, None)

        summary.processing_time_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Completed ingestion: {summary.documents_processed}/{len(pdf_files)} files processed"
        )

        if summary.documents_processed == 0:
            raise NoDocumentsProcessedError(
                f"None of the {len(pdf_files)} PDF files could be processed", summary.errors
            )
        return summary

    def outline(self, pdf_path: Union[str, Path]) -> DocumentOutline:
        """Extract and detect structure without chunking or indexing."""
        extracted = self.extractor.extract_file(Path(pdf_path))
        normalized = self.normalizer.normalize(extracted.text)
        return self.detector.detect(normalized.text, page_count=extracted.page_count)

    def query(
        self,
        text: str,
        top_k: int = 10,
        metadata_filter: Optional[Dict[str, Any]] = None,
    ) -> List[QueryMatch]:
        """
        Embed a query and return the best matching chunks.

        Raises:
            ValueError: empty query or top_k < 1
            EmbeddingFailure: the query could not be embedded
        """
        if not text or not text.strip():
            raise ValueError("Query text must not be empty")
        if top_k < 1:
            raise ValueError("top_k must be at least 1")

        start_time = time.time()
        vector = self.embedder.embed_one(text.strip())
        matches = self.index.query(vector.values, top_k, metadata_filter)

        log_query_event(
            self.audit_logger,
            query=text,
            top_k=top_k,
            results_count=len(matches),
            execution_time_ms=(time.time() - start_time) * 1000,
            filters_applied=metadata_filter,
        )
        return matches

    def stats(self) -> Dict[str, Any]:
        return {
            "index": self.index.stats().model_dump(),
            "embedding": self.embedder.service_info(),
            "chunking": {
                "chunk_size": self.config.chunk_size,
                "chunk_overlap": self.config.chunk_overlap,
                "min_chunk_size": self.config.min_chunk_size,
                "detect_structure": self.config.detect_structure,
                "heading_match": self.config.heading_match,
            },
        }

    def delete_document(self, document_id: str) -> int:
        removed = self.index.delete_document(document_id)
        self.index.persist()
        return removed

    def clear(self) -> None:
        """Remove every indexed vector. Never called by ingestion."""
        self.index.clear()


def build_provider(config: PipelineConfig) -> Tuple[EmbeddingProvider, PipelineConfig]:
    """Create the configured embedding provider; local models dictate the dimensions."""
    if config.embedding_provider == "local":
        model_name = config.embedding_model
        if model_name in MODEL_DIMENSIONS:
            model_name = DEFAULT_LOCAL_MODEL
        provider = LocalEmbeddingProvider(model_name)
        return provider, replace(
            config, embedding_model=model_name, embedding_dimensions=provider.dimension
        )

    provider = OpenAIEmbeddingProvider(
        api_key=config.openai_api_key, max_tokens=config.max_input_tokens
    )
    return provider, config


def build_pipeline(
    config: PipelineConfig,
    on_progress: Optional[ProgressListener] = None,
    load_index: bool = True,
) -> RagPipeline:
    """Wire the default provider and a persistent FAISS store for a config.

    With load_index off the saved index is left unread, so a store whose
    dimensions no longer match the embeddings can still be cleared.
    """
    provider, config = build_provider(config)
    store = FaissVectorStore(config.embedding_dimensions, index_path=config.index_path)
    if load_index:
        store.load()
    return RagPipeline(config, provider, store, on_progress=on_progress)

"""Error taxonomy for the ingestion and retrieval pipeline."""

from typing import Any, Dict, Optional


class PrimerError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(PrimerError):
    """Configuration values are missing or inconsistent."""


class ExtractionError(PrimerError):
    """The PDF could not be read or contained no extractable text."""


class StructureDetectionWarning(UserWarning):
    """No chapters or sections were found; chunking falls back to fixed windows."""


class EmbeddingFailure(PrimerError):
    """A chunk could not be embedded after all retries."""

    def __init__(self, message: str, chunk_id: Optional[str] = None, attempts: int = 0):
        super().__init__(message)
        self.chunk_id = chunk_id
        self.attempts = attempts


class EmbeddingValidationError(EmbeddingFailure):
    """The provider returned a vector with the wrong shape or non-finite values."""


class IndexWriteFailure(PrimerError):
    """The vector store rejected an upsert."""

    def __init__(self, message: str, success_count: int = 0):
        super().__init__(message)
        self.success_count = success_count


class IngestionError(PrimerError):
    """A document failed at a pipeline stage.

    The underlying error is available as ``__cause__``.
    """

    def __init__(
        self,
        stage: str,
        document: str,
        message: str,
        partial: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(f"{document}: failed during {stage}: {message}")
        self.stage = stage
        self.document = document
        self.partial = partial or {}


class NoDocumentsProcessedError(PrimerError):
    """A batch ingestion run finished without processing a single document."""

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.errors = errors or {}

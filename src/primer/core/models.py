"""Records passed between pipeline stages."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Vector store metadata values are capped at this many characters of chunk text
METADATA_TEXT_LIMIT = 40000
METADATA_SCHEMA_VERSION = 1


class ChunkType(str, Enum):
    CHAPTER_MARKER = "chapter-marker"
    SECTION_MARKER = "section-marker"
    CONTENT = "content"
    DEFINITION = "definition"
    EXAMPLE = "example"
    EXERCISE = "exercise"

    @property
    def is_marker(self) -> bool:
        return self in (ChunkType.CHAPTER_MARKER, ChunkType.SECTION_MARKER)


class PipelineStage(str, Enum):
    """Per-document state machine; FAILED is absorbing."""
    PENDING = "pending"
    EXTRACTING = "extracting"
    NORMALIZING = "normalizing"
    DETECTING_STRUCTURE = "detecting_structure"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    INDEXING = "indexing"
    COMPLETE = "complete"
    FAILED = "failed"


class ProgressStage(str, Enum):
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    INDEXING = "indexing"
    COMPLETE = "complete"


class DocumentInfo(BaseModel):
    """Document metadata read from the PDF."""
    id: str
    source: str
    title: Optional[str] = None
    author: Optional[str] = None
    subject: Optional[str] = None
    creator: Optional[str] = None
    producer: Optional[str] = None
    sha256: str
    pages: int
    file_size: int = 0


@dataclass
class ExtractedDocument:
    text: str
    page_count: int
    document_info: Optional[DocumentInfo] = None


@dataclass
class NormalizedText:
    text: str
    has_math_content: bool = False
    original_length: int = 0
    processed_length: int = 0


@dataclass
class ChapterOutlineEntry:
    """A detected chapter heading, ordered by position in the text."""
    title: str
    number: str
    start_line: int
    start_page: int
    confidence: float
    heading: str = ""
    end_page: Optional[int] = None


@dataclass
class SectionOutlineEntry:
    """A detected section heading attached to the chapter open at detection time."""
    title: str
    number: str
    chapter_title: str
    level: int
    confidence: float
    start_line: int = 0
    heading: str = ""


@dataclass
class DocumentOutline:
    chapters: List[ChapterOutlineEntry] = field(default_factory=list)
    sections: List[SectionOutlineEntry] = field(default_factory=list)
    quality_score: float = 0.0
    warnings: List[str] = field(default_factory=list)

    @property
    def has_structure(self) -> bool:
        return bool(self.chapters)


class ContentChunk(BaseModel):
    """A bounded unit of document text plus its structural position."""
    id: str
    text: str
    type: ChunkType = ChunkType.CONTENT
    chapter_title: Optional[str] = None
    section_title: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    chunk_index: int = 0
    total_chunks: int = 0
    document_id: str = ""
    source: str = ""

    @field_validator("text")
    @classmethod
    def _text_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("chunk text must not be empty")
        return value


class ChunkMetadata(BaseModel):
    """Flattened metadata stored alongside each vector.

    Closed record: unknown keys are rejected so that every stored value has a
    declared type.
    """
    model_config = ConfigDict(extra="forbid")

    schema_version: int = METADATA_SCHEMA_VERSION
    document_id: str
    source: str
    chunk_id: str
    chunk_index: int
    total_chunks: int
    chunk_type: str
    text: str
    title: Optional[str] = None
    chapter: Optional[str] = None
    section: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    has_math_content: bool = False

    @field_validator("text")
    @classmethod
    def _truncate_text(cls, value: str) -> str:
        return value[:METADATA_TEXT_LIMIT]

    @classmethod
    def from_chunk(
        cls,
        chunk: ContentChunk,
        title: Optional[str] = None,
        has_math_content: bool = False,
    ) -> "ChunkMetadata":
        return cls(
            document_id=chunk.document_id,
            source=chunk.source,
            chunk_id=chunk.id,
            chunk_index=chunk.chunk_index,
            total_chunks=chunk.total_chunks,
            chunk_type=chunk.type.value,
            text=chunk.text,
            title=title,
            chapter=chunk.chapter_title,
            section=chunk.section_title,
            keywords=list(chunk.keywords),
            has_math_content=has_math_content,
        )

    def flat(self) -> Dict[str, Any]:
        """Metadata without unset optional values, as stored in the index."""
        return self.model_dump(exclude_none=True)


class EmbeddingVector(BaseModel):
    chunk_id: str
    values: List[float]
    model: str
    dimensions: int
    generated_at_ms: int


class EmbeddingFailureRecord(BaseModel):
    chunk_id: str
    error: str
    attempts: int = 0


class EmbeddingStats(BaseModel):
    total_chunks: int = 0
    successful: int = 0
    failed: int = 0
    batches: int = 0
    estimated_tokens: int = 0
    processing_time_ms: float = 0.0


class EmbeddingBatchResult(BaseModel):
    vectors: List[EmbeddingVector] = Field(default_factory=list)
    failures: List[EmbeddingFailureRecord] = Field(default_factory=list)
    stats: EmbeddingStats = Field(default_factory=EmbeddingStats)


class IndexedRecord(BaseModel):
    id: str
    values: List[float]
    metadata: ChunkMetadata


class QueryMatch(BaseModel):
    id: str
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class UpsertResult(BaseModel):
    success_count: int = 0
    failures: List[str] = Field(default_factory=list)


class IndexStats(BaseModel):
    vector_count: int = 0
    dimensions: int = 0
    total_size: int = 0  # bytes, float32 components


@dataclass
class ProcessingProgress:
    stage: ProgressStage
    percent: float
    message: str
    document: Optional[str] = None


class IngestResult(BaseModel):
    """Outcome of ingesting one document."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    document_id: str
    source: str
    title: Optional[str] = None
    outline: DocumentOutline
    chunks: List[ContentChunk] = Field(default_factory=list)
    embeddings: List[EmbeddingVector] = Field(default_factory=list)
    embedding_failures: List[EmbeddingFailureRecord] = Field(default_factory=list)
    indexed_count: int = 0
    removed_stale: int = 0
    has_math_content: bool = False
    fallback_used: bool = False
    processing_time_ms: float = 0.0


class BatchIngestSummary(BaseModel):
    documents_processed: int = 0
    documents_failed: int = 0
    total_chunks: int = 0
    total_embeddings: int = 0
    indexed_vectors: int = 0
    errors: Dict[str, str] = Field(default_factory=dict)
    processing_time_ms: float = 0.0

    @property
    def fully_successful(self) -> bool:
        return self.documents_failed == 0 and self.documents_processed > 0

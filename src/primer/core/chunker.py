"""Split normalized text into chunks using the detected outline."""

import hashlib
import re
import time
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from primer.core.config import PipelineConfig
from primer.core.models import (
    ChapterOutlineEntry,
    ChunkType,
    ContentChunk,
    DocumentOutline,
    SectionOutlineEntry,
)

logger = logging.getLogger(__name__)

MAX_KEYWORDS = 10
# Break fixed-size windows at a space only if it keeps at least this share of the window
WORD_BREAK_RATIO = 0.7

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "is", "are", "was", "were", "be", "been", "being", "have",
    "has", "had", "do", "does", "did", "about", "above", "after", "again",
    "their", "there", "these", "those", "which", "while", "would", "could",
    "should", "other", "where", "because",
})

# Checked in order, first hit decides the type
CONTENT_TYPE_KEYWORDS = [
    (ChunkType.DEFINITION, ("definition", "define")),
    (ChunkType.EXAMPLE, ("example", "for instance")),
    (ChunkType.EXERCISE, ("exercise", "problem")),
]

PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")
CHAPTER_PREFIXES = r"(?:chapter|ch\.?|unit|part)"
SECTION_PREFIXES = r"(?:section|sec\.?)"


@dataclass
class ChunkingResult:
    chunks: List[ContentChunk]
    strategy: str
    fallback_used: bool
    average_chunk_size: float = 0.0
    processing_time_ms: float = 0.0
    warnings: List[str] = field(default_factory=list)


def classify_content(text: str) -> ChunkType:
    """Refine a content chunk's type by keyword sniffing."""
    lower = text.lower()
    for chunk_type, keywords in CONTENT_TYPE_KEYWORDS:
        if any(keyword in lower for keyword in keywords):
            return chunk_type
    return ChunkType.CONTENT


def extract_keywords(text: str, limit: int = MAX_KEYWORDS) -> List[str]:
    """Cheap keyword exposure for metadata filtering; not ranked."""
    keywords: List[str] = []
    seen = set()
    for word in text.lower().split():
        if len(word) <= 4 or word in STOP_WORDS or not re.fullmatch(r"[a-z]+", word):
            continue
        if word in seen:
            continue
        seen.add(word)
        keywords.append(word)
        if len(keywords) >= limit:
            break
    return keywords


def chunk_id(document_id: str, index: int, chunk_type: ChunkType, text: str) -> str:
    """Deterministic id from document, position, type and content."""
    digest = hashlib.sha256(
        f"{document_id}:{index}:{chunk_type.value}:{text}".encode("utf-8")
    ).hexdigest()[:16]
    return f"{document_id}_{digest}" if document_id else digest


def _number_pattern(number: str, prefixes: str) -> Optional[re.Pattern]:
    if not number or number == "0":
        return None
    escaped = re.escape(number)
    # Dotted section numbers are specific enough to be followed by a plain space
    tail = r"(?:\s*[:\-]|\.(?!\d)|\s+|$)" if "." in number else r"(?:\s*[:\-]|\.(?!\d)|$)"
    return re.compile(
        rf"^(?:{prefixes}\s*{escaped}(?![\d.]\d|\d)|{escaped}{tail})",
        re.IGNORECASE,
    )


class HeadingMatcher:
    """Find the outline entry a paragraph's first line announces."""

    def __init__(self, outline: DocumentOutline, mode: str = "anchored"):
        self.outline = outline
        self.mode = mode
        self._chapter_patterns = [
            _number_pattern(c.number, CHAPTER_PREFIXES) for c in outline.chapters
        ]
        self._section_patterns = [
            _number_pattern(s.number, SECTION_PREFIXES) for s in outline.sections
        ]

    def chapter(self, line: str) -> Optional[ChapterOutlineEntry]:
        return self._find(line, self.outline.chapters, self._chapter_patterns)

    def section(self, line: str) -> Optional[SectionOutlineEntry]:
        return self._find(line, self.outline.sections, self._section_patterns)

    def _find(self, line, entries, patterns):
        if not line:
            return None
        if self.mode == "substring":
            for entry in entries:
                if (entry.title and entry.title in line) or (entry.number and entry.number in line):
                    return entry
            return None

        lower = line.lower()
        for entry in entries:
            if line == entry.heading or lower == entry.title.lower():
                return entry
        for entry, pattern in zip(entries, patterns):
            if pattern is not None and pattern.match(line):
                return entry
        return None


class ContentSegmenter:
    """Outline-driven segmentation with a fixed-size fallback."""

    def __init__(self, config: Optional[PipelineConfig] = None):
        self.config = config or PipelineConfig()

    def should_fall_back(self, outline: Optional[DocumentOutline]) -> bool:
        if not self.config.detect_structure or outline is None:
            return True
        if not outline.chapters:
            return True
        return outline.quality_score < self.config.structure_quality_threshold

    def chunk_document(
        self,
        text: str,
        outline: Optional[DocumentOutline],
        document_id: str = "",
        source: str = "",
    ) -> ChunkingResult:
        """
        Chunk a document and report which strategy was used.

        Args:
            text: Normalized document text
            outline: Outline from the structure detector (None skips detection)
            document_id: Owning document, part of every chunk id
            source: Source path recorded on every chunk

        Returns:
            ChunkingResult with the chunk list and statistics
        """
        start_time = time.time()
        fallback = self.should_fall_back(outline)

        if fallback:
            pieces = self._fixed_size_pieces(text)
            strategy = "fixed-size"
        else:
            pieces = self._structured_pieces(text, outline)
            strategy = "structure"

        chunks = self._build_chunks(pieces, document_id, source)

        result = ChunkingResult(
            chunks=chunks,
            strategy=strategy,
            fallback_used=fallback,
            average_chunk_size=(
                sum(len(c.text) for c in chunks) / len(chunks) if chunks else 0.0
            ),
            processing_time_ms=(time.time() - start_time) * 1000,
        )
        if fallback and text.strip():
            result.warnings.append("Structure too weak, used fixed-size chunking")
        logger.info(f"Created {len(chunks)} chunks using {strategy} strategy")
        return result

    def segment(
        self,
        text: str,
        outline: Optional[DocumentOutline],
        document_id: str = "",
        source: str = "",
    ) -> List[ContentChunk]:
        """Chunk a document; see ``chunk_document``."""
        return self.chunk_document(text, outline, document_id, source).chunks

    def _structured_pieces(self, text: str, outline: DocumentOutline) -> List[dict]:
        matcher = HeadingMatcher(outline, self.config.heading_match)
        pieces: List[dict] = []
        buffer: List[str] = []
        chapter: Optional[str] = None
        section: Optional[str] = None

        def flush():
            if buffer:
                content = "\n\n".join(buffer).strip()
                if content:
                    pieces.append({"text": content, "type": None,
                                   "chapter": chapter, "section": section})
                buffer.clear()

        def append(paragraph: str):
            if not self.config.preserve_formatting:
                paragraph = re.sub(r"\s*\n\s*", " ", paragraph)
            for part in self._split_oversized(paragraph):
                current = sum(len(p) for p in buffer) + 2 * len(buffer)
                if buffer and current + 2 + len(part) > self.config.chunk_size:
                    flush()
                buffer.append(part)

        for paragraph in PARAGRAPH_SPLIT.split(text):
            paragraph = paragraph.strip()
            if not paragraph:
                continue
            first_line, _, rest = paragraph.partition("\n")
            first_line = first_line.strip()

            chapter_entry = matcher.chapter(first_line)
            section_entry = None if chapter_entry else matcher.section(first_line)

            if chapter_entry:
                flush()
                chapter = chapter_entry.title
                section = None
                pieces.append({"text": first_line, "type": ChunkType.CHAPTER_MARKER,
                               "chapter": chapter, "section": None})
            elif section_entry:
                flush()
                section = section_entry.title
                pieces.append({"text": first_line, "type": ChunkType.SECTION_MARKER,
                               "chapter": chapter, "section": section})
            else:
                append(paragraph)
                continue

            if rest.strip():
                append(rest.strip())

        flush()
        return pieces

    def _split_oversized(self, paragraph: str) -> List[str]:
        size = self.config.chunk_size
        parts = []
        while len(paragraph) > size:
            cut = paragraph.rfind(" ", 0, size)
            if cut <= 0:
                cut = size
            parts.append(paragraph[:cut].strip())
            paragraph = paragraph[cut:].strip()
        if paragraph:
            parts.append(paragraph)
        return [p for p in parts if p]

    def _fixed_size_pieces(self, text: str) -> List[dict]:
        size = self.config.chunk_size
        overlap = self.config.chunk_overlap
        windows: List[str] = []

        start = 0
        while start < len(text):
            end = min(start + size, len(text))
            window = text[start:end]
            if end < len(text):
                last_space = max(window.rfind(" "), window.rfind("\n"))
                if last_space > size * WORD_BREAK_RATIO:
                    window = window[:last_space]
            windows.append(window)
            if start + len(window) >= len(text):
                break
            start += max(len(window) - overlap, 1)

        if len(windows) > 1 and len(windows[-1].strip()) < self.config.min_chunk_size:
            windows[-1] = self._tail_window(text)

        kept = [w.strip() for w in windows if len(w.strip()) >= self.config.min_chunk_size]
        if not kept:
            # Short documents still produce their text
            kept = [w.strip() for w in windows if w.strip()]

        if not self.config.preserve_formatting:
            kept = [re.sub(r"\s*\n\s*", " ", w) for w in kept]
        return [{"text": w, "type": None, "chapter": None, "section": None} for w in kept]

    def _tail_window(self, text: str) -> str:
        """Last `chunk_size` characters of the text, starting on a word."""
        start = max(len(text) - self.config.chunk_size, 0)
        window = text[start:]
        if start > 0:
            first_space = min(
                (i for i in (window.find(" "), window.find("\n")) if i >= 0),
                default=-1,
            )
            if 0 <= first_space < len(window) * (1 - WORD_BREAK_RATIO):
                window = window[first_space + 1:]
        return window

    def _build_chunks(self, pieces: List[dict], document_id: str, source: str) -> List[ContentChunk]:
        chunks: List[ContentChunk] = []
        for index, piece in enumerate(pieces):
            chunk_type = piece["type"] or classify_content(piece["text"])
            keywords = (
                extract_keywords(piece["text"])
                if self.config.extract_keywords and not chunk_type.is_marker
                else []
            )
            chunks.append(ContentChunk(
                id=chunk_id(document_id, index, chunk_type, piece["text"]),
                text=piece["text"],
                type=chunk_type,
                chapter_title=piece["chapter"],
                section_title=piece["section"],
                keywords=keywords,
                chunk_index=index,
                document_id=document_id,
                source=source,
            ))

        for chunk in chunks:
            chunk.total_chunks = len(chunks)
        return chunks

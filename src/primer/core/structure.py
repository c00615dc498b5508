"""Chapter/section outline detection for extracted textbook text.

Headings are recognised by an ordered list of ``HeadingRule`` records. Chapter
rules are always tried before section rules and the first matching rule wins,
so the rule order and confidence weights below define the detector.
"""

import math
import re
import logging
from dataclasses import dataclass
from re import Match, Pattern
from typing import Callable, List, Optional, Tuple

from primer.core.errors import StructureDetectionWarning
from primer.core.models import ChapterOutlineEntry, DocumentOutline, SectionOutlineEntry

logger = logging.getLogger(__name__)

MAX_HEADING_LINE_LENGTH = 150
MIN_SECTION_LENGTH = 3
MAX_SECTION_LENGTH = 100
MAX_CHAPTERS = 50
DEFAULT_LINES_PER_PAGE = 50

# (number, title, level)
Extracted = Tuple[str, str, int]


@dataclass(frozen=True)
class HeadingRule:
    kind: str  # "chapter" or "section"
    pattern: Pattern
    confidence: float
    extract: Callable[[Match], Extracted]
    description: str
    # Heuristic rules match on capitalisation alone and get extra title checks
    heuristic: bool = False


def _numbered(default_prefix: str) -> Callable[[Match], Extracted]:
    def extract(match: Match) -> Extracted:
        number = match.group(1)
        title = (match.group(2) or "").strip() or f"{default_prefix} {number}"
        return number, title, 1
    return extract


def _title_only(match: Match) -> Extracted:
    title = match.group(1).strip()
    number = re.search(r"\b(\d+)\b", title)
    return (number.group(1) if number else "0"), title, 1


def _dotted_section(match: Match) -> Extracted:
    number = f"{match.group(1)}.{match.group(2)}"
    title = (match.group(3) or "").strip() or f"Section {number}"
    return number, title, 1


def _subsection(match: Match) -> Extracted:
    number = f"{match.group(1)}.{match.group(2)}.{match.group(3)}"
    return number, match.group(4).strip(), 2


CHAPTER_RULES: List[HeadingRule] = [
    HeadingRule(
        "chapter",
        re.compile(r"^(?:Chapter|Ch\.?)\s*(\d+)(?:\s*[:.\-]\s*(.+))?$", re.IGNORECASE),
        0.95, _numbered("Chapter"), "Explicit 'Chapter N: Title'",
    ),
    HeadingRule(
        "chapter",
        # (?!\d) keeps "1.1 Basics" out of the chapter rules
        re.compile(r"^(\d+)\s*[:.\-]\s*(?!\d)(.+)$"),
        0.85, _numbered("Chapter"), "Bare 'N: Title'",
    ),
    HeadingRule(
        "chapter",
        re.compile(r"^Unit\s+(\d+)(?:\s*[:.\-]\s*(.+))?$", re.IGNORECASE),
        0.80, _numbered("Unit"), "Unit-based structure",
    ),
    HeadingRule(
        "chapter",
        re.compile(r"^Part\s+([IVX]+|\d+)(?:\s*[:.\-]\s*(.+))?$", re.IGNORECASE),
        0.80, _numbered("Part"), "Part-based structure",
    ),
    HeadingRule(
        "chapter",
        re.compile(r"^([A-Z][a-z]+(?:\s+[a-z]+)*\s+[Ll]evel\s+of\s+[Oo]rganization)$"),
        0.75, _title_only, "'... Level of Organization' headings",
        heuristic=True,
    ),
    HeadingRule(
        "chapter",
        re.compile(r"^(The(?:\s+[A-Z][a-z]+)+)$"),
        0.75, _title_only, "'The Title Case' headings",
        heuristic=True,
    ),
    HeadingRule(
        "chapter",
        re.compile(r"^([A-Z][a-z]+(?:\s+[A-Z][a-z]+){1,4})$"),
        0.70, _title_only, "Two to five capitalised words",
        heuristic=True,
    ),
]

SECTION_RULES: List[HeadingRule] = [
    HeadingRule(
        "section",
        re.compile(r"^(\d+)\.(\d+)(?!\d|\.\d)\s*[:.\-]?\s*(.+)$"),
        0.90, _dotted_section, "Numbered 'N.N Title'",
    ),
    HeadingRule(
        "section",
        re.compile(r"^Section\s+(\d+)\.(\d+)(?:\s*[:.\-]?\s*(.+))?$", re.IGNORECASE),
        0.85, _dotted_section, "Explicit 'Section N.N'",
    ),
    HeadingRule(
        "section",
        re.compile(r"^(\d+)\.(\d+)\.(\d+)\s*[:.\-]?\s*(.+)$"),
        0.80, _subsection, "Numbered subsection 'N.N.N Title'",
    ),
    HeadingRule(
        "section",
        re.compile(r"^([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*(?:\s+and\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)?)$"),
        0.70, _title_only, "Capitalised phrase",
        heuristic=True,
    ),
]

# Lines starting with these are front/back matter, never headings
METADATA_PREFIX = re.compile(
    r"^(?:AUTHORS?|PREFACE|INDEX|APPENDIX|APPENDICES|BIBLIOGRAPHY|GLOSSARY|COPYRIGHT)\b",
    re.IGNORECASE,
)

EXCLUDED_HEADINGS = frozenset({
    "contributing authors", "senior contributing authors", "acknowledgment",
    "acknowledgments", "acknowledgement", "acknowledgements", "foreword",
    "introduction", "table of contents", "contents", "references", "about the author",
    "about the authors", "about this book", "credits", "publisher",
    "revision history", "learning objectives", "answer key", "solutions",
    "end of chapter", "review questions", "practice exercises", "summary",
    "key terms", "study guide", "further reading", "chapter review", "exercises",
    "problems", "quiz", "test yourself", "self check", "checkpoint", "checkpoints",
    "resources", "additional resources", "web resources", "online resources",
    "suggested reading", "suggested readings", "recommended reading",
    "recommended readings", "notes", "chapter notes", "openstax", "rice university",
    "philanthropic support", "creative commons", "media", "part", "section", "unit",
    "module", "lesson",
})

FUNCTION_WORDS = frozenset({
    "a", "an", "the", "and", "or", "but", "of", "to", "in", "on", "at", "for",
    "with", "by", "from", "as", "is", "are", "was", "were", "be", "this", "that",
    "which", "it", "its",
})


def is_excluded_heading(line: str) -> bool:
    """True for front/back-matter labels that look like headings."""
    if METADATA_PREFIX.match(line):
        return True
    return re.sub(r"\s+", " ", line.strip().lower()) in EXCLUDED_HEADINGS


def _ends_with_function_word(title: str) -> bool:
    words = title.split()
    return len(words) > 1 and words[-1].lower() in FUNCTION_WORDS


def _looks_like_prose(line: str) -> bool:
    words = line.split()
    return len(words) > 8 and any(w.lower() in FUNCTION_WORDS for w in words)


class StructureDetector:
    """Build a chapter/section outline from normalized text."""

    def __init__(
        self,
        min_chapter_confidence: float = 0.7,
        chapter_rules: Optional[List[HeadingRule]] = None,
        section_rules: Optional[List[HeadingRule]] = None,
        max_chapters: int = MAX_CHAPTERS,
    ):
        self.min_chapter_confidence = min_chapter_confidence
        self.chapter_rules = [
            rule for rule in (chapter_rules if chapter_rules is not None else CHAPTER_RULES)
            if rule.confidence >= min_chapter_confidence
        ]
        self.section_rules = section_rules if section_rules is not None else SECTION_RULES
        self.max_chapters = max_chapters

    def match_chapter(self, line: str) -> Optional[Tuple[HeadingRule, Extracted]]:
        """Return the first chapter rule matching the line, with its extraction."""
        return self._first_match(self.chapter_rules, line)

    def match_section(self, line: str) -> Optional[Tuple[HeadingRule, Extracted]]:
        """Return the first section rule matching the line, with its extraction."""
        if not MIN_SECTION_LENGTH <= len(line) <= MAX_SECTION_LENGTH:
            return None
        if _looks_like_prose(line):
            return None
        return self._first_match(self.section_rules, line)

    def _first_match(
        self, rules: List[HeadingRule], line: str
    ) -> Optional[Tuple[HeadingRule, Extracted]]:
        for rule in rules:
            match = rule.pattern.match(line)
            if not match:
                continue
            number, title, level = rule.extract(match)
            if rule.heuristic and _ends_with_function_word(title):
                continue
            return rule, (number, title, level)
        return None

    def detect(self, text: str, page_count: Optional[int] = None) -> DocumentOutline:
        """
        Detect chapters and sections.

        Args:
            text: Normalized document text
            page_count: Real page count, used to estimate page numbers

        Returns:
            DocumentOutline; empty with a warning when nothing was found
        """
        lines = text.split("\n")
        if page_count:
            lines_per_page = max(1, math.ceil(len(lines) / page_count))
            last_page = page_count
        else:
            lines_per_page = DEFAULT_LINES_PER_PAGE
            last_page = (max(len(lines), 1) - 1) // lines_per_page + 1

        chapters: List[ChapterOutlineEntry] = []
        sections: List[SectionOutlineEntry] = []
        # Index into `chapters` of the chapter owning each section
        section_owner: List[int] = []
        confidences: List[float] = []
        orphans = 0

        for line_idx, raw_line in enumerate(lines):
            line = raw_line.strip()
            if not line or len(line) > MAX_HEADING_LINE_LENGTH:
                continue
            if is_excluded_heading(line):
                continue

            chapter_match = self.match_chapter(line)
            if chapter_match:
                rule, (number, title, _) = chapter_match
                chapters.append(ChapterOutlineEntry(
                    title=title,
                    number=number,
                    start_line=line_idx,
                    start_page=line_idx // lines_per_page + 1,
                    confidence=rule.confidence,
                    heading=line,
                ))
                confidences.append(rule.confidence)
                continue

            section_match = self.match_section(line)
            if section_match:
                if not chapters:
                    orphans += 1
                    continue
                rule, (number, title, level) = section_match
                sections.append(SectionOutlineEntry(
                    title=title,
                    number=number,
                    chapter_title=chapters[-1].title,
                    level=level,
                    confidence=rule.confidence,
                    start_line=line_idx,
                    heading=line,
                ))
                section_owner.append(len(chapters) - 1)
                confidences.append(rule.confidence)

        quality = sum(confidences) / len(confidences) if confidences else 0.0

        if len(chapters) > self.max_chapters:
            chapters, sections = self._cap_chapters(chapters, sections, section_owner)

        self._assign_end_pages(chapters, last_page)

        outline = DocumentOutline(chapters=chapters, sections=sections, quality_score=quality)
        if orphans:
            logger.debug(f"Dropped {orphans} section headings found before any chapter")
        if not chapters and not sections:
            message = "No chapters or sections detected; fixed-size chunking will be used"
            outline.warnings.append(message)
            logger.warning(f"{StructureDetectionWarning.__name__}: {message}")
        else:
            logger.info(
                f"Detected {len(chapters)} chapters and {len(sections)} sections "
                f"(quality {quality:.2f})"
            )
        return outline

    def _cap_chapters(
        self,
        chapters: List[ChapterOutlineEntry],
        sections: List[SectionOutlineEntry],
        section_owner: List[int],
    ) -> Tuple[List[ChapterOutlineEntry], List[SectionOutlineEntry]]:
        """Keep the most confident chapters, in document order, and their sections."""
        ranked = sorted(range(len(chapters)), key=lambda i: -chapters[i].confidence)
        kept = sorted(ranked[:self.max_chapters])
        kept_set = set(kept)
        logger.warning(
            f"Detected {len(chapters)} chapters, keeping the {self.max_chapters} most confident"
        )
        kept_sections = [
            section for section, owner in zip(sections, section_owner) if owner in kept_set
        ]
        return [chapters[i] for i in kept], kept_sections

    @staticmethod
    def _assign_end_pages(chapters: List[ChapterOutlineEntry], last_page: int) -> None:
        for current, following in zip(chapters, chapters[1:]):
            current.end_page = following.start_page - 1
        if chapters:
            chapters[-1].end_page = max(chapters[-1].start_page, last_page)

"""Clean up text extracted from PDFs before structure detection."""

import re
import logging
from re import Pattern
from typing import List, Tuple

from primer.core.models import NormalizedText

logger = logging.getLogger(__name__)

# Applied in order; each substitution sees the output of the previous one
SPACING_REPAIRS: List[Tuple[Pattern, str]] = [
    (re.compile(r"([a-z])([A-Z])"), r"\1 \2"),          # wordWord
    (re.compile(r"([a-zA-Z])(\d)"), r"\1 \2"),          # Chapter1
    (re.compile(r"(\d)([a-zA-Z])"), r"\1 \2"),          # 1Introduction
    (re.compile(r"([.!?])([A-Z])"), r"\1 \2"),          # end.Next
    (re.compile(r"\.([a-z])"), r". \1"),                # end.next
    (re.compile(r"([a-z])([A-Z][a-z])"), r"\1 \2"),     # cellBiology
]

URL_PATTERNS: List[Pattern] = [
    re.compile(r"https?://[^\s]+"),
    re.compile(r"www\.[^\s]+"),
    re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"),
]

PAGE_NUMBER_PATTERNS: List[Pattern] = [
    re.compile(r"^\s*\d+\s*$", re.MULTILINE),
    re.compile(r"^\s*Page\s+\d+\s*(?:of\s+\d+)?\s*$", re.MULTILINE | re.IGNORECASE),
]

MATH_PATTERNS: List[Pattern] = [
    re.compile(r"\$\$[^$]+\$\$"),                       # display LaTeX
    re.compile(r"\$[^$]+\$"),                           # inline LaTeX
    re.compile(r"[∫∑∏√≤≥≠±∓∞α-ω]"),
    re.compile(r"\b\d+\s*[+\-*/=]\s*\d+\b"),            # 2 + 2
    re.compile(r"\b(?:sin|cos|tan|log|ln|exp|lim|int|sum|prod)\b", re.IGNORECASE),
    re.compile(r"\b\d+\s*[xy]\s*[+\-]\s*\d+\b"),        # 3x + 1
]


def repair_spacing(text: str) -> str:
    """Insert the spaces PDF extraction tends to drop between words."""
    for pattern, replacement in SPACING_REPAIRS:
        text = pattern.sub(replacement, text)
    return text


def normalize_whitespace(text: str) -> str:
    """Collapse space runs, limit blank lines to paragraph breaks and trim lines."""
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n\s*\n", "\n\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return "\n".join(line.strip() for line in text.split("\n")).strip()


def remove_page_numbers(text: str) -> str:
    for pattern in PAGE_NUMBER_PATTERNS:
        text = pattern.sub("", text)
    return text


def remove_urls(text: str) -> str:
    for pattern in URL_PATTERNS:
        text = pattern.sub("", text)
    return text


def detect_math_content(text: str) -> bool:
    return any(pattern.search(text) for pattern in MATH_PATTERNS)


class TextNormalizer:
    """Spacing repair, whitespace cleanup, page-number and URL removal."""

    def __init__(
        self,
        repair: bool = True,
        strip_page_numbers: bool = True,
        strip_urls: bool = True,
        detect_math: bool = True,
    ):
        self.repair = repair
        self.strip_page_numbers = strip_page_numbers
        self.strip_urls = strip_urls
        self.detect_math = detect_math

    def normalize(self, raw_text: str) -> NormalizedText:
        """
        Normalize raw extracted text.

        Args:
            raw_text: Text as returned by the PDF extractor

        Returns:
            NormalizedText with the cleaned text and the math-content flag
        """
        text = raw_text or ""

        # URLs go first, the punctuation repair would otherwise split them
        if self.strip_urls:
            text = remove_urls(text)
        if self.repair:
            text = repair_spacing(text)

        text = normalize_whitespace(text)

        if self.strip_page_numbers:
            text = remove_page_numbers(text)
            # Removed lines leave extra blank lines behind
            text = normalize_whitespace(text)

        has_math = self.detect_math and detect_math_content(text)

        logger.debug(f"Normalized text from {len(raw_text or '')} to {len(text)} characters")

        return NormalizedText(
            text=text,
            has_math_content=has_math,
            original_length=len(raw_text or ""),
            processed_length=len(text),
        )


def normalize(raw_text: str) -> NormalizedText:
    """Normalize text with every cleanup pass enabled."""
    return TextNormalizer().normalize(raw_text)

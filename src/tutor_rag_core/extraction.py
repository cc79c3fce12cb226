from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field

from tutor_rag_core.util import word_count

WORDS_PER_PAGE = 500

_MATH_PATTERNS = [
    re.compile(r"[∫∑∏√±×÷≠≤≥∞∂∇∈∉⊂⊃∪∩]"),
    re.compile(r"\^\d+"),
    re.compile(r"_\{\d+\}"),
    re.compile(r"\([a-z]\s*[+\-*/]\s*[a-z]\)", re.IGNORECASE),
    re.compile(r"=\s*\d+"),
    re.compile(r"\d+\.?\d*\s*[×x]\s*10\^\d+", re.IGNORECASE),
    re.compile(r"[a-z]\s*=\s*[a-z]", re.IGNORECASE),
    re.compile(r"\b(sin|cos|tan|log|ln|exp)\s*\(", re.IGNORECASE),
    re.compile(r"∆|δ|θ|π|σ|μ|λ|Σ|Π"),
]
_TABLE_ROW_RE = re.compile(r"\t|\s{3,}")


def detect_equations(text: str) -> bool:
    return any(p.search(text or "") for p in _MATH_PATTERNS)


def detect_tables(text: str) -> bool:
    rows = sum(1 for line in (text or "").split("\n") if _TABLE_ROW_RE.search(line))
    return rows > 3


@dataclass(frozen=True)
class ExtractedPage:
    page_number: int  # 1-based
    text: str
    has_images: bool = False
    has_tables: bool = False
    has_equations: bool = False

    @property
    def word_count(self) -> int:
        return word_count(self.text)


@dataclass(frozen=True)
class ExtractionResult:
    pages: list[ExtractedPage]
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def total_pages(self) -> int:
        return len(self.pages)


class UnsupportedFormat(ValueError):
    pass


def paginate_text(text: str, *, words_per_page: int = WORDS_PER_PAGE) -> list[ExtractedPage]:
    """
    Split unpaginated text into ~`words_per_page` pages on line boundaries, keeping the lines
    intact so header/footer detection still sees them.
    """
    pages: list[ExtractedPage] = []
    current: list[str] = []
    current_words = 0

    def flush() -> None:
        body = "\n".join(current).strip()
        if body:
            pages.append(
                ExtractedPage(
                    page_number=len(pages) + 1,
                    text=body,
                    has_tables=detect_tables(body),
                    has_equations=detect_equations(body),
                )
            )

    for line in (text or "").splitlines():
        current.append(line)
        current_words += word_count(line)
        if current_words >= words_per_page:
            flush()
            current = []
            current_words = 0
    flush()
    return pages


class PlainTextExtractor:
    """
    Built-in extractor for plain text and markdown uploads. Binary formats (PDF, DOCX) are
    handled by an external extraction service behind the same `extract()` signature.
    """

    supported_extensions = frozenset({"txt", "text", "md"})
    supported_mime_types = frozenset({"text/plain", "text/markdown"})

    def __init__(self, *, words_per_page: int = WORDS_PER_PAGE):
        self._words_per_page = words_per_page

    async def extract(self, data: bytes, filename: str) -> ExtractionResult:
        ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
        if ext not in self.supported_extensions:
            raise UnsupportedFormat(f"Unsupported file format: {ext or filename}")
        text = data.decode("utf-8", errors="replace")
        pages = await asyncio.to_thread(paginate_text, text, words_per_page=self._words_per_page)
        first_line = next((ln.strip() for ln in text.splitlines() if ln.strip()), "")
        title = first_line if 0 < len(first_line) < 100 else "Untitled Document"
        return ExtractionResult(pages=pages, metadata={"title": title})

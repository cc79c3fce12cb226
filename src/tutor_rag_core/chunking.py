from __future__ import annotations

from collections import Counter
from dataclasses import dataclass

from tutor_rag_core.extraction import ExtractedPage
from tutor_rag_core.models import Chunk
from tutor_rag_core.util import sanitize_text, word_count

MIN_PAGES_FOR_CLEANUP = 3
MIN_BOILERPLATE_PAGES = 3
MIN_LINE_CHARS = 4
MAX_LINE_CHARS = 200


@dataclass(frozen=True)
class Boilerplate:
    headers: frozenset[str]
    footers: frozenset[str]

    def __bool__(self) -> bool:
        return bool(self.headers or self.footers)


_EMPTY = Boilerplate(headers=frozenset(), footers=frozenset())


def _non_empty_lines(text: str) -> list[str]:
    return [ln.strip() for ln in (text or "").split("\n") if ln.strip()]


def _candidate(line: str) -> bool:
    return MIN_LINE_CHARS <= len(line) < MAX_LINE_CHARS


def detect_boilerplate(pages: list[str], *, min_ratio: float = 0.6) -> Boilerplate:
    """
    Find running headers and footers by frequency analysis.

    Only the first and last non-empty line of each page are candidates. A line counts as
    boilerplate when it appears in that position on at least `max(3, min_ratio * pages)`
    pages. Documents with fewer than 3 pages are never cleaned.
    """
    if len(pages) < MIN_PAGES_FOR_CLEANUP:
        return _EMPTY
    if not 0 < min_ratio <= 1:
        raise ValueError("min_ratio must be in (0, 1]")

    first_lines: Counter[str] = Counter()
    last_lines: Counter[str] = Counter()
    for text in pages:
        lines = _non_empty_lines(text)
        if not lines:
            continue
        if _candidate(lines[0]):
            first_lines[lines[0]] += 1
        if _candidate(lines[-1]):
            last_lines[lines[-1]] += 1

    threshold = max(MIN_BOILERPLATE_PAGES, min_ratio * len(pages))
    return Boilerplate(
        headers=frozenset(ln for ln, n in first_lines.items() if n >= threshold),
        footers=frozenset(ln for ln, n in last_lines.items() if n >= threshold),
    )


def strip_boilerplate(text: str, boilerplate: Boilerplate) -> str:
    if not boilerplate:
        return (text or "").strip()
    lines = [ln.rstrip() for ln in (text or "").split("\n")]

    def first_idx() -> int | None:
        return next((i for i, ln in enumerate(lines) if ln.strip()), None)

    def last_idx() -> int | None:
        return next((i for i in range(len(lines) - 1, -1, -1) if lines[i].strip()), None)

    i = first_idx()
    if i is not None and lines[i].strip() in boilerplate.headers:
        del lines[i]
    j = last_idx()
    if j is not None and lines[j].strip() in boilerplate.footers:
        del lines[j]
    return "\n".join(lines).strip()


def build_chunks(
    *,
    document_id: str,
    pages: list[ExtractedPage],
    min_ratio: float = 0.6,
) -> list[Chunk]:
    """
    One chunk per page; `raw_text` keeps everything, `cleaned_text` has running
    headers/footers removed. Control characters (NUL included) become spaces in both.
    """
    texts = [sanitize_text(p.text) for p in pages]
    boilerplate = detect_boilerplate(texts, min_ratio=min_ratio)
    chunks: list[Chunk] = []
    for page, text in zip(pages, texts):
        cleaned = strip_boilerplate(text, boilerplate)
        chunks.append(
            Chunk(
                document_id=document_id,
                sequence_number=page.page_number,
                raw_text=text,
                cleaned_text=cleaned,
                word_count=word_count(cleaned),
                has_images=page.has_images,
                has_tables=page.has_tables,
                has_equations=page.has_equations,
            )
        )
    return chunks

from __future__ import annotations

import hashlib
import re
from uuid import uuid4

_WS_RE = re.compile(r"\s+")


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def content_hash(data: bytes) -> str:
    """
    Content fingerprint used as the dedup key for uploads.
    """
    return sha256_bytes(data)


def new_document_id() -> str:
    return str(uuid4())


def normalize_question(question: str) -> str:
    return _WS_RE.sub(" ", (question or "").strip()).casefold()


def sanitize_text(text: str) -> str:
    """
    Drop lone surrogates and replace control characters (except tab/newline/CR) with spaces.
    """
    out: list[str] = []
    for ch in text or "":
        code = ord(ch)
        if 0xD800 <= code <= 0xDFFF:
            continue
        if code < 32 and ch not in "\t\n\r":
            out.append(" ")
            continue
        out.append(ch)
    return "".join(out)


def truncate_text(text: str, limit: int) -> str:
    if not text or len(text) <= limit:
        return text or ""
    return text[:limit]


def word_count(text: str) -> int:
    return len([t for t in (text or "").split() if t])

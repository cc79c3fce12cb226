from __future__ import annotations

from dataclasses import dataclass

from tutor_rag_core.models import ACCESS_PERSONAL, ACCESS_SCOPES


@dataclass(frozen=True)
class ValidationIssue:
    code: str
    message: str
    details: dict[str, object] | None = None


SUPPORTED_MIME_TYPES = frozenset(
    {
        "application/pdf",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/msword",
        "text/plain",
        "text/markdown",
        "application/epub+zip",
    }
)
SUPPORTED_EXTENSIONS = frozenset({"pdf", "docx", "doc", "txt", "md", "epub"})

MAX_QUESTION_CHARS = 4000


def _extension(filename: str) -> str:
    return filename.rsplit(".", 1)[-1].lower() if "." in (filename or "") else ""


def validate_upload(
    *,
    data: bytes,
    filename: str,
    mime_type: str | None,
    max_bytes: int,
    access_scope: str = ACCESS_PERSONAL,
    extensions: frozenset[str] = SUPPORTED_EXTENSIONS,
    mime_types: frozenset[str] = SUPPORTED_MIME_TYPES,
) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []

    if not filename or not filename.strip():
        issues.append(ValidationIssue(code="filename_missing", message="Filename is required."))

    size = len(data or b"")
    if size == 0:
        issues.append(ValidationIssue(code="file_empty", message="Uploaded file is empty."))
    elif size > max_bytes:
        issues.append(
            ValidationIssue(
                code="file_too_large",
                message="File size exceeds the upload limit.",
                details={"bytes": size, "max_bytes": max_bytes},
            )
        )

    ext = _extension(filename)
    mime_ok = bool(mime_type) and mime_type in mime_types
    if not mime_ok and ext not in extensions:
        issues.append(
            ValidationIssue(
                code="unsupported_type",
                message="Unsupported file type.",
                details={
                    "mime_type": mime_type or None,
                    "extension": ext or None,
                    "supported": sorted(extensions),
                },
            )
        )

    if access_scope not in ACCESS_SCOPES:
        issues.append(
            ValidationIssue(
                code="invalid_access_scope",
                message="Unknown access scope.",
                details={"access_scope": access_scope, "allowed": list(ACCESS_SCOPES)},
            )
        )

    return issues


def validate_question(question: str) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    normalized = (question or "").strip()
    if not normalized:
        issues.append(ValidationIssue(code="question_empty", message="Question is empty."))
    elif len(normalized) > MAX_QUESTION_CHARS:
        issues.append(
            ValidationIssue(
                code="question_too_long",
                message="Question is too long.",
                details={"chars": len(normalized), "max_chars": MAX_QUESTION_CHARS},
            )
        )
    return issues

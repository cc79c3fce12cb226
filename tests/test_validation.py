import pytest

from tutor_rag_core.validation import validate_question, validate_upload


def test_validate_upload_accepts_pdf() -> None:
    issues = validate_upload(
        data=b"%PDF-1.7", filename="bio.pdf", mime_type="application/pdf", max_bytes=1024
    )
    assert issues == []


def test_validate_upload_empty_and_unsupported() -> None:
    issues = validate_upload(data=b"", filename="notes.exe", mime_type=None, max_bytes=1024)
    assert [i.code for i in issues] == ["file_empty", "unsupported_type"]


def test_validate_upload_too_large() -> None:
    issues = validate_upload(data=b"x" * 11, filename="a.txt", mime_type="text/plain", max_bytes=10)
    assert [i.code for i in issues] == ["file_too_large"]
    assert issues[0].details == {"bytes": 11, "max_bytes": 10}


def test_validate_upload_mime_type_is_enough() -> None:
    issues = validate_upload(
        data=b"abc", filename="upload", mime_type="text/plain", max_bytes=1024
    )
    assert issues == []


def test_validate_upload_missing_filename() -> None:
    issues = validate_upload(data=b"abc", filename=" ", mime_type="text/plain", max_bytes=1024)
    assert [i.code for i in issues] == ["filename_missing"]


@pytest.mark.parametrize(
    ("question", "codes"),
    [
        ("What is osmosis?", []),
        ("   ", ["question_empty"]),
        ("x" * 4001, ["question_too_long"]),
    ],
)
def test_validate_question(question: str, codes: list[str]) -> None:
    assert [i.code for i in validate_question(question)] == codes


def test_validate_upload_accepts_markdown_by_default() -> None:
    issues = validate_upload(data=b"# Cells", filename="notes.md", mime_type=None, max_bytes=1024)
    assert issues == []


def test_validate_upload_honours_narrower_type_sets() -> None:
    issues = validate_upload(
        data=b"%PDF-1.7",
        filename="bio.pdf",
        mime_type="application/pdf",
        max_bytes=1024,
        extensions=frozenset({"txt"}),
        mime_types=frozenset({"text/plain"}),
    )
    assert [i.code for i in issues] == ["unsupported_type"]
    assert issues[0].details["supported"] == ["txt"]

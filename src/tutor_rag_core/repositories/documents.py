from __future__ import annotations

from dataclasses import asdict

from psycopg import errors as pg_errors
from psycopg_pool import AsyncConnectionPool

from tutor_rag_core.errors import (
    ConflictError,
    DocumentNotFound,
    DuplicateContentHash,
    InvalidStatusTransition,
)
from tutor_rag_core.models import STATUS_PROCESSING, STATUS_TRANSITIONS, Document

_COLUMNS = """
  document_id, content_hash, owner_id, status, page_count, storage_ref, duplicate_of,
  title, subject, filename, mime_type, byte_size, access_scope, content_version,
  created_at, updated_at, processed_at
"""


def _to_document(row: tuple) -> Document:
    return Document(
        document_id=row[0],
        content_hash=row[1],
        owner_id=row[2],
        status=row[3],
        page_count=row[4],
        storage_ref=row[5],
        duplicate_of=row[6],
        title=row[7],
        subject=row[8],
        filename=row[9],
        mime_type=row[10],
        byte_size=row[11],
        access_scope=row[12],
        content_version=row[13],
        created_at=row[14],
        updated_at=row[15],
        processed_at=row[16],
    )


class DocumentRepository:
    """
    Postgres-backed document catalog.

    Dedup races are settled by the partial unique indexes in 0001_documents.sql, not by
    locking: a losing insert surfaces as `DuplicateContentHash` (second original) or
    `ConflictError` (second reference for the same owner).
    """

    def __init__(self, pool: AsyncConnectionPool):
        self._pool = pool

    async def create_document(self, doc: Document) -> Document:
        sql = f"""
        insert into documents (
          document_id, content_hash, owner_id, status, page_count, storage_ref, duplicate_of,
          title, subject, filename, mime_type, byte_size, access_scope, content_version,
          processed_at
        ) values (
          %(document_id)s, %(content_hash)s, %(owner_id)s, %(status)s, %(page_count)s,
          %(storage_ref)s, %(duplicate_of)s,
          %(title)s, %(subject)s, %(filename)s, %(mime_type)s, %(byte_size)s,
          %(access_scope)s, %(content_version)s,
          %(processed_at)s
        )
        returning {_COLUMNS}
        """
        try:
            async with self._pool.connection() as conn:
                cur = await conn.execute(sql, asdict(doc))
                row = await cur.fetchone()
        except pg_errors.UniqueViolation as e:
            constraint = getattr(e.diag, "constraint_name", None)
            if constraint == "documents_original_hash_uq":
                raise DuplicateContentHash(doc.content_hash) from e
            if constraint == "documents_owner_reference_uq" and doc.duplicate_of:
                existing = await self.find_reference(
                    owner_id=doc.owner_id, original_id=doc.duplicate_of
                )
                raise ConflictError(
                    "Document is already in your collection",
                    existing_id=existing.document_id if existing else doc.duplicate_of,
                ) from e
            raise
        return _to_document(row)

    async def get_document(self, document_id: str) -> Document | None:
        async with self._pool.connection() as conn:
            cur = await conn.execute(
                f"select {_COLUMNS} from documents where document_id=%s",
                (document_id,),
            )
            row = await cur.fetchone()
        return _to_document(row) if row else None

    async def find_original_by_hash(self, content_hash: str) -> Document | None:
        async with self._pool.connection() as conn:
            cur = await conn.execute(
                f"""
                select {_COLUMNS}
                from documents
                where content_hash=%s and duplicate_of is null
                """,
                (content_hash,),
            )
            row = await cur.fetchone()
        return _to_document(row) if row else None

    async def find_reference(self, *, owner_id: str, original_id: str) -> Document | None:
        async with self._pool.connection() as conn:
            cur = await conn.execute(
                f"""
                select {_COLUMNS}
                from documents
                where owner_id=%s and duplicate_of=%s
                """,
                (owner_id, original_id),
            )
            row = await cur.fetchone()
        return _to_document(row) if row else None

    async def count_owned(self, owner_id: str) -> int:
        async with self._pool.connection() as conn:
            cur = await conn.execute(
                "select count(*) from documents where owner_id=%s and status <> 'failed'",
                (owner_id,),
            )
            row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def advance_status(
        self,
        document_id: str,
        status: str,
        *,
        page_count: int | None = None,
    ) -> Document:
        allowed_from = STATUS_TRANSITIONS.get(status)
        if allowed_from is None:
            raise ValueError(f"Unknown target status: {status}")
        async with self._pool.connection() as conn:
            cur = await conn.execute(
                f"""
                update documents
                set status=%s,
                    page_count=coalesce(%s, page_count),
                    processed_at=case when %s::text = 'ready' then now() else processed_at end,
                    updated_at=now()
                where document_id=%s and status = any(%s::text[])
                returning {_COLUMNS}
                """,
                (status, page_count, status, document_id, list(allowed_from)),
            )
            row = await cur.fetchone()
        if row:
            return _to_document(row)
        current = await self.get_document(document_id)
        if current is None:
            raise DocumentNotFound(document_id)
        raise InvalidStatusTransition(document_id, current.status, status)

    async def reset_for_reprocessing(self, document_id: str) -> Document:
        async with self._pool.connection() as conn:
            cur = await conn.execute(
                f"""
                update documents
                set status=%s,
                    page_count=null,
                    processed_at=null,
                    content_version=content_version + 1,
                    updated_at=now()
                where document_id=%s and duplicate_of is null
                returning {_COLUMNS}
                """,
                (STATUS_PROCESSING, document_id),
            )
            row = await cur.fetchone()
        if not row:
            raise DocumentNotFound(document_id)
        return _to_document(row)

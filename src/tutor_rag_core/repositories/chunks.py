from __future__ import annotations

from typing import Iterable

from psycopg_pool import AsyncConnectionPool

from tutor_rag_core.models import Chunk

_COLUMNS = """
  document_id, sequence_number, raw_text, cleaned_text, word_count, vector_id,
  has_images, has_tables, has_equations
"""


def _to_chunk(row: tuple) -> Chunk:
    return Chunk(
        document_id=row[0],
        sequence_number=row[1],
        raw_text=row[2],
        cleaned_text=row[3],
        word_count=row[4],
        vector_id=row[5],
        has_images=row[6],
        has_tables=row[7],
        has_equations=row[8],
    )


class ChunkRepository:
    def __init__(self, pool: AsyncConnectionPool):
        self._pool = pool

    async def replace_chunks(self, *, document_id: str, chunks: Iterable[Chunk]) -> None:
        """
        Replace-all semantics for a document's chunk set, so a re-run overwrites rather than grows.
        """
        async with self._pool.connection() as conn:
            await conn.execute("delete from chunks where document_id=%s", (document_id,))
            async with conn.cursor() as cur:
                await cur.executemany(
                    """
                    insert into chunks (
                      document_id, sequence_number, raw_text, cleaned_text, word_count,
                      vector_id, has_images, has_tables, has_equations, updated_at
                    ) values (%s, %s, %s, %s, %s, %s, %s, %s, %s, now())
                    """,
                    [
                        (
                            c.document_id,
                            c.sequence_number,
                            c.raw_text,
                            c.cleaned_text,
                            c.word_count,
                            c.vector_id,
                            c.has_images,
                            c.has_tables,
                            c.has_equations,
                        )
                        for c in chunks
                    ],
                )

    async def get_chunks(self, document_id: str, sequence_numbers: list[int]) -> list[Chunk]:
        if not sequence_numbers:
            return []
        async with self._pool.connection() as conn:
            cur = await conn.execute(
                f"""
                select {_COLUMNS}
                from chunks
                where document_id=%s and sequence_number = any(%s::int[])
                order by sequence_number
                """,
                (document_id, sequence_numbers),
            )
            return [_to_chunk(r) for r in await cur.fetchall()]

    async def list_unindexed(self, document_id: str) -> list[Chunk]:
        async with self._pool.connection() as conn:
            cur = await conn.execute(
                f"""
                select {_COLUMNS}
                from chunks
                where document_id=%s and vector_id is null
                order by sequence_number
                """,
                (document_id,),
            )
            return [_to_chunk(r) for r in await cur.fetchall()]

    async def set_vector_id(self, *, document_id: str, sequence_number: int, vector_id: str) -> None:
        async with self._pool.connection() as conn:
            await conn.execute(
                """
                update chunks
                set vector_id=%s, updated_at=now()
                where document_id=%s and sequence_number=%s
                """,
                (vector_id, document_id, sequence_number),
            )

    async def clear_vector_ids(self, document_id: str) -> None:
        async with self._pool.connection() as conn:
            await conn.execute(
                "update chunks set vector_id=null, updated_at=now() where document_id=%s",
                (document_id,),
            )

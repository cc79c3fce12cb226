from __future__ import annotations

import json

from psycopg_pool import AsyncConnectionPool

from tutor_rag_core.models import StageEvent


class StageEventRepository:
    """
    Append-only processing log. Rows are never updated; the current state of a stage is its
    latest row.
    """

    def __init__(self, pool: AsyncConnectionPool):
        self._pool = pool

    async def append(self, event: StageEvent) -> None:
        async with self._pool.connection() as conn:
            await conn.execute(
                """
                insert into processing_stage_events(
                  document_id, stage, status, progress_percent, message, error_json
                ) values (%s, %s, %s, %s, %s, %s::jsonb)
                """,
                (
                    event.document_id,
                    event.stage,
                    event.status,
                    event.progress_percent,
                    event.message,
                    json.dumps(event.error) if event.error is not None else None,
                ),
            )

    async def list_events(self, document_id: str) -> list[StageEvent]:
        async with self._pool.connection() as conn:
            cur = await conn.execute(
                """
                select document_id, stage, status, progress_percent, message, error_json,
                       created_at
                from processing_stage_events
                where document_id=%s
                order by event_id asc
                """,
                (document_id,),
            )
            rows = await cur.fetchall()
        return [
            StageEvent(
                document_id=r[0],
                stage=r[1],
                status=r[2],
                progress_percent=r[3],
                message=r[4],
                error=r[5],
                created_at=r[6],
            )
            for r in rows
        ]

    async def latest_per_stage(self, document_id: str) -> dict[str, StageEvent]:
        latest: dict[str, StageEvent] = {}
        for ev in await self.list_events(document_id):
            latest[ev.stage] = ev
        return latest

from __future__ import annotations

import json

from psycopg_pool import AsyncConnectionPool

from tutor_rag_core.models import ConversationTurn
from tutor_rag_core.util import sanitize_text


class ConversationRepository:
    def __init__(self, pool: AsyncConnectionPool):
        self._pool = pool

    async def get_turns(self, conversation_id: str, *, limit: int = 20) -> list[ConversationTurn]:
        async with self._pool.connection() as conn:
            cur = await conn.execute(
                """
                select role, content, metadata_json
                from (
                  select message_id, role, content, metadata_json
                  from conversation_messages
                  where conversation_id=%s
                  order by message_id desc
                  limit %s
                ) recent
                order by message_id asc
                """,
                (conversation_id, limit),
            )
            rows = await cur.fetchall()
        return [ConversationTurn(role=r[0], content=r[1], metadata=r[2] or {}) for r in rows]

    async def append_turns(
        self,
        *,
        conversation_id: str,
        owner_id: str,
        document_id: str,
        turns: list[ConversationTurn],
    ) -> None:
        async with self._pool.connection() as conn:
            await conn.execute(
                """
                insert into conversations(conversation_id, owner_id, document_id)
                values (%s, %s, %s)
                on conflict (conversation_id) do update set updated_at = now()
                """,
                (conversation_id, owner_id, document_id),
            )
            for t in turns:
                await conn.execute(
                    """
                    insert into conversation_messages(conversation_id, role, content, metadata_json)
                    values (%s, %s, %s, %s::jsonb)
                    """,
                    (
                        conversation_id,
                        t.role,
                        # Postgres text columns reject NUL.
                        sanitize_text(t.content),
                        json.dumps(t.metadata or {}),
                    ),
                )

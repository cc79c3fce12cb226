from __future__ import annotations

import logging

from nats.aio.client import Client as NATS

from tutor_rag_core.events import StageEventMessage, stage_idempotency_key
from tutor_rag_core.models import StageEvent

logger = logging.getLogger(__name__)


async def publish_json(
    nats_url: str,
    subject: str,
    payload_json: str,
    *,
    headers: dict[str, str] | None = None,
) -> None:
    nc = NATS()
    await nc.connect(servers=[nats_url])
    try:
        await nc.publish(subject, payload_json.encode("utf-8"), headers=headers)
        await nc.flush(timeout=2)
    finally:
        await nc.close()


class NatsStageEventSink:
    """
    Mirrors persisted stage events onto `docs.stage.<stage>`. Publishing is best effort:
    the catalog row is the source of truth, so a broker outage only loses the push.
    """

    def __init__(self, nats_url: str):
        self._nats_url = nats_url

    async def publish(self, event: StageEvent) -> None:
        msg = StageEventMessage.from_event(event)
        try:
            await publish_json(
                self._nats_url,
                msg.subject,
                msg.model_dump_json(),
                headers={"Nats-Msg-Id": stage_idempotency_key(msg)},
            )
        except Exception:  # noqa: BLE001
            logger.warning(
                "stage event publish failed document_id=%s stage=%s status=%s",
                event.document_id,
                event.stage,
                event.status,
                exc_info=True,
            )

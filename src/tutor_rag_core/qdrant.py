from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from uuid import NAMESPACE_URL, UUID, uuid5

import httpx


def deterministic_point_id(*, document_id: str, page_number: int) -> UUID:
    return uuid5(NAMESPACE_URL, f"qdrant:{document_id}:page:{page_number}")


@dataclass(frozen=True)
class VectorMatch:
    vector_id: str
    score: float
    document_id: str | None = None
    page_number: int | None = None
    text_preview: str = ""
    payload: dict[str, Any] = field(default_factory=dict)


def _to_match(item: Any) -> VectorMatch:
    if not isinstance(item, dict):
        raise RuntimeError("Unexpected Qdrant search hit shape")
    payload = item.get("payload") if isinstance(item.get("payload"), dict) else {}
    page = payload.get("page_number")
    preview = payload.get("text_preview")
    score = item.get("score")
    return VectorMatch(
        vector_id=str(item.get("id")),
        score=float(score) if isinstance(score, (int, float)) else 0.0,
        document_id=payload.get("document_id"),
        page_number=page if isinstance(page, int) else None,
        text_preview=preview if isinstance(preview, str) else "",
        payload=payload,
    )


@dataclass(frozen=True)
class QdrantClient:
    base_url: str
    collection: str
    api_key: str | None = None
    timeout_s: float = 30.0

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        # Qdrant supports either `api-key` or bearer auth; use api-key.
        return {"api-key": self.api_key}

    def _url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/collections/{self.collection}{path}"

    async def ensure_collection(self, *, vector_size: int, distance: str = "Cosine") -> None:
        headers = self._headers()
        async with httpx.AsyncClient(timeout=self.timeout_s) as client:
            get_resp = await client.get(self._url(""), headers=headers)
            if get_resp.status_code == 200:
                return
            if get_resp.status_code != 404:
                get_resp.raise_for_status()

            create = await client.put(
                self._url(""),
                headers=headers,
                json={"vectors": {"size": vector_size, "distance": distance}},
            )
            create.raise_for_status()

            # Filtered search on document_id needs a payload index.
            index = await client.put(
                self._url("/index"),
                params={"wait": "true"},
                headers=headers,
                json={"field_name": "document_id", "field_schema": "keyword"},
            )
            index.raise_for_status()

    async def upsert_points(self, *, points: list[dict[str, Any]]) -> None:
        if not points:
            return
        async with httpx.AsyncClient(timeout=self.timeout_s) as client:
            resp = await client.put(
                self._url("/points"),
                params={"wait": "true"},
                headers=self._headers(),
                json={"points": points},
            )
            resp.raise_for_status()

    async def delete_points_for_document(self, *, document_id: str) -> None:
        payload = {"filter": {"must": [{"key": "document_id", "match": {"value": document_id}}]}}
        async with httpx.AsyncClient(timeout=self.timeout_s) as client:
            resp = await client.post(
                self._url("/points/delete"),
                params={"wait": "true"},
                headers=self._headers(),
                json=payload,
            )
            resp.raise_for_status()

    async def search(
        self,
        *,
        vector: list[float],
        limit: int = 10,
        document_id: str | None = None,
    ) -> list[VectorMatch]:
        body: dict[str, Any] = {"vector": vector, "limit": limit, "with_payload": True}
        if document_id is not None:
            body["filter"] = {"must": [{"key": "document_id", "match": {"value": document_id}}]}
        async with httpx.AsyncClient(timeout=self.timeout_s) as client:
            resp = await client.post(self._url("/points/search"), headers=self._headers(), json=body)
            resp.raise_for_status()
            data = resp.json()
        result = data.get("result")
        if not isinstance(result, list):
            raise RuntimeError("Unexpected Qdrant search response shape")
        return [_to_match(item) for item in result]

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx


@dataclass(frozen=True)
class Completion:
    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: str | None = None

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


def _extract_message_content(payload: dict[str, Any]) -> str:
    choices = payload.get("choices") or []
    if not isinstance(choices, list) or not choices:
        raise RuntimeError("OpenAI response missing choices")
    first = choices[0] if isinstance(choices[0], dict) else {}
    msg = first.get("message") if isinstance(first.get("message"), dict) else {}
    content = msg.get("content")
    if isinstance(content, str):
        return content.strip()
    text = first.get("text")
    if isinstance(text, str):
        return text.strip()
    return ""


def _extract_usage(payload: dict[str, Any]) -> tuple[int, int]:
    usage = payload.get("usage") if isinstance(payload.get("usage"), dict) else {}
    prompt = usage.get("prompt_tokens")
    completion = usage.get("completion_tokens")
    total = usage.get("total_tokens")
    prompt = prompt if isinstance(prompt, int) else 0
    completion = completion if isinstance(completion, int) else 0
    # Some backends only report a total; attribute it to the prompt side.
    if not prompt and not completion and isinstance(total, int):
        prompt = total
    return prompt, completion


@dataclass(frozen=True)
class LlmServiceClient:
    """
    Client for an OpenAI-compatible `/v1/chat/completions` endpoint.
    """

    base_url: str
    model: str = "gpt-4o-mini"
    api_key: str | None = None
    timeout_s: float = 60.0

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    async def chat_completion(
        self,
        *,
        messages: list[dict[str, Any]],
        max_tokens: int = 1500,
        temperature: float = 0.7,
    ) -> Completion:
        body = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        url = self.base_url.rstrip("/") + "/v1/chat/completions"
        async with httpx.AsyncClient(timeout=self.timeout_s) as client:
            r = await client.post(url, headers=self._headers(), json=body)
            r.raise_for_status()
            payload = r.json()
        prompt_tokens, completion_tokens = _extract_usage(payload)
        return Completion(
            text=_extract_message_content(payload),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            model=payload.get("model") or self.model,
        )

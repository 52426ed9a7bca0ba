# packages/providers/lmstudio.py
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from packages.core.errors import ProviderNotConfigured
from packages.core.settings import get_settings
from packages.providers.base import StreamEvent

log = logging.getLogger("app.provider")


def _data_payload(line: str) -> Optional[str]:
    if line.startswith("data: "):
        return line[len("data: "):]
    if line.startswith("data:"):
        return line[len("data:"):].lstrip()
    return None


class LMStudioProvider:
    """Streaming client for an OpenAI-compatible chat endpoint (LM Studio, OpenRouter, ...)."""

    def __init__(self, base_url: str, timeout: float = 60.0, api_key: Optional[str] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _stream_events(
        self, url: str, payload: Dict[str, Any], cancel: asyncio.Event
    ) -> AsyncIterator[StreamEvent]:
        finish: Optional[str] = None
        saw_done = False
        async with httpx.AsyncClient(timeout=self.timeout, headers=self._headers()) as client:
            async with client.stream("POST", url, json=payload) as resp:
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    if cancel.is_set():
                        # leaving the context closes the upstream request
                        return
                    if not line:
                        continue
                    data_str = _data_payload(line)
                    if data_str is None:
                        continue
                    if data_str.strip() == "[DONE]":
                        saw_done = True
                        break
                    try:
                        obj = json.loads(data_str)
                    except json.JSONDecodeError:
                        continue
                    if obj.get("error"):
                        log.warning({"event": "provider.stream_error", "error": obj.get("error")})
                        finish = "error"
                        break
                    choices = obj.get("choices") or []
                    if not choices:
                        continue
                    choice = choices[0] or {}
                    delta = choice.get("delta") or {}
                    reasoning = delta.get("reasoning_content") or delta.get("reasoning")
                    if reasoning:
                        yield StreamEvent.reasoning(reasoning)
                    # chat delta first, then completion-style keys
                    content = (
                        delta.get("content")
                        or choice.get("text")
                        or choice.get("token")
                        or choice.get("text_delta")
                    )
                    if isinstance(content, str) and content:
                        yield StreamEvent.content(content)
                    if choice.get("finish_reason"):
                        finish = choice["finish_reason"]
        if cancel.is_set():
            return
        if finish is None and saw_done:
            finish = "stop"
        yield StreamEvent.finish(finish)

    async def stream_chat(
        self,
        *,
        model: str,
        messages: List[Dict[str, str]],
        cancel: asyncio.Event,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        extra_body: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield StreamEvents from the SSE stream.

        Tries /v1/chat/completions, falls back to /v1/completions on 404.
        """
        options: Dict[str, Any] = {"stream": True, **(extra_body or {})}
        if temperature is not None:
            options["temperature"] = temperature
        if max_tokens is not None:
            options["max_tokens"] = max_tokens
        url_chat = f"{self.base_url}/v1/chat/completions"
        log.info("provider.stream start: model_id=%s messages=%d", model, len(messages))
        try:
            async for ev in self._stream_events(url_chat, {"model": model, "messages": messages, **options}, cancel):
                yield ev
        except httpx.HTTPStatusError as e:
            if e.response is None or e.response.status_code != 404:
                raise
            prompt = "\n".join(m.get("content", "") for m in messages)
            url_comp = f"{self.base_url}/v1/completions"
            async for ev in self._stream_events(url_comp, {"model": model, "prompt": prompt, **options}, cancel):
                yield ev


def get_lmstudio_provider() -> LMStudioProvider:
    settings = get_settings()
    if not settings.lmstudio_base_url:
        raise ProviderNotConfigured("LMSTUDIO_BASE_URL is not configured")
    return LMStudioProvider(
        base_url=str(settings.lmstudio_base_url),
        timeout=settings.provider_timeout_sec,
        api_key=settings.lmstudio_api_key,
    )

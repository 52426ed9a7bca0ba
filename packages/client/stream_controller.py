from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from packages.client.session_registry import SessionRegistry, StreamSession, StreamState

log = logging.getLogger("app.client")

IN_PROGRESS = ("pending", "streaming", "reasoning")

_LABELS = {
    StreamState.STOPPED: "Stopped by user",
    StreamState.ERRORED: "An error occurred",
}


def terminal_label(state: StreamState) -> Optional[str]:
    """What the UI shows under a finished message; None for a normal completion."""
    return _LABELS.get(state)


def state_from_record(record: Mapping[str, Any]) -> Optional[StreamState]:
    status = record.get("status")
    if status == "done":
        return StreamState.STOPPED if record.get("stop_reason") == "stopped" else StreamState.COMPLETED
    if status == "error":
        return StreamState.ERRORED
    return None


class StreamController:
    """Client side of the streaming API: generate, resume, cancel.

    The final state of every stream comes from the persisted record, read
    after the byte stream ends.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        registry: SessionRegistry,
        token: Optional[str] = None,
        on_text: Optional[Callable[[str, str], None]] = None,
    ) -> None:
        self.client = client
        self.registry = registry
        self.token = token
        self.on_text = on_text

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    async def generate(
        self,
        thread_id: str,
        message_id: str,
        model: str,
        history: Optional[List[Dict[str, Any]]] = None,
    ) -> StreamSession:
        session = self.registry.start(message_id, thread_id)
        body: Dict[str, Any] = {"threadId": thread_id, "messageId": message_id, "model": model}
        if history is not None:
            body["history"] = history
        status = await self._consume(session, "POST", "/stream", json=body)
        if status == 409:
            # another client owns the generation; follow it instead
            log.info({"event": "client.generate_conflict", "message_id": message_id})
            return await self.resume(message_id, thread_id)
        return await self.settle(session)

    async def resume(self, message_id: str, thread_id: Optional[str] = None) -> StreamSession:
        session = self.registry.start(message_id, thread_id, resumed=True)
        await self._consume(
            session,
            "GET",
            "/stream/resume",
            params={"messageId": message_id, "sessionId": session.session_id},
        )
        return await self.settle(session)

    async def cancel(self, thread_id: str, message_id: Optional[str] = None) -> bool:
        """Ask the server to stop; the local stream keeps reading until the server closes it."""
        body: Dict[str, Any] = {"threadId": thread_id}
        if message_id is not None:
            body["messageId"] = message_id
        r = await self.client.post("/stream/cancel", json=body, headers=self._headers())
        r.raise_for_status()
        return True

    async def check_and_resume_if_needed(self, message: Mapping[str, Any]) -> Optional[StreamSession]:
        mid = message.get("id")
        if not mid or message.get("status") not in IN_PROGRESS:
            return None
        if self.registry.has_live(mid):
            return None
        return await self.resume(mid, message.get("thread_id"))

    async def settle(self, session: StreamSession) -> StreamSession:
        try:
            r = await self.client.get(f"/messages/{session.message_id}", headers=self._headers())
            r.raise_for_status()
            record = r.json()
        except httpx.HTTPError as e:
            log.warning({"event": "client.settle_failed", "message_id": session.message_id, "error": str(e)})
            self.registry.finish(session.message_id, StreamState.ERRORED)
            return session
        final = state_from_record(record)
        if final is None:
            # still generating elsewhere; forget it so a later check resumes it
            session.state = StreamState.IDLE
            self.registry.remove(session.message_id)
            return session
        content = record.get("content") or ""
        if content != session.text:
            session.chunks = [content]
        self.registry.finish(session.message_id, final)
        return session

    async def _consume(self, session: StreamSession, method: str, url: str, **kwargs: Any) -> int:
        try:
            async with self.client.stream(method, url, headers=self._headers(), **kwargs) as resp:
                if resp.status_code != 200:
                    await resp.aread()
                    log.warning({
                        "event": "client.stream_rejected",
                        "message_id": session.message_id,
                        "status": resp.status_code,
                        "detail": resp.text,
                    })
                    return resp.status_code
                async for text in resp.aiter_text():
                    if not text:
                        continue
                    self.registry.add_chunk(session.message_id, text)
                    if self.on_text is not None:
                        self.on_text(session.message_id, text)
                return resp.status_code
        except httpx.HTTPError as e:
            log.warning({"event": "client.stream_failed", "message_id": session.message_id, "error": str(e)})
            return 0

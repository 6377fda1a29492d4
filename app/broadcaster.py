"""Push fan-out for preview state changes and build log lines.

One `StatusBroadcaster` is created at startup, handed to every component that
publishes or subscribes, and closed at shutdown. Subscribers are anything with
an async `send_json` (in practice FastAPI WebSockets).

Two scopes:
- per preview: `log` chunks of the running build, `status` records, and a
  terminal `finished` (with url) or `error` (with message);
- per account: `preview-status-update` with the full record, for dashboards.
"""

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Subscriber(Protocol):
    async def send_json(self, data: Any) -> None: ...


class StatusBroadcaster:
    def __init__(self):
        self._preview_subs: dict[int, list[Subscriber]] = {}
        self._account_subs: dict[int, list[Subscriber]] = {}
        # Log lines of builds still in flight, replayed to late joiners
        self._buffers: dict[int, list[str]] = {}
        self.closed = False

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe_preview(self, preview_id: int, ws: Subscriber):
        """Subscribe to a preview. Replays buffered log lines of a running build first."""
        for chunk in self._buffers.get(preview_id, []):
            await ws.send_json({"type": "log", "previewId": preview_id, "chunk": chunk})
        self._preview_subs.setdefault(preview_id, []).append(ws)

    def unsubscribe_preview(self, preview_id: int, ws: Subscriber):
        subs = self._preview_subs.get(preview_id)
        if subs and ws in subs:
            subs.remove(ws)
        if not subs:
            self._preview_subs.pop(preview_id, None)

    def subscribe_account(self, user_id: int, ws: Subscriber):
        self._account_subs.setdefault(user_id, []).append(ws)
        logger.info(f"Account {user_id} dashboard connected. Total: {len(self._account_subs[user_id])}")

    def unsubscribe_account(self, user_id: int, ws: Subscriber):
        subs = self._account_subs.get(user_id)
        if subs and ws in subs:
            subs.remove(ws)
        if not subs:
            self._account_subs.pop(user_id, None)

    def subscriber_count(self, preview_id: int | None = None, user_id: int | None = None) -> int:
        if preview_id is not None:
            return len(self._preview_subs.get(preview_id, []))
        if user_id is not None:
            return len(self._account_subs.get(user_id, []))
        return sum(map(len, self._preview_subs.values())) + sum(map(len, self._account_subs.values()))

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def begin_build(self, preview_id: int):
        self._buffers[preview_id] = []

    async def log(self, preview_id: int, chunk: str):
        """Buffer a log chunk and send it to the preview's subscribers."""
        if preview_id in self._buffers:
            self._buffers[preview_id].append(chunk)
        await self._send(self._preview_subs, preview_id, {
            "type": "log", "previewId": preview_id, "chunk": chunk,
        })

    async def finished(self, preview_id: int, url: str):
        self._buffers.pop(preview_id, None)
        await self._send(self._preview_subs, preview_id, {
            "type": "finished", "previewId": preview_id, "url": url,
        })

    async def error(self, preview_id: int, message: str):
        self._buffers.pop(preview_id, None)
        await self._send(self._preview_subs, preview_id, {
            "type": "error", "previewId": preview_id, "message": message,
        })

    async def status(self, user_id: int, preview: dict):
        """Publish a full preview record to the preview and its owner's dashboards."""
        record = preview_payload(preview)
        await self._send(self._preview_subs, preview["id"], {"type": "status", "preview": record})
        await self._send(self._account_subs, user_id, {"type": "preview-status-update", "preview": record})

    async def _send(self, registry: dict[int, list[Subscriber]], key: int, message: dict):
        if self.closed:
            return
        disconnected = []
        for ws in list(registry.get(key, [])):
            try:
                await ws.send_json(message)
            except Exception as e:
                logger.warning(f"Dropping subscriber after send error: {e}")
                disconnected.append(ws)
        subs = registry.get(key)
        if subs is not None:
            for ws in disconnected:
                if ws in subs:
                    subs.remove(ws)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self):
        """Close every subscriber. Publishing after close is a no-op."""
        self.closed = True
        sockets = [ws for subs in self._preview_subs.values() for ws in subs]
        sockets += [ws for subs in self._account_subs.values() for ws in subs]
        self._preview_subs.clear()
        self._account_subs.clear()
        self._buffers.clear()
        for ws in sockets:
            close = getattr(ws, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.debug(f"Error closing subscriber: {e}")
        logger.info(f"Status broadcaster closed ({len(sockets)} subscriber(s))")


def preview_payload(preview: dict) -> dict:
    """Public shape of a preview record (build logs are fetched separately)."""
    return {
        "previewId": preview["id"],
        "projectId": preview["project_id"],
        "prNumber": preview["pr_number"],
        "status": preview["status"],
        "url": preview.get("url"),
        "containerName": preview.get("container_name"),
        "port": preview.get("port"),
        "buildStartedAt": preview.get("build_started_at"),
        "buildCompletedAt": preview.get("build_completed_at"),
    }

"""Preview state machine persisted in SQLite.

    queued -> building -> live | error
    any    -> deleted
    deleted | error | live -> building   (reopen / synchronize / rebuild)

`url` and `container_name` are set only while a preview is `live`. Every
transition is followed by a broadcast of the full record.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from app.broadcaster import StatusBroadcaster
from app.database import update_preview, upsert_preview

logger = logging.getLogger(__name__)


class PreviewStatus(str, Enum):
    queued = "queued"
    building = "building"
    live = "live"
    error = "error"
    deleted = "deleted"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PreviewStateManager:
    """Persist preview transitions and publish each one."""

    def __init__(self, broadcaster: StatusBroadcaster):
        self.broadcaster = broadcaster

    async def start_build(self, project: dict, pr_number: int, head_ref: Optional[str] = None) -> dict:
        """Create or reuse the (project, PR) row and move it to `building`."""
        fields = {
            "status": PreviewStatus.building.value,
            "url": None,
            "container_name": None,
            "port": None,
            "build_started_at": _now(),
            "build_completed_at": None,
            "build_logs": "",
        }
        if head_ref:
            fields["head_ref"] = head_ref

        preview = await upsert_preview(project["id"], pr_number, **fields)
        self.broadcaster.begin_build(preview["id"])
        logger.info(f"Preview {preview['id']} ({_label(project, pr_number)}) -> building")
        await self._publish(project, preview)
        return preview

    async def mark_live(
        self,
        project: dict,
        preview: dict,
        *,
        url: str,
        container_name: str,
        port: int,
        image_name: str,
        logs: str,
    ) -> dict:
        updated = await update_preview(
            preview["id"],
            status=PreviewStatus.live.value,
            url=url,
            container_name=container_name,
            port=port,
            image_name=image_name,
            build_completed_at=_now(),
            build_logs=logs,
        )
        logger.info(f"Preview {preview['id']} ({_label(project, preview['pr_number'])}) -> live at {url}")
        await self.broadcaster.finished(preview["id"], url)
        await self._publish(project, updated)
        return updated

    async def mark_error(self, project: dict, preview: dict, *, logs: str, message: str) -> dict:
        updated = await update_preview(
            preview["id"],
            status=PreviewStatus.error.value,
            url=None,
            container_name=None,
            port=None,
            build_completed_at=_now(),
            build_logs=logs,
        )
        logger.info(f"Preview {preview['id']} ({_label(project, preview['pr_number'])}) -> error: {message}")
        await self.broadcaster.error(preview["id"], message)
        await self._publish(project, updated)
        return updated

    async def mark_deleted(self, project: dict, preview: dict) -> dict:
        updated = await update_preview(
            preview["id"],
            status=PreviewStatus.deleted.value,
            url=None,
            container_name=None,
            image_name=None,
            port=None,
            build_completed_at=_now(),
        )
        logger.info(f"Preview {preview['id']} ({_label(project, preview['pr_number'])}) -> deleted")
        await self._publish(project, updated)
        return updated

    async def _publish(self, project: dict, preview: dict):
        await self.broadcaster.status(project["user_id"], preview)


def _label(project: dict, pr_number: int) -> str:
    return f"{project['repo_owner']}/{project['repo_name']}#{pr_number}"

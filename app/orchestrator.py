"""PR event handling: quota -> fetch -> build & run -> persist -> broadcast.

One `PreviewOrchestrator` is created at startup. Each PR event or manual
action runs as its own task; tasks for the same (project, PR) are serialized
by a per-preview lock, while tasks for different previews run concurrently.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from app import database
from app.auth import database as auth_db
from app.auth.models import User
from app.broadcaster import StatusBroadcaster
from app.builder import PreviewBuilder, port_owner, resource_name
from app.container_engine import ContainerEngine
from app.detect import detect_project_type
from app.errors import BuildFailed, FetchFailed, NotFound, RunFailed
from app.ports import PortAllocator
from app.quota import BuildReservation, QuotaGuard
from app.source import SourceFetcher, remove_workdir
from app.state import PreviewStateManager, PreviewStatus

logger = logging.getLogger(__name__)


@dataclass
class BuildOutcome:
    preview: dict
    url: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def preview_key(project_id: int, pr_number: int) -> str:
    return f"{project_id}:{pr_number}"


class PreviewOrchestrator:
    def __init__(
        self,
        engine: ContainerEngine,
        fetcher: SourceFetcher,
        broadcaster: StatusBroadcaster,
        quota: QuotaGuard,
        ports: PortAllocator,
    ):
        self.engine = engine
        self.fetcher = fetcher
        self.broadcaster = broadcaster
        self.quota = quota
        self.ports = ports
        self.state = PreviewStateManager(broadcaster)
        self._preview_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _preview_lock(self, key: str):
        """Hold the lock of one preview. The lock is dropped once nobody holds or awaits it."""
        lock = self._preview_locks.get(key)
        if lock is None:
            lock = self._preview_locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._preview_locks[key]

    def is_busy(self, project_id: int, pr_number: int) -> bool:
        lock = self._preview_locks.get(preview_key(project_id, pr_number))
        return lock is not None and lock.locked()

    async def get_owner(self, project: dict) -> User:
        row = await auth_db.get_user_by_id(project["user_id"])
        if row is None:
            raise NotFound(f"Owner of project {project['id']} not found")
        return User.from_row(row)

    # ------------------------------------------------------------------
    # Open / synchronize / reopen / rebuild
    # ------------------------------------------------------------------

    async def reserve(self, project: dict, pr_number: int) -> BuildReservation:
        """Take a build slot for (project, PR) on behalf of its owner.

        Raises QuotaExceeded. The caller hands the reservation to
        `handle_pr_open_or_sync`, which releases it.
        """
        owner = await self.get_owner(project)
        existing = await database.get_preview_by_pr(project["id"], pr_number)
        return await self.quota.reserve_build(owner, preview_key(project["id"], pr_number), existing)

    async def handle_pr_open_or_sync(
        self,
        project: dict,
        pr_number: int,
        ref: Optional[str] = None,
        reservation: Optional[BuildReservation] = None,
    ) -> BuildOutcome:
        """Build (or rebuild) the preview of one PR and leave it `live` or `error`."""
        key = preview_key(project["id"], pr_number)
        if reservation is None:
            reservation = await self.reserve(project, pr_number)

        async with reservation:
            async with self._preview_lock(key):
                return await self._build(project, pr_number, ref)

    async def _build(self, project: dict, pr_number: int, ref: Optional[str]) -> BuildOutcome:
        owner = await self.get_owner(project)

        existing = await database.get_preview_by_pr(project["id"], pr_number)
        if existing:
            await self._remove_container(existing, project)
        if ref is None and existing:
            ref = existing.get("head_ref")

        preview = await self.state.start_build(project, pr_number, head_ref=ref)

        # Streamed first, and kept at the head of every persisted log
        clone_line = f"Cloning {project['repo_owner']}/{project['repo_name']}{f' @ {ref}' if ref else ''}\n"
        workdir: Optional[Path] = None
        try:
            await self.broadcaster.log(preview["id"], clone_line)
            workdir = await self.fetcher.fetch(project["repo_owner"], project["repo_name"], ref)
            project_type = detect_project_type(workdir)
            builder = PreviewBuilder(
                self.engine, self.ports, self.broadcaster,
                project, preview, workdir, project_type, owner.tier,
            )
            result = await builder.build()
        except FetchFailed as e:
            self.ports.release(port_owner(preview))
            logs = clone_line + f"Clone failed: {e}\n"
            updated = await self.state.mark_error(project, preview, logs=logs, message=str(e))
            return BuildOutcome(updated, error=str(e))
        except (BuildFailed, RunFailed) as e:
            logs = clone_line + e.logs + f"\n\nBUILD ERROR:\n{e}\n"
            updated = await self.state.mark_error(project, preview, logs=logs, message=str(e))
            return BuildOutcome(updated, error=str(e))
        except Exception as e:
            # Never leave a preview stuck in `building`
            logger.error(f"Preview {preview['id']} build crashed: {e}", exc_info=True)
            self.ports.release(port_owner(preview))
            await self.state.mark_error(
                project, preview, logs=clone_line + f"Internal error: {e}\n", message="Internal error",
            )
            raise
        finally:
            if workdir is not None:
                remove_workdir(workdir)

        updated = await self.state.mark_live(
            project, preview,
            url=result.url,
            container_name=result.container_name,
            port=result.host_port,
            image_name=result.image_name,
            logs=clone_line + result.logs,
        )
        return BuildOutcome(updated, url=result.url)

    async def rebuild(self, preview: dict, reservation: Optional[BuildReservation] = None) -> BuildOutcome:
        project = await database.get_project(preview["project_id"])
        if project is None:
            raise NotFound("Project not found")
        return await self.handle_pr_open_or_sync(
            project, preview["pr_number"], preview.get("head_ref"), reservation=reservation,
        )

    # ------------------------------------------------------------------
    # Close / delete
    # ------------------------------------------------------------------

    async def handle_pr_closed(self, project: dict, pr_number: int) -> Optional[dict]:
        """Tear down the PR's container and mark the preview `deleted`."""
        async with self._preview_lock(preview_key(project["id"], pr_number)):
            preview = await database.get_preview_by_pr(project["id"], pr_number)
            if preview is None:
                logger.info(f"No preview for {project['repo_owner']}/{project['repo_name']}#{pr_number}, nothing to close")
                return None
            return await self._teardown(project, preview)

    async def delete(self, preview: dict) -> dict:
        project = await database.get_project(preview["project_id"])
        if project is None:
            raise NotFound("Project not found")
        return await self.handle_pr_closed(project, preview["pr_number"])

    async def _teardown(self, project: dict, preview: dict) -> dict:
        await self._remove_container(preview, project)
        if preview.get("image_name"):
            try:
                await self.engine.remove_image(preview["image_name"])
            except Exception as e:
                logger.warning(f"Failed to remove image {preview['image_name']}: {e}")
        self.ports.release(port_owner(preview))
        return await self.state.mark_deleted(project, preview)

    async def _remove_container(self, preview: dict, project: dict):
        """Remove any container held by the preview, by stored and by derived name."""
        names = {resource_name(project["repo_owner"], project["repo_name"], preview["pr_number"], project["id"])}
        if preview.get("container_name"):
            names.add(preview["container_name"])
        for name in sorted(names):
            try:
                await self.engine.remove_container(name)
            except Exception as e:
                logger.warning(f"Failed to remove container {name}: {e}")

    async def teardown_project(self, project: dict) -> int:
        """Tear down every preview of a project (disconnect / tier cleanup)."""
        count = 0
        for preview in await database.list_previews(project["id"]):
            if preview["status"] == PreviewStatus.deleted.value:
                continue
            await self.handle_pr_closed(project, preview["pr_number"])
            count += 1
        return count

    # ------------------------------------------------------------------
    # Background task entry points
    # ------------------------------------------------------------------

    async def build_task(
        self,
        project: dict,
        pr_number: int,
        ref: Optional[str] = None,
        reservation: Optional[BuildReservation] = None,
    ):
        """Run a build after the response went out. The preview row records the outcome."""
        try:
            outcome = await self.handle_pr_open_or_sync(project, pr_number, ref, reservation=reservation)
        except Exception as e:
            logger.error(
                f"Build task for {project['repo_owner']}/{project['repo_name']}#{pr_number} failed: {e}",
                exc_info=True,
            )
            return
        if not outcome.ok:
            logger.warning(f"Preview {outcome.preview['id']} build failed: {outcome.error}")

    async def close_task(self, project: dict, pr_number: int):
        try:
            await self.handle_pr_closed(project, pr_number)
        except Exception as e:
            logger.error(
                f"Teardown of {project['repo_owner']}/{project['repo_name']}#{pr_number} failed: {e}",
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Startup / external events
    # ------------------------------------------------------------------

    async def recover(self):
        """Reconcile persisted state and the container engine after a restart.

        Builds interrupted by the previous process are marked `error` and
        whatever they already created is removed. Live previews whose
        container survived get their ports re-claimed so new builds cannot
        reuse them; the rest are marked `error`.
        """
        for preview in await database.list_previews_by_status(PreviewStatus.building.value):
            project = await database.get_project(preview["project_id"])
            if project is None:
                continue
            await self._remove_container(preview, project)
            image = resource_name(project["repo_owner"], project["repo_name"], preview["pr_number"], project["id"])
            try:
                await self.engine.remove_image(image)
            except Exception as e:
                logger.warning(f"Failed to remove image {image}: {e}")
            self.ports.release(port_owner(preview))
            await self.state.mark_error(
                project, preview,
                logs=(preview.get("build_logs") or "") + "\nBuild interrupted by a service restart.\n",
                message="Build interrupted",
            )

        recovered = 0
        for preview in await database.list_previews_by_status(PreviewStatus.live.value):
            project = await database.get_project(preview["project_id"])
            if project is None:
                continue
            name = preview.get("container_name")
            if not name or await self.engine.find_container(name) is None:
                await self._mark_container_gone(project, preview, name, "disappeared while the service was down")
                continue
            if preview.get("port"):
                self.ports.claim(port_owner(preview), preview["port"])
            recovered += 1
        logger.info(f"Recovered state: {recovered} live preview(s)")

    async def handle_container_gone(self, container_name: str, reason: str) -> Optional[dict]:
        """A managed container stopped outside our control: a live preview is no longer live."""
        preview = await database.find_preview_by_container(container_name)
        if preview is None or preview["status"] != PreviewStatus.live.value:
            return None
        project = await database.get_project(preview["project_id"])
        if project is None:
            return None
        if self.is_busy(project["id"], preview["pr_number"]):
            # A rebuild or delete owns this container right now
            return None
        async with self._preview_lock(preview_key(project["id"], preview["pr_number"])):
            current = await database.get_preview(preview["id"])
            if current is None or current["status"] != PreviewStatus.live.value:
                return None
            # A redeploy may already have replaced it under the same name
            if await self.engine.find_container(container_name):
                return None
            return await self._mark_container_gone(project, current, container_name, reason)

    async def _mark_container_gone(
        self, project: dict, preview: dict, container_name: Optional[str], reason: str,
    ) -> dict:
        self.ports.release(port_owner(preview))
        logger.warning(f"Preview {preview['id']}: container {container_name} {reason}")
        logs = (preview.get("build_logs") or "") + f"\nContainer {container_name} {reason}.\n"
        return await self.state.mark_error(project, preview, logs=logs, message=f"Container {reason}")

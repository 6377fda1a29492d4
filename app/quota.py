"""Per-account quota checks and build-slot reservations."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from app import database
from app.auth.models import User
from app.errors import QuotaExceeded
from app.tiers import Tier, get_tier_limits

logger = logging.getLogger(__name__)


class BuildReservation:
    """A held concurrent-build slot. Release exactly once; usable as `async with`."""

    def __init__(self, guard: "QuotaGuard", user_id: int, key: str, adds_live: bool):
        self._guard = guard
        self.user_id = user_id
        self.key = key
        self.adds_live = adds_live
        self.released = False

    def release(self):
        if not self.released:
            self.released = True
            self._guard._release(self)

    async def __aenter__(self) -> "BuildReservation":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.release()


class QuotaGuard:
    """Tier limit checks.

    The `can_*` methods are plain read-then-compare checks. Anything that acts
    on the answer goes through `reserve_build` or holds `account_lock`, which
    serialize the check and the mutation per account so that concurrent
    requests from one account cannot both squeeze through the last slot.
    """

    def __init__(self):
        self._locks: dict[int, asyncio.Lock] = {}
        self._lock_users: dict[int, int] = {}
        self._inflight: dict[int, list[BuildReservation]] = {}

    @asynccontextmanager
    async def account_lock(self, user_id: int):
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if not self._lock_users[user_id]:
                del self._lock_users[user_id]
                del self._locks[user_id]

    def inflight_builds(self, user_id: int) -> int:
        return len(self._inflight.get(user_id, []))

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def can_connect_project(self, user: User) -> bool:
        limits = get_tier_limits(user.tier)
        if user.tier == Tier.ENTERPRISE:
            return True
        count = await database.count_projects(user.id)
        if count >= limits.max_projects:
            raise QuotaExceeded("connected repos", limits.max_projects, user.tier.value)
        return True

    async def can_accept_build(self, user: User) -> bool:
        limits = get_tier_limits(user.tier)
        if user.tier == Tier.ENTERPRISE:
            return True
        building = await database.count_user_previews(user.id, "building")
        active = max(building, self.inflight_builds(user.id))
        if active >= limits.max_concurrent_builds:
            raise QuotaExceeded("concurrent builds", limits.max_concurrent_builds, user.tier.value)
        return True

    async def can_create_live_preview(self, user: User, preview_id: Optional[int] = None) -> bool:
        """Check the live-preview limit. `preview_id` is the preview being
        (re)built; it does not count against itself."""
        limits = get_tier_limits(user.tier)
        if user.tier == Tier.ENTERPRISE:
            return True
        live = await database.count_user_previews(user.id, "live", exclude_preview_id=preview_id)
        pending = sum(1 for r in self._inflight.get(user.id, []) if r.adds_live)
        if live + pending >= limits.max_live_previews:
            raise QuotaExceeded("live previews", limits.max_live_previews, user.tier.value)
        return True

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    async def reserve_build(self, user: User, key: str, preview: Optional[dict] = None) -> BuildReservation:
        """Atomically check build and live limits and take a build slot.

        `key` identifies the preview being built ("<project_id>:<pr_number>").
        Raises QuotaExceeded without taking a slot.
        """
        async with self.account_lock(user.id):
            preview_id = preview["id"] if preview else None
            await self.can_accept_build(user)
            await self.can_create_live_preview(user, preview_id)

            already_live = bool(preview and preview.get("status") == "live")
            reservation = BuildReservation(self, user.id, key, adds_live=not already_live)
            self._inflight.setdefault(user.id, []).append(reservation)
            logger.info(
                f"Build slot reserved for user {user.id} ({key}): "
                f"{self.inflight_builds(user.id)} in flight"
            )
            return reservation

    def _release(self, reservation: BuildReservation):
        slots = self._inflight.get(reservation.user_id, [])
        if reservation in slots:
            slots.remove(reservation)
        if not slots:
            self._inflight.pop(reservation.user_id, None)
        logger.info(f"Build slot released for user {reservation.user_id} ({reservation.key})")

"""Build & run one preview container from a checked-out working directory."""

import logging
import re
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from app.broadcaster import StatusBroadcaster
from app.container_engine import LABEL_PREVIEW_ID, ContainerEngine
from app.detect import ProjectType
from app.errors import BuildFailed, RunFailed
from app.ports import PortAllocator
from app.preview_config import (
    DOCKERFILE_NAME,
    DOCKERIGNORE_ENTRIES,
    DOCKERIGNORE_NAME,
    BuildRecipe,
    resolve_recipe,
)
from app.tiers import get_tier_limits
from config.settings import settings

logger = logging.getLogger(__name__)

# ANSI color codes for log output
BOLD = "\033[1m"
CYAN = "\033[1;36m"
GREEN = "\033[1;32m"
RED = "\033[1;31m"
DIM = "\033[0;90m"
RESET = "\033[0m"


def _fmt_duration(seconds: float) -> str:
    """Format seconds into a human-readable duration string."""
    s = int(seconds)
    if s < 60:
        return f"{s}s"
    m, s = divmod(s, 60)
    return f"{m}m {s}s"


def resource_name(repo_owner: str, repo_name: str, pr_number: int, project_id: int) -> str:
    """Deterministic container/image name for one PR of one project.

    The project id suffix keeps two accounts that connected the same
    repository from sharing a container name.
    """
    raw = f"{repo_owner}-{repo_name}-pr-{pr_number}-p{project_id}".lower()
    sanitized = re.sub(r"[^a-z0-9\-]", "-", raw)
    sanitized = re.sub(r"-+", "-", sanitized).strip("-")
    return sanitized


def port_owner(preview: dict) -> str:
    return f"preview-{preview['id']}"


@dataclass
class BuildResult:
    url: str
    container_name: str
    host_port: int
    image_name: str
    logs: str


class PreviewBuilder:
    """One build attempt: template -> image -> port -> container -> reconcile.

    Every step is streamed to the broadcaster and kept in the attempt's log
    text. On failure the container and image created by this attempt are
    removed and the port released before the error propagates with the
    accumulated log attached.
    """

    def __init__(
        self,
        engine: ContainerEngine,
        ports: PortAllocator,
        broadcaster: StatusBroadcaster,
        project: dict,
        preview: dict,
        workdir: Path,
        project_type: ProjectType,
        tier,
    ):
        self.engine = engine
        self.ports = ports
        self.broadcaster = broadcaster
        self.project = project
        self.preview = preview
        self.workdir = Path(workdir)
        self.project_type = project_type
        self.tier = tier

        self.name = resource_name(
            project["repo_owner"], project["repo_name"], preview["pr_number"], project["id"]
        )
        self.image = self.name
        self._log_buffer: list[str] = []
        self._step_timings: list[tuple[str, float, str]] = []
        self._image_built = False
        self._container_started = False

    @property
    def logs(self) -> str:
        return "".join(self._log_buffer)

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    async def build(self) -> BuildResult:
        start = datetime.now(timezone.utc)
        label = f"{self.project['repo_owner']}/{self.project['repo_name']}#{self.preview['pr_number']}"
        await self._log_raw(
            f"\n{BOLD}{CYAN}Preview build: {label}{RESET}\n"
            f"{DIM}Type: {self.project_type.value}  Name: {self.name}{RESET}\n"
        )

        try:
            recipe = await self._resolve_template()
            await self._build_image(recipe)
            host_port = await self._allocate_port()
            container = await self._start_container(recipe, host_port)
            container = await self._reconcile_name(container)
        except (BuildFailed, RunFailed) as e:
            await self._fail(e, start)
            raise
        except Exception as e:
            logger.error(f"Unexpected build error for {label}: {e}", exc_info=True)
            err = BuildFailed(f"Unexpected build error: {e}")
            await self._fail(err, start)
            raise err from e

        url = f"{settings.preview_scheme}://{settings.preview_host}:{host_port}"
        duration = int((datetime.now(timezone.utc) - start).total_seconds())
        await self._log_raw(f"{GREEN}Preview available at {url}{RESET}\n")
        await self._log_summary(True, duration)
        logger.info(f"Build OK: {label} -> {container} on port {host_port} in {duration}s")
        return BuildResult(
            url=url,
            container_name=container,
            host_port=host_port,
            image_name=self.image,
            logs=self.logs,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _resolve_template(self) -> BuildRecipe:
        step = "resolve-template"
        await self._log_step_start(step)
        t0 = time.monotonic()

        recipe = resolve_recipe(self.workdir, self.project_type)
        if not recipe.template.is_file():
            await self._log_step_end(step, time.monotonic() - t0, False, f"missing {recipe.template.name}")
            raise BuildFailed(f"Build template not found: {recipe.template.name}")

        shutil.copyfile(recipe.template, self.workdir / DOCKERFILE_NAME)
        self._write_dockerignore()
        await self._log_step_end(
            step, time.monotonic() - t0, True,
            f"{DIM}template={recipe.template.name} port={recipe.internal_port}{RESET}",
        )
        return recipe

    def _write_dockerignore(self):
        """Merge the always-excluded paths into the repository's own .dockerignore, if any."""
        path = self.workdir / DOCKERIGNORE_NAME
        lines = path.read_text().splitlines() if path.is_file() else []
        missing = [entry for entry in DOCKERIGNORE_ENTRIES if entry not in lines]
        if missing:
            path.write_text("\n".join(lines + missing) + "\n")

    async def _build_image(self, recipe: BuildRecipe):
        step = "build-image"
        await self._log_step_start(step)
        await self._log_raw(f"{DIM}> build {self.image} ({recipe.project_type.value}){RESET}\n")
        t0 = time.monotonic()
        # Set before the call: a failed build can still leave a partial image behind
        self._image_built = True
        try:
            await self.engine.build_image(
                self.workdir,
                DOCKERFILE_NAME,
                self.image,
                on_line=self._log_raw,
                timeout=settings.build_timeout_seconds,
            )
        except BuildFailed:
            await self._log_step_end(step, time.monotonic() - t0, False, "")
            raise
        await self._log_step_end(step, time.monotonic() - t0, True, "")

    async def _allocate_port(self) -> int:
        step = "allocate-port"
        await self._log_step_start(step)
        t0 = time.monotonic()
        pool = get_tier_limits(self.tier).port_pool
        try:
            port = self.ports.allocate(pool, port_owner(self.preview))
        except RunFailed as e:
            await self._log_step_end(step, time.monotonic() - t0, False, str(e))
            raise
        await self._log_step_end(step, time.monotonic() - t0, True, f"{DIM}host port {port}{RESET}")
        return port

    async def _start_container(self, recipe: BuildRecipe, host_port: int) -> str:
        step = "start-container"
        await self._log_step_start(step)
        t0 = time.monotonic()

        if await self.engine.remove_container(self.name):
            await self._log_raw(f"{DIM}Removed previous container {self.name}{RESET}\n")

        env = {"PORT": str(recipe.internal_port), **recipe.env}
        await self._log_raw(f"{DIM}> run {self.name} -p {host_port}:{recipe.internal_port}{RESET}\n")
        self._container_started = True
        try:
            container = await self.engine.run_container(
                self.image,
                self.name,
                host_port=host_port,
                internal_port=recipe.internal_port,
                env=env,
                labels={LABEL_PREVIEW_ID: str(self.preview["id"])},
            )
        except RunFailed as e:
            await self._log_step_end(step, time.monotonic() - t0, False, e.logs)
            raise
        await self._log_step_end(step, time.monotonic() - t0, True, f"{DIM}container {container}{RESET}")
        return container

    async def _reconcile_name(self, started_as: str) -> str:
        """Ask the engine for the container's final name; runtimes may rename on create."""
        step = "reconcile-name"
        await self._log_step_start(step)
        t0 = time.monotonic()
        found = await self.engine.find_container(self.name)
        if found is None:
            await self._log_step_end(step, time.monotonic() - t0, False, f"no container matching {self.name}")
            raise RunFailed(f"Container {self.name} not found after start")
        if found != started_as:
            logger.info(f"Container {started_as} resolved as {found}")
        await self._log_step_end(step, time.monotonic() - t0, True, f"{DIM}{found}{RESET}")
        return found

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _fail(self, error: Exception, start: datetime):
        await self._cleanup()
        duration = int((datetime.now(timezone.utc) - start).total_seconds())
        await self._log_summary(False, duration, error=str(error))
        error.logs = self.logs

    async def _cleanup(self):
        """Remove whatever this attempt created. Never raises."""
        if self._container_started:
            try:
                await self.engine.remove_container(self.name)
            except Exception as e:
                logger.warning(f"Cleanup: failed to remove container {self.name}: {e}")
        if self._image_built:
            try:
                await self.engine.remove_image(self.image)
            except Exception as e:
                logger.warning(f"Cleanup: failed to remove image {self.image}: {e}")
        self.ports.release(port_owner(self.preview))

    # ------------------------------------------------------------------
    # Log helpers
    # ------------------------------------------------------------------

    async def _log_raw(self, text: str):
        """Append raw text to log buffer and broadcast."""
        self._log_buffer.append(text)
        await self.broadcaster.log(self.preview["id"], text)

    async def _log_step_start(self, step: str):
        await self._log_raw(f"\n{CYAN}> {step}{RESET}\n")

    async def _log_step_end(self, step: str, duration: float, success: bool, output: str):
        """Log the end of a step with duration and colored status."""
        dur_str = _fmt_duration(duration)
        if success:
            status_line = f"{GREEN}ok {step}{RESET} {DIM}completed in {dur_str}{RESET}\n"
            self._step_timings.append((step, duration, "ok"))
        else:
            status_line = f"{RED}x {step}{RESET} {DIM}failed after {dur_str}{RESET}\n"
            self._step_timings.append((step, duration, "fail"))

        if output and output.strip():
            await self._log_raw(output.strip() + "\n")
        await self._log_raw(status_line)

    async def _log_summary(self, success: bool, total_duration: int, error: str | None = None):
        """Log a final build summary with step timings."""
        dur_str = _fmt_duration(total_duration)
        lines = [f"\n{BOLD}{'-' * 50}{RESET}\n"]

        if success:
            lines.append(f"{GREEN}{BOLD}Build completed successfully in {dur_str}{RESET}\n")
        else:
            lines.append(f"{RED}{BOLD}Build failed after {dur_str}{RESET}\n")
            if error:
                lines.append(f"{RED}  Error: {error}{RESET}\n")

        if self._step_timings:
            lines.append(f"\n{DIM}Step timings:{RESET}\n")
            for step_name, step_dur, step_status in self._step_timings:
                icon = f"{GREEN}ok{RESET}" if step_status == "ok" else f"{RED}x{RESET}"
                lines.append(f"  {icon} {step_name} {DIM}{_fmt_duration(step_dur)}{RESET}\n")

        lines.append(f"{BOLD}{'-' * 50}{RESET}\n")
        await self._log_raw("".join(lines))

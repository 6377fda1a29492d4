"""Async facade over the Docker SDK.

The SDK is blocking, so every call runs in the default executor. Streams
(image build output, engine events) are pumped from a worker thread into an
asyncio queue and consumed line by line on the event loop.
"""

import asyncio
import functools
import logging
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from app.errors import BuildFailed, RunFailed

logger = logging.getLogger(__name__)

LABEL_MANAGED = "pr-preview.managed"
LABEL_PREVIEW_ID = "pr-preview.preview-id"

_DONE = object()


class ContainerEngine:
    """Container build/run operations used by the preview builder."""

    def __init__(self, client: Optional[docker.DockerClient] = None):
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None

    async def _call(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def _pump(self, make_stream: Callable) -> AsyncIterator:
        """Iterate a blocking generator from a worker thread."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        holder: dict = {}

        def _produce():
            try:
                stream = make_stream()
                holder["stream"] = stream
                for item in stream:
                    loop.call_soon_threadsafe(queue.put_nowait, item)
            except Exception as e:
                loop.call_soon_threadsafe(queue.put_nowait, e)
            finally:
                loop.call_soon_threadsafe(queue.put_nowait, _DONE)

        producer = loop.run_in_executor(None, _produce)
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            stream = holder.get("stream")
            if stream is not None and hasattr(stream, "close"):
                try:
                    stream.close()
                except Exception as e:
                    logger.debug(f"Error closing engine stream: {e}")
            if producer.done():
                await producer

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def build_image(
        self,
        context_dir: Path,
        dockerfile: str,
        tag: str,
        on_line: Callable[[str], Awaitable[None]],
        timeout: Optional[int] = None,
    ) -> None:
        """Build `tag` from `context_dir`, forwarding every output line to `on_line`.

        Raises BuildFailed when the engine reports an error or times out.
        """

        async def _consume():
            stream = self._pump(lambda: self.client.api.build(
                path=str(context_dir),
                dockerfile=dockerfile,
                tag=tag,
                rm=True,
                forcerm=True,
                decode=True,
            ))
            try:
                async for chunk in stream:
                    if "error" in chunk:
                        detail = chunk.get("errorDetail", {}).get("message") or chunk["error"]
                        await on_line(str(detail).rstrip("\n") + "\n")
                        raise BuildFailed(f"Image build failed: {str(detail).strip()}")
                    text = chunk.get("stream") or chunk.get("status")
                    if text:
                        await on_line(text if text.endswith("\n") else text + "\n")
            finally:
                await stream.aclose()

        try:
            await asyncio.wait_for(_consume(), timeout=timeout)
        except asyncio.TimeoutError:
            raise BuildFailed(f"Image build timed out after {timeout}s")
        except (APIError, DockerException) as e:
            raise BuildFailed(f"Image build failed: {e}") from e

    async def remove_image(self, tag: str) -> bool:
        try:
            await self._call(self.client.images.remove, tag, force=True)
            return True
        except ImageNotFound:
            return False

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    async def remove_container(self, name: str) -> bool:
        """Force-remove a container by name. Returns False if it did not exist."""
        try:
            container = await self._call(self.client.containers.get, name)
        except NotFound:
            return False
        await self._call(container.remove, force=True)
        logger.info(f"Removed container {name}")
        return True

    async def run_container(
        self,
        image: str,
        name: str,
        host_port: int,
        internal_port: int,
        env: Optional[dict] = None,
        labels: Optional[dict] = None,
    ) -> str:
        """Start a detached container publishing host_port -> internal_port.

        Returns the engine-reported container name. Raises RunFailed when the
        engine refuses to start it or it exits immediately.
        """
        try:
            container = await self._call(
                self.client.containers.run,
                image,
                name=name,
                detach=True,
                ports={f"{internal_port}/tcp": host_port},
                environment=env or {},
                labels={LABEL_MANAGED: "true", **(labels or {})},
                restart_policy={"Name": "unless-stopped"},
            )
        except (APIError, DockerException) as e:
            raise RunFailed(f"Container start failed: {e}") from e

        try:
            await self._call(container.reload)
        except (APIError, DockerException) as e:
            raise RunFailed(f"Container vanished after start: {e}") from e

        if container.status in ("exited", "dead"):
            output = await self._call(container.logs, tail=50)
            raise RunFailed(
                f"Container {container.name} exited immediately",
                logs=output.decode(errors="replace") if isinstance(output, bytes) else str(output),
            )
        return container.name

    async def find_container(self, name_prefix: str) -> Optional[str]:
        """Return the name of a container whose name starts with `name_prefix`.

        An exact match wins over a prefix match.
        """
        containers = await self._call(
            self.client.containers.list, all=True, filters={"name": name_prefix}
        )
        names = [c.name.lstrip("/") for c in containers]
        if name_prefix in names:
            return name_prefix
        for name in names:
            if name.startswith(name_prefix):
                return name
        return None

    async def events(self) -> AsyncIterator[dict]:
        """Stream container lifecycle events for containers this service manages."""
        stream = self._pump(lambda: self.client.events(
            decode=True,
            filters={"type": "container", "label": LABEL_MANAGED},
        ))
        try:
            async for event in stream:
                yield event
        finally:
            await stream.aclose()

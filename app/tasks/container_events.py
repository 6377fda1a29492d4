"""Background task: listen to container engine events and retire live previews whose container disappears."""

import asyncio
import logging

from app.orchestrator import PreviewOrchestrator

logger = logging.getLogger(__name__)

# Containers run with a restart policy, so only removal means the preview is gone
RELEVANT_ACTIONS = {"destroy": "was removed"}

RECONNECT_DELAY_SECONDS = 3


async def container_events_loop(orchestrator: PreviewOrchestrator):
    """Listen to container events for the lifetime of the service."""
    await asyncio.sleep(5)
    logger.info("Container events listener started")

    while True:
        try:
            await _listen_events(orchestrator)
        except asyncio.CancelledError:
            logger.info("Container events listener cancelled")
            raise
        except Exception as e:
            logger.error(f"Container events listener error: {e}", exc_info=True)
        await asyncio.sleep(RECONNECT_DELAY_SECONDS)


async def _listen_events(orchestrator: PreviewOrchestrator):
    async for event in orchestrator.engine.events():
        await handle_event(orchestrator, event)


async def handle_event(orchestrator: PreviewOrchestrator, event: dict):
    action = (event.get("Action") or event.get("status") or "").split(":")[0]
    reason = RELEVANT_ACTIONS.get(action)
    if reason is None:
        return

    container_name = event.get("Actor", {}).get("Attributes", {}).get("name", "")
    if not container_name:
        return

    updated = await orchestrator.handle_container_gone(container_name, reason)
    if updated:
        logger.info(f"Container event: {action} on {container_name} (preview {updated['id']} -> error)")

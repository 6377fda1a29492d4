"""Preview read and action endpoints"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from app.auth.dependencies import get_current_user
from app.auth.models import User
from app.broadcaster import preview_payload
from app.models import SimulatePrRequest
from app.orchestrator import PreviewOrchestrator
from app.routes.webhooks import BUILD_ACTIONS
from app.services import get_orchestrator, get_owned_preview, get_owned_project
from config.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter()


def _preview_detail(preview: dict, orchestrator: PreviewOrchestrator) -> dict:
    return {
        **preview_payload(preview),
        "headRef": preview.get("head_ref"),
        "createdAt": preview["created_at"],
        "updatedAt": preview["updated_at"],
        "busy": orchestrator.is_busy(preview["project_id"], preview["pr_number"]),
    }


@router.get("/api/previews/{preview_id}")
async def get_preview(
    preview_id: int,
    user: User = Depends(get_current_user),
    orchestrator: PreviewOrchestrator = Depends(get_orchestrator),
):
    preview, _ = await get_owned_preview(preview_id, user)
    return _preview_detail(preview, orchestrator)


@router.get("/api/previews/{preview_id}/logs")
async def get_preview_logs(preview_id: int, user: User = Depends(get_current_user)):
    """Accumulated build log of the last attempt, kept after error and delete."""
    preview, _ = await get_owned_preview(preview_id, user)
    return {
        "previewId": preview["id"],
        "status": preview["status"],
        "logs": preview.get("build_logs") or "",
    }


@router.post("/api/previews/{preview_id}/rebuild", status_code=202)
async def rebuild_preview(
    preview_id: int,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    orchestrator: PreviewOrchestrator = Depends(get_orchestrator),
):
    """Rebuild from the last known ref.

    The build slot is reserved before responding, so a refused quota is a 429
    on this request; the build itself runs in the background.
    """
    preview, project = await get_owned_preview(preview_id, user)
    reservation = await orchestrator.reserve(project, preview["pr_number"])
    background_tasks.add_task(
        orchestrator.build_task, project, preview["pr_number"], preview.get("head_ref"), reservation
    )
    logger.info(f"Rebuild of preview {preview_id} requested by user {user.id}")
    return {"status": "accepted", "previewId": preview_id}


@router.post("/api/previews/{preview_id}/delete")
async def delete_preview(
    preview_id: int,
    user: User = Depends(get_current_user),
    orchestrator: PreviewOrchestrator = Depends(get_orchestrator),
):
    """Remove the preview's container and mark it deleted. Logs stay queryable."""
    preview, _ = await get_owned_preview(preview_id, user)
    updated = await orchestrator.delete(preview)
    logger.info(f"Preview {preview_id} deleted by user {user.id}")
    return _preview_detail(updated, orchestrator)


@router.post("/api/dev/sim-pr", status_code=202)
async def simulate_pr(
    body: SimulatePrRequest,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    orchestrator: PreviewOrchestrator = Depends(get_orchestrator),
):
    """Drive the PR event handler without GitHub. Disabled unless ENABLE_DEV_ROUTES is set."""
    if not settings.enable_dev_routes:
        raise HTTPException(status_code=404, detail="Not Found")

    project = await get_owned_project(body.project_id, user)
    if body.action in BUILD_ACTIONS:
        reservation = await orchestrator.reserve(project, body.pr_number)
        background_tasks.add_task(orchestrator.build_task, project, body.pr_number, body.ref, reservation)
    else:
        background_tasks.add_task(orchestrator.close_task, project, body.pr_number)

    logger.info(f"Simulated PR {body.action} for project {project['id']} #{body.pr_number}")
    return {"status": "accepted", "projectId": project["id"], "prNumber": body.pr_number, "action": body.action}

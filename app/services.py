"""Accessors for the process-wide services built in `main.lifespan`, plus
ownership lookups shared by the routes."""

from fastapi import Request

from app import database
from app.auth.models import User
from app.errors import Forbidden, NotFound
from app.orchestrator import PreviewOrchestrator


def get_orchestrator(request: Request) -> PreviewOrchestrator:
    return request.app.state.orchestrator


async def get_owned_project(project_id: int, user: User) -> dict:
    project = await database.get_project(project_id)
    if project is None:
        raise NotFound(f"Project {project_id} not found")
    if project["user_id"] != user.id:
        raise Forbidden("Project belongs to another account")
    return project


async def get_owned_preview(preview_id: int, user: User) -> tuple[dict, dict]:
    """Return (preview, project) if the preview belongs to `user`."""
    preview = await database.get_preview(preview_id)
    if preview is None:
        raise NotFound(f"Preview {preview_id} not found")
    project = await database.get_project(preview["project_id"])
    if project is None:
        raise NotFound(f"Preview {preview_id} not found")
    if project["user_id"] != user.id:
        raise Forbidden("Preview belongs to another account")
    return preview, project

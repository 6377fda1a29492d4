"""Connected repositories: connect, list, register webhook, disconnect."""

import logging
import re

import httpx
from fastapi import APIRouter, Depends, HTTPException

from app import database
from app.auth.dependencies import get_current_user
from app.auth.models import User
from app.broadcaster import preview_payload
from app.errors import Forbidden
from app.github import create_webhook, delete_webhook, generate_webhook_secret, webhook_endpoint
from app.models import ConnectProjectRequest
from app.orchestrator import PreviewOrchestrator
from app.services import get_orchestrator, get_owned_project
from app.tiers import get_tier_limits

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/projects", tags=["projects"])

# GitHub owner and repository names
_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]{1,100}$")


def _project_payload(project: dict) -> dict:
    return {
        "id": project["id"],
        "repoOwner": project["repo_owner"],
        "repoName": project["repo_name"],
        "webhookId": project.get("webhook_id"),
        "createdAt": project["created_at"],
    }


async def _register_webhook(user: User, project: dict) -> dict:
    """Create the GitHub hook for `project` and store its id. Raises HTTPException on failure."""
    if not user.github_token:
        raise HTTPException(status_code=400, detail="GitHub account not linked")
    try:
        hook_id = await create_webhook(
            user.github_token, project["repo_owner"], project["repo_name"], project["webhook_secret"]
        )
    except httpx.HTTPStatusError as e:
        if e.response.status_code == 401:
            raise HTTPException(status_code=401, detail="GitHub token expired or revoked")
        if e.response.status_code in (403, 404):
            raise HTTPException(status_code=403, detail="Insufficient permissions to create webhooks in this repository")
        raise HTTPException(status_code=502, detail=f"GitHub API error: {e.response.status_code}")
    except httpx.HTTPError as e:
        logger.error(f"Error creating webhook for {project['repo_owner']}/{project['repo_name']}: {e}")
        raise HTTPException(status_code=502, detail=f"GitHub API error: {e}")

    await database.set_project_webhook_id(project["id"], hook_id)
    return await database.get_project(project["id"])


@router.post("")
async def connect_project(
    body: ConnectProjectRequest,
    user: User = Depends(get_current_user),
    orchestrator: PreviewOrchestrator = Depends(get_orchestrator),
):
    """Connect a repository to the account.

    Connecting an already connected repository returns the existing project.
    Tiers with webhook auto-deploy also get the GitHub hook registered; a
    failed registration leaves the project connected and is reported in
    `webhookError` (retry with POST /api/projects/{id}/webhook).
    """
    repo_owner = body.repo_owner.strip()
    repo_name = body.repo_name.strip()
    if not _NAME_RE.match(repo_owner) or not _NAME_RE.match(repo_name):
        raise HTTPException(status_code=400, detail="Invalid repository owner or name")

    quota = orchestrator.quota
    async with quota.account_lock(user.id):
        existing = await database.get_user_project(user.id, repo_owner, repo_name)
        if existing:
            return {"project": _project_payload(existing), "created": False}
        await quota.can_connect_project(user)
        project = await database.create_project(user.id, repo_owner, repo_name, generate_webhook_secret())

    logger.info(f"User {user.id} connected {repo_owner}/{repo_name} (project {project['id']})")

    webhook_error = None
    if get_tier_limits(user.tier).allows_webhooks:
        try:
            project = await _register_webhook(user, project)
        except HTTPException as e:
            logger.warning(f"Webhook not registered for project {project['id']}: {e.detail}")
            webhook_error = e.detail

    return {
        "project": _project_payload(project),
        "created": True,
        "webhookUrl": webhook_endpoint(),
        "webhookSecret": project["webhook_secret"],
        "webhookError": webhook_error,
    }


@router.post("/{project_id}/webhook")
async def register_project_webhook(project_id: int, user: User = Depends(get_current_user)):
    """Register the GitHub webhook of an already connected project."""
    project = await get_owned_project(project_id, user)
    if not get_tier_limits(user.tier).allows_webhooks:
        raise Forbidden(f"Tier {user.tier.value} does not include webhook auto-deploy")
    if project.get("webhook_id"):
        return {"project": _project_payload(project), "created": False}
    project = await _register_webhook(user, project)
    return {"project": _project_payload(project), "created": True}


@router.get("")
async def list_projects(user: User = Depends(get_current_user)):
    """Projects of the account with their previews, newest PR first."""
    result = []
    for project in await database.list_projects(user.id):
        previews = await database.list_previews(project["id"])
        result.append({
            **_project_payload(project),
            "previews": [preview_payload(p) for p in previews],
        })
    return {"projects": result, "total": len(result)}


@router.delete("/{project_id}")
async def disconnect_project(
    project_id: int,
    user: User = Depends(get_current_user),
    orchestrator: PreviewOrchestrator = Depends(get_orchestrator),
):
    """Tear down every preview, remove the GitHub hook (best-effort), delete the project."""
    project = await get_owned_project(project_id, user)
    torn_down = await orchestrator.teardown_project(project)

    webhook_removed = False
    if project.get("webhook_id") and user.github_token:
        try:
            webhook_removed = await delete_webhook(
                user.github_token, project["repo_owner"], project["repo_name"], project["webhook_id"]
            )
        except httpx.HTTPError as e:
            logger.warning(f"Failed to delete webhook for project {project_id}: {e}")

    await database.delete_project(project_id)
    logger.info(f"User {user.id} disconnected {project['repo_owner']}/{project['repo_name']}")
    return {
        "success": True,
        "previewsDeleted": torn_down,
        "webhookRemoved": webhook_removed,
    }

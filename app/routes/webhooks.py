"""GitHub webhook receiver for pull request events."""

import json
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request

from app import database
from app.errors import NotFound, QuotaExceeded, SignatureInvalid
from app.github import verify_signature
from app.orchestrator import PreviewOrchestrator
from app.services import get_orchestrator
from app.tiers import get_tier_limits

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

BUILD_ACTIONS = ("opened", "synchronize", "reopened")
CLOSE_ACTIONS = ("closed",)


def _head_ref(pull_request: dict) -> Optional[str]:
    head = pull_request.get("head") or {}
    return head.get("sha") or head.get("ref")


@router.post("/github")
async def github_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_github_event: str = Header(None),
    x_hub_signature_256: str = Header(None),
    orchestrator: PreviewOrchestrator = Depends(get_orchestrator),
):
    """Receive GitHub webhook deliveries.

    The signature is checked against every project connected to the
    repository; only projects whose secret verifies the body are acted on.
    Nothing is persisted before verification succeeds.
    """
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    if not x_github_event:
        raise HTTPException(status_code=400, detail="Missing X-GitHub-Event header")

    repository = payload.get("repository") or {}
    repo_owner = (repository.get("owner") or {}).get("login")
    repo_name = repository.get("name")
    if not repo_owner or not repo_name:
        raise HTTPException(status_code=400, detail="Payload has no repository owner/name")

    projects = await database.find_projects_by_repo(repo_owner, repo_name)
    if not projects:
        raise NotFound(f"Repository {repo_owner}/{repo_name} is not connected")

    verified = [p for p in projects if verify_signature(raw_body, x_hub_signature_256, p["webhook_secret"])]
    if not verified:
        logger.warning(f"Webhook for {repo_owner}/{repo_name} failed signature verification")
        raise SignatureInvalid("Invalid webhook signature")

    if x_github_event != "pull_request":
        logger.debug(f"Ignoring webhook event: {x_github_event}")
        return {"status": "ignored", "reason": f"event {x_github_event} not handled"}

    action = payload.get("action")
    pull_request = payload.get("pull_request") or {}
    pr_number = payload.get("number") or pull_request.get("number")
    if not isinstance(pr_number, int) or isinstance(pr_number, bool):
        raise HTTPException(status_code=400, detail="Payload has no pull request number")

    if action not in BUILD_ACTIONS and action not in CLOSE_ACTIONS:
        logger.debug(f"Ignoring PR action '{action}' for {repo_owner}/{repo_name}#{pr_number}")
        return {"status": "ignored", "reason": f"unhandled action: {action}"}

    dispatched = []
    skipped = []
    reservations = []
    try:
        for project in verified:
            if action in CLOSE_ACTIONS:
                logger.info(f"Close preview for {repo_owner}/{repo_name}#{pr_number} (project {project['id']})")
                background_tasks.add_task(orchestrator.close_task, project, pr_number)
                dispatched.append(project["id"])
                continue

            owner = await orchestrator.get_owner(project)
            if not get_tier_limits(owner.tier).webhook_deploys(action):
                logger.info(
                    f"Skipping {action} for {repo_owner}/{repo_name}#{pr_number}: "
                    f"tier {owner.tier.value} does not auto-deploy it"
                )
                skipped.append({"projectId": project["id"], "reason": "tier"})
                continue

            try:
                reservation = await orchestrator.reserve(project, pr_number)
                reservations.append(reservation)
            except QuotaExceeded as e:
                logger.info(f"Skipping {action} for {repo_owner}/{repo_name}#{pr_number}: {e}")
                skipped.append({"projectId": project["id"], "reason": e.code})
                continue

            ref = _head_ref(pull_request)
            logger.info(
                f"Build preview for {repo_owner}/{repo_name}#{pr_number} "
                f"(project {project['id']}, action {action}, ref {ref})"
            )
            background_tasks.add_task(orchestrator.build_task, project, pr_number, ref, reservation)
            dispatched.append(project["id"])
    except Exception as e:
        for reservation in reservations:
            reservation.release()
        logger.error(f"Webhook handling failed for {repo_owner}/{repo_name}#{pr_number}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Webhook handling failed")

    return {
        "status": "ok" if dispatched else "ignored",
        "action": action,
        "repository": f"{repo_owner}/{repo_name}",
        "prNumber": pr_number,
        "dispatched": dispatched,
        "skipped": skipped,
    }

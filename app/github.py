"""GitHub integration: webhook signature verification and hook registration."""

import hashlib
import hmac
import logging
import secrets
from typing import Optional

import httpx

from config.settings import settings

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def generate_webhook_secret() -> str:
    return secrets.token_hex(32)


def compute_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(raw_body: bytes, signature_header: Optional[str], secret: str) -> bool:
    """Check an `X-Hub-Signature-256` header against the exact request bytes.

    A missing header, a header without the `sha256=` prefix, or an empty
    secret never verifies.
    """
    if not signature_header or not secret:
        return False
    if not signature_header.startswith(SIGNATURE_PREFIX):
        return False
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected.encode("utf-8"), signature_header.encode("utf-8"))


def webhook_endpoint() -> str:
    return f"{settings.public_webhook_url.rstrip('/')}/webhooks/github"


def _headers(token: str) -> dict:
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": "2022-11-28",
    }


async def create_webhook(token: str, repo_owner: str, repo_name: str, secret: str) -> int:
    """Register a `pull_request` webhook on the repository and return its id.

    Raises httpx.HTTPStatusError when GitHub refuses.
    """
    payload = {
        "name": "web",
        "active": True,
        "events": ["pull_request"],
        "config": {
            "url": webhook_endpoint(),
            "content_type": "json",
            "secret": secret,
            "insecure_ssl": "0",
        },
    }
    async with httpx.AsyncClient() as client:
        resp = await client.post(
            f"{settings.github_api_url}/repos/{repo_owner}/{repo_name}/hooks",
            headers=_headers(token),
            json=payload,
            timeout=30,
        )
        resp.raise_for_status()
        hook = resp.json()

    logger.info(f"Webhook {hook['id']} created for {repo_owner}/{repo_name}")
    return hook["id"]


async def delete_webhook(token: str, repo_owner: str, repo_name: str, hook_id: int) -> bool:
    """Remove a previously registered webhook. A hook that is already gone counts as removed."""
    async with httpx.AsyncClient() as client:
        resp = await client.delete(
            f"{settings.github_api_url}/repos/{repo_owner}/{repo_name}/hooks/{hook_id}",
            headers=_headers(token),
            timeout=10,
        )
    if resp.status_code in (204, 404):
        return True
    logger.warning(
        f"Failed to delete webhook {hook_id} on {repo_owner}/{repo_name} (HTTP {resp.status_code})"
    )
    return False

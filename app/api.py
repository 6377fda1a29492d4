"""
PR Preview API

Router aggregator - imports all sub-routers and re-exports a single `router`.
"""

from fastapi import APIRouter

from app.routes import previews, projects, webhooks
from app import websockets

router = APIRouter()

router.include_router(projects.router)
router.include_router(previews.router)
router.include_router(webhooks.router)
router.include_router(websockets.router)

"""FastAPI auth dependencies"""

import logging
from typing import Optional

from fastapi import Header, HTTPException, WebSocket, WebSocketException, status

from app.auth import database as db
from app.auth.models import User

logger = logging.getLogger(__name__)


async def resolve_token(raw_token: Optional[str]) -> Optional[User]:
    """Resolve a raw API token to its account, or None."""
    if not raw_token:
        return None
    token = await db.validate_api_token(raw_token)
    if not token:
        return None
    user = await db.get_user_by_id(token["user_id"])
    return User.from_row(user) if user else None


async def get_current_user(authorization: Optional[str] = Header(None)) -> User:
    """Resolve the current account from a Bearer token."""
    raw_token = None
    if authorization and authorization.startswith("Bearer "):
        raw_token = authorization[7:]

    if not raw_token:
        raise HTTPException(status_code=401, detail="Missing token")

    user = await resolve_token(raw_token)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user


async def authenticate_ws(websocket: WebSocket) -> User:
    """Authenticate a WebSocket connection via the token query param."""
    user = await resolve_token(websocket.query_params.get("token"))
    if user is None:
        raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION)
    return user

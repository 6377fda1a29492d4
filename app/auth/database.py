"""SQLite CRUD for accounts and API tokens.

Shared DB infrastructure (get_db, _now, init_db) lives in app.database.
Account provisioning itself (GitHub OAuth, billing) happens outside this
service; these helpers are what that layer calls.
"""

import hashlib
import logging
import secrets
from typing import Optional

from app.database import get_db, _now
from app.tiers import Tier

logger = logging.getLogger(__name__)


# ---- Users ----

async def get_user_by_id(user_id: int) -> Optional[dict]:
    db = await get_db()
    try:
        cur = await db.execute("SELECT * FROM users WHERE id = ?", (user_id,))
        row = await cur.fetchone()
        return dict(row) if row else None
    finally:
        await db.close()


async def create_user(
    email: str,
    tier: Tier = Tier.FREE,
    github_login: Optional[str] = None,
    github_token: Optional[str] = None,
) -> dict:
    now = _now()
    db = await get_db()
    try:
        cur = await db.execute(
            """INSERT INTO users (email, github_login, github_token, tier, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (email, github_login, github_token, Tier.parse(tier).value, now, now),
        )
        await db.commit()
        cur2 = await db.execute("SELECT * FROM users WHERE id = ?", (cur.lastrowid,))
        return dict(await cur2.fetchone())
    finally:
        await db.close()


async def set_user_tier(user_id: int, tier: Tier):
    db = await get_db()
    try:
        await db.execute(
            "UPDATE users SET tier = ?, updated_at = ? WHERE id = ?",
            (Tier.parse(tier).value, _now(), user_id),
        )
        await db.commit()
    finally:
        await db.close()
    logger.info(f"User {user_id} moved to tier {Tier.parse(tier).value}")


# ---- API Tokens ----

def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


async def create_api_token(user_id: int, name: str) -> tuple[int, str]:
    """Returns (token_id, raw_token). The raw token is only returned once."""
    raw_token = secrets.token_urlsafe(48)
    token_hash = _hash_token(raw_token)
    token_prefix = raw_token[:8]
    db = await get_db()
    try:
        cur = await db.execute(
            "INSERT INTO api_tokens (user_id, name, token_hash, token_prefix, created_at) VALUES (?, ?, ?, ?, ?)",
            (user_id, name, token_hash, token_prefix, _now()),
        )
        await db.commit()
        return cur.lastrowid, raw_token
    finally:
        await db.close()


async def validate_api_token(raw_token: str) -> Optional[dict]:
    token_hash = _hash_token(raw_token)
    db = await get_db()
    try:
        cur = await db.execute("SELECT * FROM api_tokens WHERE token_hash = ?", (token_hash,))
        row = await cur.fetchone()
        if not row:
            return None
        token = dict(row)
        await db.execute("UPDATE api_tokens SET last_used_at = ? WHERE id = ?", (_now(), token["id"]))
        await db.commit()
        return token
    finally:
        await db.close()

"""Shared SQLite database for the PR preview orchestrator (accounts, projects, previews)."""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import aiosqlite

from config.settings import settings

logger = logging.getLogger(__name__)

_db_path: str = ""

AUTH_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT UNIQUE NOT NULL,
    github_login TEXT,
    github_token TEXT,
    tier TEXT NOT NULL DEFAULT 'FREE',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS api_tokens (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    name TEXT NOT NULL DEFAULT '',
    token_hash TEXT UNIQUE NOT NULL,
    token_prefix TEXT NOT NULL,
    created_at TEXT NOT NULL,
    last_used_at TEXT
);
"""

PROJECTS_SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    repo_owner TEXT NOT NULL,
    repo_name TEXT NOT NULL,
    webhook_secret TEXT NOT NULL,
    webhook_id INTEGER,
    created_at TEXT NOT NULL,
    UNIQUE(user_id, repo_owner, repo_name)
);
"""

PREVIEWS_SCHEMA = """
CREATE TABLE IF NOT EXISTS previews (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    pr_number INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'queued',
    url TEXT,
    container_name TEXT,
    image_name TEXT,
    port INTEGER,
    head_ref TEXT,
    build_started_at TEXT,
    build_completed_at TEXT,
    build_logs TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(project_id, pr_number)
);
"""

PREVIEW_COLUMNS = {
    "status", "url", "container_name", "image_name", "port", "head_ref",
    "build_started_at", "build_completed_at", "build_logs",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def get_db() -> aiosqlite.Connection:
    db = await aiosqlite.connect(_db_path)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")
    return db


async def init_db():
    global _db_path
    _db_path = settings.db_path

    db_file = Path(_db_path)
    db_file.parent.mkdir(parents=True, exist_ok=True)

    db = await get_db()
    try:
        await db.executescript(AUTH_SCHEMA)
        await db.executescript(PROJECTS_SCHEMA)
        await db.executescript(PREVIEWS_SCHEMA)

        # Migration: add image_name column if missing
        cur = await db.execute("PRAGMA table_info(previews)")
        col_names = {row[1] for row in await cur.fetchall()}
        if "image_name" not in col_names:
            logger.info("Migrating previews table: adding image_name column")
            await db.execute("ALTER TABLE previews ADD COLUMN image_name TEXT")

        await db.commit()
        logger.info(f"Database initialized at {_db_path}")
    finally:
        await db.close()


# ---- Project CRUD ----

async def create_project(user_id: int, repo_owner: str, repo_name: str, webhook_secret: str) -> dict:
    db = await get_db()
    try:
        cur = await db.execute(
            """INSERT INTO projects (user_id, repo_owner, repo_name, webhook_secret, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (user_id, repo_owner, repo_name, webhook_secret, _now()),
        )
        await db.commit()
        cur2 = await db.execute("SELECT * FROM projects WHERE id = ?", (cur.lastrowid,))
        return dict(await cur2.fetchone())
    finally:
        await db.close()


async def get_project(project_id: int) -> Optional[dict]:
    db = await get_db()
    try:
        cur = await db.execute("SELECT * FROM projects WHERE id = ?", (project_id,))
        row = await cur.fetchone()
        return dict(row) if row else None
    finally:
        await db.close()


async def get_user_project(user_id: int, repo_owner: str, repo_name: str) -> Optional[dict]:
    db = await get_db()
    try:
        cur = await db.execute(
            "SELECT * FROM projects WHERE user_id = ? AND repo_owner = ? AND repo_name = ?",
            (user_id, repo_owner, repo_name),
        )
        row = await cur.fetchone()
        return dict(row) if row else None
    finally:
        await db.close()


async def find_projects_by_repo(repo_owner: str, repo_name: str) -> list[dict]:
    """All projects (across accounts) connected to a repository.

    GitHub owner/repo names are case-insensitive, so matching is too.
    """
    db = await get_db()
    try:
        cur = await db.execute(
            """SELECT * FROM projects
               WHERE lower(repo_owner) = lower(?) AND lower(repo_name) = lower(?)
               ORDER BY id""",
            (repo_owner, repo_name),
        )
        return [dict(r) for r in await cur.fetchall()]
    finally:
        await db.close()


async def list_projects(user_id: int) -> list[dict]:
    db = await get_db()
    try:
        cur = await db.execute(
            "SELECT * FROM projects WHERE user_id = ? ORDER BY created_at DESC", (user_id,)
        )
        return [dict(r) for r in await cur.fetchall()]
    finally:
        await db.close()


async def count_projects(user_id: int) -> int:
    db = await get_db()
    try:
        cur = await db.execute("SELECT COUNT(*) FROM projects WHERE user_id = ?", (user_id,))
        return (await cur.fetchone())[0]
    finally:
        await db.close()


async def set_project_webhook_id(project_id: int, webhook_id: Optional[int]):
    db = await get_db()
    try:
        await db.execute(
            "UPDATE projects SET webhook_id = ? WHERE id = ?", (webhook_id, project_id)
        )
        await db.commit()
    finally:
        await db.close()


async def delete_project(project_id: int):
    db = await get_db()
    try:
        await db.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        await db.commit()
    finally:
        await db.close()


# ---- Preview CRUD ----

async def get_preview(preview_id: int) -> Optional[dict]:
    db = await get_db()
    try:
        cur = await db.execute("SELECT * FROM previews WHERE id = ?", (preview_id,))
        row = await cur.fetchone()
        return dict(row) if row else None
    finally:
        await db.close()


async def get_preview_by_pr(project_id: int, pr_number: int) -> Optional[dict]:
    db = await get_db()
    try:
        cur = await db.execute(
            "SELECT * FROM previews WHERE project_id = ? AND pr_number = ?",
            (project_id, pr_number),
        )
        row = await cur.fetchone()
        return dict(row) if row else None
    finally:
        await db.close()


async def list_previews(project_id: int) -> list[dict]:
    db = await get_db()
    try:
        cur = await db.execute(
            "SELECT * FROM previews WHERE project_id = ? ORDER BY pr_number DESC",
            (project_id,),
        )
        return [dict(r) for r in await cur.fetchall()]
    finally:
        await db.close()


async def list_previews_by_status(status: str) -> list[dict]:
    db = await get_db()
    try:
        cur = await db.execute("SELECT * FROM previews WHERE status = ?", (status,))
        return [dict(r) for r in await cur.fetchall()]
    finally:
        await db.close()


async def count_user_previews(user_id: int, status: str, exclude_preview_id: Optional[int] = None) -> int:
    """Count an account's previews in `status`, across all of its projects."""
    db = await get_db()
    try:
        cur = await db.execute(
            """SELECT COUNT(*) FROM previews p
               JOIN projects pr ON pr.id = p.project_id
               WHERE pr.user_id = ? AND p.status = ? AND p.id != ?""",
            (user_id, status, exclude_preview_id or -1),
        )
        return (await cur.fetchone())[0]
    finally:
        await db.close()


async def upsert_preview(project_id: int, pr_number: int, **fields) -> dict:
    """Create the preview for (project, PR) or update the existing row in place."""
    unknown = set(fields) - PREVIEW_COLUMNS
    if unknown:
        raise ValueError(f"Unknown preview fields: {sorted(unknown)}")

    db = await get_db()
    try:
        now = _now()
        await db.execute(
            """INSERT INTO previews (project_id, pr_number, created_at, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(project_id, pr_number) DO NOTHING""",
            (project_id, pr_number, now, now),
        )
        if fields:
            sets = [f"{k} = ?" for k in fields]
            vals = list(fields.values())
            vals.extend([now, project_id, pr_number])
            await db.execute(
                f"UPDATE previews SET {', '.join(sets)}, updated_at = ? "
                "WHERE project_id = ? AND pr_number = ?",
                vals,
            )
        await db.commit()
        cur = await db.execute(
            "SELECT * FROM previews WHERE project_id = ? AND pr_number = ?",
            (project_id, pr_number),
        )
        return dict(await cur.fetchone())
    finally:
        await db.close()


async def update_preview(preview_id: int, **fields) -> Optional[dict]:
    unknown = set(fields) - PREVIEW_COLUMNS
    if unknown:
        raise ValueError(f"Unknown preview fields: {sorted(unknown)}")

    db = await get_db()
    try:
        if fields:
            sets = [f"{k} = ?" for k in fields]
            vals = list(fields.values())
            vals.extend([_now(), preview_id])
            await db.execute(
                f"UPDATE previews SET {', '.join(sets)}, updated_at = ? WHERE id = ?",
                vals,
            )
            await db.commit()
        cur = await db.execute("SELECT * FROM previews WHERE id = ?", (preview_id,))
        row = await cur.fetchone()
        return dict(row) if row else None
    finally:
        await db.close()


async def find_preview_by_container(container_name: str) -> Optional[dict]:
    db = await get_db()
    try:
        cur = await db.execute(
            "SELECT * FROM previews WHERE container_name = ?", (container_name,)
        )
        row = await cur.fetchone()
        return dict(row) if row else None
    finally:
        await db.close()

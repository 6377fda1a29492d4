"""
Pytest configuration and fixtures.

Async tests run against a throwaway SQLite file and an orchestrator wired
to in-memory fakes of the container engine and the source fetcher.
"""
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Optional

import httpx
import pytest
from fastapi import FastAPI

from app import database
from app.api import router
from app.auth import database as auth_db
from app.broadcaster import StatusBroadcaster
from app.errors import BuildFailed, FetchFailed, RunFailed
from app.github import compute_signature
from app.orchestrator import PreviewOrchestrator
from app.ports import PortAllocator
from app.quota import QuotaGuard
from app.tiers import Tier
from config.settings import settings
from main import add_exception_handlers


class FakeEngine:
    """In-memory stand-in for ContainerEngine."""

    def __init__(self):
        self.images: set[str] = set()
        self.containers: dict[str, dict] = {}
        self.fail_build = False
        self.fail_run = False
        self.build_calls = 0
        self.run_calls = 0
        # .dockerignore lines of each build context, read when the build starts
        self.dockerignores: list[list[str]] = []

    async def build_image(self, context_dir, dockerfile, tag, on_line, timeout=None):
        self.build_calls += 1
        assert (Path(context_dir) / dockerfile).is_file()
        ignore = Path(context_dir) / ".dockerignore"
        self.dockerignores.append(ignore.read_text().splitlines() if ignore.is_file() else [])
        await on_line("Step 1/2 : FROM nginx:1.27-alpine\n")
        if self.fail_build:
            await on_line("npm ERR! missing script: build\n")
            raise BuildFailed("Image build failed: npm run build returned a non-zero code: 1")
        await on_line(f"Successfully tagged {tag}:latest\n")
        self.images.add(tag)

    async def remove_image(self, tag):
        if tag in self.images:
            self.images.discard(tag)
            return True
        return False

    async def remove_container(self, name):
        return self.containers.pop(name, None) is not None

    async def run_container(self, image, name, host_port, internal_port, env=None, labels=None):
        self.run_calls += 1
        if self.fail_run:
            raise RunFailed(f"Container {name} exited immediately", logs="Error: Cannot find module 'server.js'\n")
        assert name not in self.containers, f"container {name} already exists"
        self.containers[name] = {
            "image": image,
            "host_port": host_port,
            "internal_port": internal_port,
            "env": dict(env or {}),
            "labels": dict(labels or {}),
        }
        return name

    async def find_container(self, name_prefix):
        if name_prefix in self.containers:
            return name_prefix
        for name in self.containers:
            if name.startswith(name_prefix):
                return name
        return None

    async def events(self):
        return
        yield

    def close(self):
        pass


class FakeFetcher:
    """Writes a fixed set of files into a fresh temp dir instead of cloning."""

    def __init__(self):
        self.files: dict[str, str] = {"index.html": "<h1>preview</h1>"}
        self.fail: Optional[str] = None
        self.calls: list[tuple] = []
        self.workdirs: list[Path] = []

    async def fetch(self, owner, repo, ref=None):
        self.calls.append((owner, repo, ref))
        if self.fail:
            raise FetchFailed(self.fail)
        workdir = Path(tempfile.mkdtemp(prefix="pr-build-test-"))
        for name, content in self.files.items():
            (workdir / name).write_text(content)
        self.workdirs.append(workdir)
        return workdir


class RecordingSocket:
    """Subscriber that keeps every message it is sent."""

    def __init__(self):
        self.messages: list[dict] = []
        self.closed = False

    async def send_json(self, data):
        self.messages.append(data)

    async def close(self):
        self.closed = True

    def of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.messages if m["type"] == msg_type]


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "previews.db"
    monkeypatch.setattr(settings, "db_path", str(path))
    return path


@pytest.fixture
async def db(db_path):
    await database.init_db()
    return db_path


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def fetcher():
    f = FakeFetcher()
    yield f
    for workdir in f.workdirs:
        shutil.rmtree(workdir, ignore_errors=True)


@pytest.fixture
def broadcaster():
    return StatusBroadcaster()


@pytest.fixture
def ports():
    return PortAllocator(probe=lambda port: True)


@pytest.fixture
def orchestrator(engine, fetcher, broadcaster, ports):
    return PreviewOrchestrator(
        engine=engine,
        fetcher=fetcher,
        broadcaster=broadcaster,
        quota=QuotaGuard(),
        ports=ports,
    )


@pytest.fixture
def app(orchestrator, broadcaster):
    test_app = FastAPI()
    add_exception_handlers(test_app)
    test_app.include_router(router)
    test_app.state.orchestrator = orchestrator
    test_app.state.broadcaster = broadcaster
    return test_app


@pytest.fixture
async def client(app, db):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def make_user(tier: Tier = Tier.FREE, email: Optional[str] = None, github_token: Optional[str] = None):
    """Create an account and an API token. Returns (user_row, auth_headers)."""
    email = email or f"{tier.value.lower()}-{uuid.uuid4().hex[:8]}@example.com"
    user = await auth_db.create_user(email, tier=tier, github_token=github_token)
    _, raw = await auth_db.create_api_token(user["id"], "tests")
    return user, {"Authorization": f"Bearer {raw}"}


async def make_project(user: dict, repo_owner: str = "acme", repo_name: str = "widgets", secret: str = "s3cret"):
    return await database.create_project(user["id"], repo_owner, repo_name, secret)


def pr_event(action: str, number: int = 42, owner: str = "acme", repo: str = "widgets", sha: str = "abc123") -> dict:
    return {
        "action": action,
        "number": number,
        "pull_request": {
            "number": number,
            "head": {"ref": "feature/login", "sha": sha},
        },
        "repository": {"name": repo, "owner": {"login": owner}},
    }


def signed_headers(body: bytes, secret: str, event: str = "pull_request") -> dict:
    return {
        "Content-Type": "application/json",
        "X-GitHub-Event": event,
        "X-Hub-Signature-256": compute_signature(body, secret),
    }

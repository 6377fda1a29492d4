"""
Tests for the PR event handler: build, teardown, failure paths and recovery.
"""
import asyncio

import pytest

from app import database
from app.builder import port_owner, resource_name
from app.errors import QuotaExceeded
from app.tasks.container_events import handle_event
from app.tiers import Tier, get_tier_limits

from conftest import RecordingSocket, make_project, make_user


def assert_live_fields_consistent(preview: dict):
    live = preview["status"] == "live"
    assert (preview["url"] is not None) == live
    assert (preview["container_name"] is not None) == live


async def _setup(tier=Tier.PRO):
    user, _ = await make_user(tier)
    project = await make_project(user)
    return user, project


async def test_opened_pr_goes_live(db, orchestrator, broadcaster, engine, ports):
    user, project = await _setup(Tier.PRO)
    dashboard = RecordingSocket()
    broadcaster.subscribe_account(user["id"], dashboard)

    outcome = await orchestrator.handle_pr_open_or_sync(project, 42, "abc123")

    assert outcome.ok
    preview = outcome.preview
    assert preview["status"] == "live"
    assert preview["port"] in get_tier_limits(Tier.PRO).port_pool
    assert preview["url"] == f"http://localhost:{preview['port']}"
    assert preview["container_name"] == resource_name("acme", "widgets", 42, project["id"])
    assert preview["head_ref"] == "abc123"
    assert preview["build_started_at"] and preview["build_completed_at"]
    assert preview["build_logs"].startswith("Cloning acme/widgets @ abc123\n")
    assert "Preview available at" in preview["build_logs"]
    assert_live_fields_consistent(preview)

    assert list(engine.containers) == [preview["container_name"]]
    assert engine.containers[preview["container_name"]]["internal_port"] == 80
    assert ports.owner_of(preview["port"]) == port_owner(preview)

    statuses = [m["preview"]["status"] for m in dashboard.of_type("preview-status-update")]
    assert statuses == ["building", "live"]


async def test_preview_channel_gets_logs_then_finished(db, orchestrator, broadcaster):
    _, project = await _setup()
    first = await orchestrator.handle_pr_open_or_sync(project, 1)

    sock = RecordingSocket()
    await broadcaster.subscribe_preview(first.preview["id"], sock)
    await orchestrator.handle_pr_open_or_sync(project, 1)

    types = [m["type"] for m in sock.messages]
    assert types[0] == "status"
    assert "log" in types
    assert types[-2:] == ["finished", "status"]
    assert sock.of_type("finished")[0]["url"] == first.preview["url"]


async def test_persisted_log_matches_streamed_log(db, orchestrator, broadcaster):
    _, project = await _setup()
    first = await orchestrator.handle_pr_open_or_sync(project, 1)
    sock = RecordingSocket()
    await broadcaster.subscribe_preview(first.preview["id"], sock)
    replayed = len(sock.messages)

    outcome = await orchestrator.handle_pr_open_or_sync(project, 1)

    streamed = "".join(m["chunk"] for m in sock.messages[replayed:] if m["type"] == "log")
    assert streamed == outcome.preview["build_logs"]


async def test_closed_pr_tears_down(db, orchestrator, broadcaster, engine, ports):
    user, project = await _setup()
    live = (await orchestrator.handle_pr_open_or_sync(project, 42)).preview
    dashboard = RecordingSocket()
    broadcaster.subscribe_account(user["id"], dashboard)

    deleted = await orchestrator.handle_pr_closed(project, 42)

    assert deleted["id"] == live["id"]
    assert deleted["status"] == "deleted"
    assert deleted["url"] is None
    assert deleted["container_name"] is None
    assert deleted["port"] is None
    assert engine.containers == {}
    assert engine.images == set()
    assert ports.owner_of(live["port"]) is None
    assert [m["preview"]["status"] for m in dashboard.messages] == ["deleted"]


async def test_close_without_preview_is_a_noop(db, orchestrator):
    _, project = await _setup()
    assert await orchestrator.handle_pr_closed(project, 99) is None


async def test_build_failure_marks_error(db, orchestrator, engine, ports):
    _, project = await _setup()
    engine.fail_build = True

    outcome = await orchestrator.handle_pr_open_or_sync(project, 42)

    preview = outcome.preview
    assert not outcome.ok
    assert preview["status"] == "error"
    assert preview["build_completed_at"] is not None
    assert_live_fields_consistent(preview)
    assert "npm ERR! missing script: build" in preview["build_logs"]
    assert "BUILD ERROR" in preview["build_logs"]
    assert engine.containers == {}
    assert engine.images == set()
    assert engine.run_calls == 0
    assert ports.owner_of(5000) is None


async def test_run_failure_removes_image_and_keeps_logs(db, orchestrator, engine):
    _, project = await _setup()
    engine.fail_run = True

    outcome = await orchestrator.handle_pr_open_or_sync(project, 42)

    assert outcome.preview["status"] == "error"
    assert "Cannot find module" in outcome.preview["build_logs"]
    assert engine.containers == {}
    assert engine.images == set()


async def test_fetch_failure_marks_error(db, orchestrator, fetcher, engine):
    _, project = await _setup()
    fetcher.fail = "git clone failed: repository not found"

    outcome = await orchestrator.handle_pr_open_or_sync(project, 42)

    assert outcome.preview["status"] == "error"
    assert outcome.preview["build_logs"].startswith("Cloning acme/widgets\n")
    assert "Clone failed" in outcome.preview["build_logs"]
    assert engine.build_calls == 0


async def test_missing_template_fails_before_build(db, orchestrator, engine, tmp_path, monkeypatch):
    monkeypatch.setattr("app.preview_config.TEMPLATES_DIR", tmp_path / "no-templates")
    _, project = await _setup()

    outcome = await orchestrator.handle_pr_open_or_sync(project, 42)

    assert outcome.preview["status"] == "error"
    assert "Build template not found" in outcome.preview["build_logs"]
    assert engine.build_calls == 0


async def test_working_directory_is_removed(db, orchestrator, fetcher, engine):
    _, project = await _setup()
    await orchestrator.handle_pr_open_or_sync(project, 1)
    engine.fail_build = True
    await orchestrator.handle_pr_open_or_sync(project, 2)

    assert len(fetcher.workdirs) == 2
    assert not any(w.exists() for w in fetcher.workdirs)


async def test_reopen_reuses_the_same_row(db, orchestrator):
    _, project = await _setup()
    opened = (await orchestrator.handle_pr_open_or_sync(project, 42)).preview
    await orchestrator.handle_pr_closed(project, 42)
    reopened = (await orchestrator.handle_pr_open_or_sync(project, 42)).preview

    assert reopened["id"] == opened["id"]
    assert reopened["status"] == "live"
    assert len(await database.list_previews(project["id"])) == 1


async def test_rebuild_after_error_reuses_row(db, orchestrator, engine):
    _, project = await _setup()
    engine.fail_build = True
    failed = (await orchestrator.handle_pr_open_or_sync(project, 42)).preview
    engine.fail_build = False

    rebuilt = (await orchestrator.rebuild(failed)).preview

    assert rebuilt["id"] == failed["id"]
    assert rebuilt["status"] == "live"
    assert_live_fields_consistent(rebuilt)


async def test_double_rebuild_leaves_one_container(db, orchestrator, engine):
    _, project = await _setup(Tier.PRO)
    live = (await orchestrator.handle_pr_open_or_sync(project, 7)).preview

    results = await asyncio.gather(orchestrator.rebuild(live), orchestrator.rebuild(live))

    assert all(r.ok for r in results)
    final = await database.get_preview(live["id"])
    assert final["status"] == "live"
    assert list(engine.containers) == [live["container_name"]]
    assert final["port"] == live["port"]
    assert engine.run_calls == 3


async def test_live_quota_blocks_second_pr_on_free(db, orchestrator):
    _, project = await _setup(Tier.FREE)
    await orchestrator.handle_pr_open_or_sync(project, 1)

    with pytest.raises(QuotaExceeded):
        await orchestrator.handle_pr_open_or_sync(project, 2)
    assert await database.get_preview_by_pr(project["id"], 2) is None


async def test_free_tier_port_comes_from_free_pool(db, orchestrator):
    _, project = await _setup(Tier.FREE)
    preview = (await orchestrator.handle_pr_open_or_sync(project, 1)).preview
    assert preview["port"] in get_tier_limits(Tier.FREE).port_pool


async def test_teardown_project(db, orchestrator, engine):
    _, project = await _setup(Tier.PRO)
    await orchestrator.handle_pr_open_or_sync(project, 1)
    await orchestrator.handle_pr_open_or_sync(project, 2)

    assert await orchestrator.teardown_project(project) == 2
    assert engine.containers == {}
    statuses = {p["status"] for p in await database.list_previews(project["id"])}
    assert statuses == {"deleted"}


async def test_recover_after_restart(db, orchestrator, engine, ports):
    _, project = await _setup()
    stuck = await database.upsert_preview(project["id"], 1, status="building", build_logs="Cloning\n")
    stuck_name = resource_name("acme", "widgets", 1, project["id"])
    engine.containers[stuck_name] = {"host_port": 5002}
    engine.images.add(stuck_name)
    live = await database.upsert_preview(
        project["id"], 2, status="live", url="http://localhost:5001", container_name="c", port=5001,
    )
    engine.containers["c"] = {"host_port": 5001}
    vanished = await database.upsert_preview(
        project["id"], 3, status="live", url="http://localhost:5003", container_name="gone", port=5003,
    )

    await orchestrator.recover()

    stuck = await database.get_preview(stuck["id"])
    assert stuck["status"] == "error"
    assert "interrupted" in stuck["build_logs"]
    assert stuck_name not in engine.containers
    assert stuck_name not in engine.images

    assert (await database.get_preview(live["id"]))["status"] == "live"
    assert ports.owner_of(5001) == port_owner(live)

    vanished = await database.get_preview(vanished["id"])
    assert vanished["status"] == "error"
    assert_live_fields_consistent(vanished)
    assert "disappeared" in vanished["build_logs"]
    assert ports.owner_of(5003) is None


async def test_preview_locks_are_dropped_when_idle(db, orchestrator, engine):
    _, project = await _setup()
    live = (await orchestrator.handle_pr_open_or_sync(project, 1)).preview
    await orchestrator.handle_container_gone(live["container_name"], "was removed")
    await orchestrator.handle_pr_closed(project, 1)

    assert orchestrator._preview_locks == {}
    assert orchestrator.quota._locks == {}


async def test_preview_lock_survives_while_awaited(db, orchestrator):
    entered = asyncio.Event()
    release = asyncio.Event()

    async def holder():
        async with orchestrator._preview_lock("1:1"):
            entered.set()
            await release.wait()

    async def waiter():
        async with orchestrator._preview_lock("1:1"):
            pass

    first = asyncio.create_task(holder())
    await entered.wait()
    second = asyncio.create_task(waiter())
    await asyncio.sleep(0)
    assert orchestrator.is_busy(1, 1)

    release.set()
    await asyncio.gather(first, second)
    assert orchestrator._preview_locks == {}


async def test_container_removed_externally(db, orchestrator, engine, ports):
    _, project = await _setup()
    live = (await orchestrator.handle_pr_open_or_sync(project, 3)).preview
    engine.containers.clear()

    await handle_event(orchestrator, {
        "Action": "destroy",
        "Actor": {"Attributes": {"name": live["container_name"]}},
    })

    preview = await database.get_preview(live["id"])
    assert preview["status"] == "error"
    assert_live_fields_consistent(preview)
    assert ports.owner_of(live["port"]) is None


async def test_container_event_ignored_when_container_still_exists(db, orchestrator):
    _, project = await _setup()
    live = (await orchestrator.handle_pr_open_or_sync(project, 3)).preview

    assert await orchestrator.handle_container_gone(live["container_name"], "was removed") is None
    await handle_event(orchestrator, {"Action": "die", "Actor": {"Attributes": {"name": live["container_name"]}}})

    assert (await database.get_preview(live["id"]))["status"] == "live"

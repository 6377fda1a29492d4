"""
Tests for the status broadcaster.
"""
from app.broadcaster import StatusBroadcaster, preview_payload

from conftest import RecordingSocket

PREVIEW = {
    "id": 3,
    "project_id": 1,
    "pr_number": 42,
    "status": "live",
    "url": "http://localhost:5000",
    "container_name": "acme-widgets-pr-42-p1",
    "port": 5000,
    "build_started_at": "2024-01-01T00:00:00+00:00",
    "build_completed_at": "2024-01-01T00:01:00+00:00",
    "build_logs": "very long",
}


class BrokenSocket(RecordingSocket):
    async def send_json(self, data):
        raise RuntimeError("socket closed")


def test_payload_omits_logs():
    payload = preview_payload(PREVIEW)
    assert payload["previewId"] == 3
    assert payload["containerName"] == "acme-widgets-pr-42-p1"
    assert "build_logs" not in payload and "logs" not in payload


async def test_status_reaches_both_scopes():
    broadcaster = StatusBroadcaster()
    preview_sock, account_sock, stranger = RecordingSocket(), RecordingSocket(), RecordingSocket()
    await broadcaster.subscribe_preview(3, preview_sock)
    broadcaster.subscribe_account(7, account_sock)
    broadcaster.subscribe_account(8, stranger)

    await broadcaster.status(7, PREVIEW)

    assert preview_sock.messages == [{"type": "status", "preview": preview_payload(PREVIEW)}]
    assert account_sock.messages == [{"type": "preview-status-update", "preview": preview_payload(PREVIEW)}]
    assert stranger.messages == []


async def test_late_subscriber_gets_buffered_log_until_finished():
    broadcaster = StatusBroadcaster()
    broadcaster.begin_build(3)
    await broadcaster.log(3, "one\n")
    await broadcaster.log(3, "two\n")

    late = RecordingSocket()
    await broadcaster.subscribe_preview(3, late)
    await broadcaster.log(3, "three\n")
    await broadcaster.finished(3, "http://localhost:5000")

    assert [m.get("chunk") for m in late.of_type("log")] == ["one\n", "two\n", "three\n"]
    assert late.messages[-1] == {"type": "finished", "previewId": 3, "url": "http://localhost:5000"}

    after = RecordingSocket()
    await broadcaster.subscribe_preview(3, after)
    assert after.messages == []


async def test_failing_subscriber_is_dropped():
    broadcaster = StatusBroadcaster()
    good, bad = RecordingSocket(), BrokenSocket()
    await broadcaster.subscribe_preview(3, good)
    await broadcaster.subscribe_preview(3, bad)

    await broadcaster.error(3, "Image build failed")

    assert good.messages == [{"type": "error", "previewId": 3, "message": "Image build failed"}]
    assert broadcaster.subscriber_count(preview_id=3) == 1


async def test_close_disconnects_everyone_and_silences_publishing():
    broadcaster = StatusBroadcaster()
    a, b = RecordingSocket(), RecordingSocket()
    await broadcaster.subscribe_preview(3, a)
    broadcaster.subscribe_account(7, b)

    await broadcaster.close()
    await broadcaster.status(7, PREVIEW)

    assert a.closed and b.closed
    assert a.messages == [] and b.messages == []
    assert broadcaster.subscriber_count() == 0


async def test_unsubscribe():
    broadcaster = StatusBroadcaster()
    sock = RecordingSocket()
    broadcaster.subscribe_account(7, sock)
    broadcaster.unsubscribe_account(7, sock)
    await broadcaster.status(7, PREVIEW)
    assert sock.messages == []

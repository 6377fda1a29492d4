"""
Tests for the shallow git fetcher.
"""
import tempfile
from unittest.mock import AsyncMock

import pytest

from app.errors import FetchFailed
from app.source import SourceFetcher, remove_workdir


@pytest.fixture
def tmp_tempdir(tmp_path, monkeypatch):
    monkeypatch.setattr(tempfile, "tempdir", str(tmp_path))
    return tmp_path


async def test_fetch_checks_out_requested_ref(tmp_tempdir):
    fetcher = SourceFetcher(base_url="https://github.example.com/")
    fetcher._git = AsyncMock(return_value="")

    workdir = await fetcher.fetch("acme", "widgets", "abc123")

    calls = [c.args for c in fetcher._git.call_args_list]
    assert calls[0] == ("clone", "--depth", "1", "--no-tags", "https://github.example.com/acme/widgets.git", str(workdir))
    assert calls[1] == ("fetch", "--depth", "1", "origin", "abc123")
    assert calls[2] == ("checkout", "--detach", "FETCH_HEAD")
    assert workdir.is_dir()
    assert workdir.parent == tmp_tempdir
    remove_workdir(workdir)
    assert not workdir.exists()


async def test_fetch_without_ref_only_clones(tmp_tempdir):
    fetcher = SourceFetcher()
    fetcher._git = AsyncMock(return_value="")

    workdir = await fetcher.fetch("acme", "widgets")

    assert fetcher._git.await_count == 1
    remove_workdir(workdir)


async def test_failed_fetch_removes_its_directory(tmp_tempdir):
    fetcher = SourceFetcher()
    fetcher._git = AsyncMock(side_effect=["", FetchFailed("git fetch failed: couldn't find remote ref nope")])

    with pytest.raises(FetchFailed):
        await fetcher.fetch("acme", "widgets", "nope")

    assert list(tmp_tempdir.iterdir()) == []


async def test_unreachable_remote_is_fetch_failed(tmp_tempdir, tmp_path):
    fetcher = SourceFetcher(base_url=str(tmp_path / "nowhere"), timeout=30)

    with pytest.raises(FetchFailed):
        await fetcher.fetch("acme", "widgets")

    assert not any(p.name.startswith("pr-build-") for p in tmp_tempdir.iterdir())


def test_remove_workdir_tolerates_missing(tmp_path):
    remove_workdir(tmp_path / "gone")

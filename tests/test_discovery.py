import json
from pathlib import Path
from types import SimpleNamespace

import pytest
import yt_dlp

from youtube_sync_coordinator.discovery import VideoDiscovery
from youtube_sync_coordinator.failures import SyncError
from youtube_sync_coordinator.identity_pool import IdentityPool
from youtube_sync_coordinator.sync_job import DiscoveredVideo, MockedPublishedVideo
from youtube_sync_coordinator.synced_video import VideoSyncRecord

from conftest import FakeStore


class FakeYoutubeDL:
    """Context-manager stand-in for yt_dlp.YoutubeDL serving scripted info dicts per video id."""

    script = {}
    opened = []

    def __init__(self, opts):
        self.opts = opts
        FakeYoutubeDL.opened.append(opts)


    def __enter__(self):
        return self


    def __exit__(self, *exc_info):
        return False


    def extract_info(self, url, download=True):
        video_id = url.rsplit('=', 1)[-1]
        steps = FakeYoutubeDL.script[video_id]
        step = steps.pop(0) if len(steps) > 1 else steps[0]
        if isinstance(step, str):
            raise yt_dlp.utils.DownloadError(step)
        return dict(step)


    def sanitize_info(self, info):
        return info


def info(video_id, timestamp, title=None):
    return {'id': video_id, 'title': title or f"Video {video_id}", 'timestamp': timestamp, 'duration': 120}


def listing(tabs):
    """fetch_lines stub answering per channel tab; a string entry is raised as a SyncError."""
    requests = []

    def fetch_lines(args, channel_id, cancel_event=None):
        requests.append(args)
        tab = args[1].rsplit('/', 1)[-1]
        answer = tabs.get(tab, [])
        if isinstance(answer, str):
            raise SyncError(answer)
        return list(answer)

    return SimpleNamespace(fetch_lines=fetch_lines, requests=requests)


@pytest.fixture(autouse=True)
def fake_ydl():
    FakeYoutubeDL.script = {}
    FakeYoutubeDL.opened = []
    return FakeYoutubeDL


@pytest.fixture
def pool():
    return IdentityPool(address_provider=lambda: ["10.0.0.1", "10.0.0.2"], cooldown_seconds=0)


def make_discovery(config, downloader, pool, store=None):
    return VideoDiscovery(config, downloader, pool, store or FakeStore(), ydl_factory=FakeYoutubeDL)


def test_list_video_ids_covers_every_tab(config, pool):
    downloader = listing({
        'videos': ["v1aaaa", "v2aaaa", "v3aaaa"],
        'shorts': "ERROR: This channel does not have a shorts tab",
        'streams': ["s1aaaa", ""],
    })

    ids = make_discovery(config, downloader, pool).list_video_ids("UC123", 2)

    assert ids == ["v1aaaa", "v2aaaa", "s1aaaa"]
    assert len(downloader.requests) == 3
    assert downloader.requests[0][downloader.requests[0].index("--playlist-end") + 1] == "2"


def test_list_video_ids_propagates_other_errors(config, pool):
    downloader = listing({'videos': "ERROR: HTTP Error 403: Forbidden"})

    with pytest.raises(SyncError):
        make_discovery(config, downloader, pool).list_video_ids("UC123", 10)


def test_fetch_video_info_writes_the_metadata_file(config, pool, fake_ydl):
    fake_ydl.script = {"abcdef": [info("abcdef", 100)]}

    result = make_discovery(config, listing({}), pool).fetch_video_info("abcdef")

    assert result['title'] == "Video abcdef"
    saved = Path(config.video_metadata_dir) / "abcdef.info.json"
    assert json.loads(saved.read_text(encoding='utf-8'))['id'] == "abcdef"
    opts = fake_ydl.opened[0]
    assert opts['skip_download'] and opts['source_address'] in ("10.0.0.1", "10.0.0.2")
    assert 'cookiefile' not in opts


def test_fetch_video_info_rotates_identity_on_throttle(make_config, pool, fake_ydl):
    config = make_config(download_attempts=1)
    fake_ydl.script = {"abcdef": ["ERROR: HTTP Error 429: Too Many Requests", info("abcdef", 100)]}

    make_discovery(config, listing({}), pool).fetch_video_info("abcdef")

    throttled = [identity.address for identity in pool.snapshot() if identity.throttled]
    assert throttled == [fake_ydl.opened[0]['source_address']]
    assert fake_ydl.opened[1]['source_address'] != throttled[0]
    assert all(not identity.in_use for identity in pool.snapshot())


def test_fetch_video_info_gives_up_after_the_attempt_budget(make_config, pool, fake_ydl):
    config = make_config(download_attempts=2)
    fake_ydl.script = {"abcdef": ["ERROR: [youtube] abcdef: Video unavailable"]}

    with pytest.raises(SyncError) as excinfo:
        make_discovery(config, listing({}), pool).fetch_video_info("abcdef")

    assert "Video unavailable" in str(excinfo.value)
    assert len(fake_ydl.opened) == 2


def test_videos_to_sync_builds_sorted_jobs(config, pool, fake_ydl):
    downloader = listing({'videos': ["newer1", "private", "listed", "broken", "abc", "older1"]})
    fake_ydl.script = {
        "newer1": [info("newer1", 200)],
        "older1": [info("older1", 100)],
        "broken": ["ERROR: [youtube] broken: Video unavailable"],
    }
    synced = {
        "private": VideoSyncRecord("private", failure_reason="Private video"),
        "listed": VideoSyncRecord("listed", published=True, metadata_version=2),
        "vanished": VideoSyncRecord("vanished", published=True, metadata_version=2),
    }
    store = FakeStore()

    jobs = make_discovery(config, downloader, pool, store).videos_to_sync("UC123", synced, 50)

    assert [job.video_id for job in jobs] == ["vanished", "older1", "newer1"]
    assert isinstance(jobs[0], MockedPublishedVideo)
    assert isinstance(jobs[1], DiscoveredVideo)
    assert jobs[1].playlist_position == 4
    assert jobs[2].playlist_position == 0
    assert [(status.video_id, status.status) for status in store.marked] == [("broken", "failed")]
    assert len(fake_ydl.opened) == 2 + config.download_attempts


def test_published_videos_are_refetched_for_upgrades(make_config, pool, fake_ydl):
    config = make_config(upgrade_metadata=True)
    fake_ydl.script = {"listed": [info("listed", 100)]}
    synced = {"listed": VideoSyncRecord("listed", published=True, metadata_version=1)}

    jobs = make_discovery(config, listing({'videos': ["listed"]}), pool).videos_to_sync("UC123", synced, 50)

    assert [job.video_id for job in jobs] == ["listed"]
    assert isinstance(jobs[0], DiscoveredVideo)


def test_last_uploaded_video_is_added_first(config, pool, fake_ydl):
    fake_ydl.script = {"recent": [info("recent", 300)], "lastup": [info("lastup", 50)]}

    jobs = make_discovery(config, listing({'videos': ["recent"]}), pool).videos_to_sync(
        "UC123", {}, 50, last_uploaded_video="lastup",
    )

    assert [(job.video_id, job.playlist_position) for job in jobs] == [("lastup", 0), ("recent", 0)]


def test_quick_sync_caps_the_listing(make_config, pool):
    downloader = listing({})
    config = make_config(quick_sync=True, quick_sync_limit=5)

    make_discovery(config, downloader, pool).videos_to_sync("UC123", {}, 500)

    assert all(args[args.index("--playlist-end") + 1] == "5" for args in downloader.requests)

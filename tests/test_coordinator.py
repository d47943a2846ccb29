"""Tests for the sync coordinator: full cycles, change detection, offline
fallback, retries and timer ownership."""

import asyncio
import os
from datetime import datetime

import pytest

from conftest import FakeDisplay, FakeTimers, asset_payload, make_response, settle
from signage_player.models.errors import NetworkError
from signage_player.models.machine import DeviceIdentity, PlayerConfig
from signage_player.scheduler.rotation import RotationScheduler, RotationState
from signage_player.sync.coordinator import PlayerStatus, SyncCoordinator, SyncOutcome
from signage_player.system_works.cache import AssetCache

MONDAY_NOON = datetime(2024, 5, 6, 12, 0, 0)

PLAYLIST = {"id": "1", "name": "Lobby", "is_default": True, "assets": [
    asset_payload("http://cdn/a.jpg", name="a", playing_order="1"),
    asset_payload("http://cdn/b.mp4", filetype="mp4", name="b", playing_order="2"),
    asset_payload("https://example.com/news", filetype="url", name="news", playing_order="3"),
]}


class FakeFetcher:
    def __init__(self, response=None, error=None):
        self.response = response if response is not None else make_response(PLAYLIST)
        self.error = error
        self.calls = []
        self.gate = None

    async def __call__(self, url, device_id, *, timeout=None, user_agent=None):
        self.calls.append(device_id)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.response


class FakeProbe:
    def __init__(self, online=True):
        self.online = online
        self.calls = 0

    async def __call__(self, url, *, retries=None, timeout=None, user_agent=None):
        self.calls += 1
        return self.online


class FakeDownloader:
    def __init__(self):
        self.calls = []

    async def __call__(self, url, path, *, timeout=None, user_agent=None):
        self.calls.append(url)
        with open(path, "wb") as file:
            file.write(url.encode())
        return 200


class Player:
    """Everything a coordinator needs, wired with fakes."""

    def __init__(self, tmp_path, fetcher=None, probe=None, **config):
        config.setdefault("retry_delay", 0.01)
        config.setdefault("retry_delay_max", 0.05)
        config.setdefault("offline_retry_delay", 10)
        config.setdefault("max_retries", 2)
        config.setdefault("check_interval", 3600)
        self.config = PlayerConfig(cache_dir=str(tmp_path / "cache"),
                                   data_dir=str(tmp_path / "data"),
                                   device_name="Lobby TV", **config)
        self.display = FakeDisplay()
        self.timers = FakeTimers()
        self.downloader = FakeDownloader()
        self.fetcher = fetcher or FakeFetcher()
        self.probe = probe or FakeProbe()
        self.rotation = RotationScheduler(self.display, call_later=self.timers)
        self.cache = AssetCache(self.config.cache_dir, downloader=self.downloader)
        self.coordinator = SyncCoordinator(
            self.config, self.display,
            identity=DeviceIdentity(self.config.data_dir, self.config.device_name),
            cache=self.cache,
            rotation=self.rotation,
            fetch_playlist=self.fetcher,
            check_connection=self.probe,
            clock=lambda: MONDAY_NOON,
        )


@pytest.fixture
def player(tmp_path):
    return Player(tmp_path)


def names(assets):
    return [asset.name for asset in assets]


class TestOnlineCycle:

    @pytest.mark.asyncio
    async def test_first_cycle_caches_and_starts_rotation(self, player):
        outcome = await player.coordinator.sync_once()

        assert outcome is SyncOutcome.UPDATED
        assert player.coordinator.status is PlayerStatus.PLAYING
        assert player.fetcher.calls == ["lobby_tv"]
        assert player.downloader.calls == ["http://cdn/a.jpg", "http://cdn/b.mp4"]
        assert names(player.rotation.assets) == ["a", "b", "news"]
        assert player.rotation.state is RotationState.SHOWING
        assert names(player.display.shown) == ["a"]
        assert names(await player.cache.load_manifest()) == ["a", "b", "news"]

    @pytest.mark.asyncio
    async def test_identical_payload_is_idempotent(self, player):
        await player.coordinator.sync_once()
        await player.rotation.advance()
        timers_before = len(player.timers.timers)

        outcome = await player.coordinator.sync_once()

        assert outcome is SyncOutcome.UNCHANGED
        assert len(player.downloader.calls) == 2
        assert player.rotation.current_index == 1
        assert names(player.display.shown) == ["a", "b"]
        assert len(player.timers.timers) == timers_before

    @pytest.mark.asyncio
    async def test_changed_payload_restarts_rotation(self, player):
        await player.coordinator.sync_once()
        old_path = player.rotation.assets[0].path
        player.fetcher.response = make_response({"is_default": True, "assets": [
            asset_payload("http://cdn/c.jpg", name="c"),
        ]})

        outcome = await player.coordinator.sync_once()

        assert outcome is SyncOutcome.UPDATED
        assert names(player.rotation.assets) == ["c"]
        assert player.rotation.current_index == 0
        assert names(await player.cache.load_manifest()) == ["c"]
        assert not os.path.exists(old_path)

    @pytest.mark.asyncio
    async def test_restart_flag_clears_cache(self, player):
        await player.coordinator.sync_once()
        player.fetcher.response = make_response(PLAYLIST, restarting=True)

        outcome = await player.coordinator.sync_once()

        assert outcome is SyncOutcome.UPDATED
        # the cleared media is fetched again even though the playlist is the same
        assert len(player.downloader.calls) == 4
        assert names(await player.cache.load_manifest()) == ["a", "b", "news"]
        assert all(os.path.exists(asset.path) for asset in player.rotation.assets
                   if asset.kind.value != "web")

    @pytest.mark.asyncio
    async def test_restart_flag_clears_device_identity(self, player):
        await player.coordinator.sync_once()
        id_file = os.path.join(player.config.data_dir, "device.json")
        assert os.path.exists(id_file)
        player.fetcher.response = make_response(PLAYLIST, restarting=True)

        await player.coordinator.sync_once()

        assert not os.path.exists(id_file)
        player.fetcher.response = make_response(PLAYLIST)
        assert await player.coordinator.sync_once() is SyncOutcome.UNCHANGED
        assert player.fetcher.calls == ["lobby_tv"] * 3
        assert os.path.exists(id_file)

    @pytest.mark.asyncio
    async def test_prune_error_does_not_fail_update(self, player):
        async def broken_prune(keep):
            raise PermissionError("read-only cache")

        player.cache.prune = broken_prune

        assert await player.coordinator.sync_once() is SyncOutcome.UPDATED
        assert player.coordinator.status is PlayerStatus.PLAYING
        assert not player.coordinator.retry_pending
        assert player.coordinator.retry_count == 0

    @pytest.mark.asyncio
    async def test_partially_failed_batch_still_plays(self, player):
        async def flaky(url, path, **kwargs):
            if url.endswith(".mp4"):
                return 503
            return await FakeDownloader()(url, path)

        player.cache._downloader = flaky

        assert await player.coordinator.sync_once() is SyncOutcome.UPDATED
        assert names(player.rotation.assets) == ["a", "news"]


class TestOfflineCycle:

    @pytest.mark.asyncio
    async def test_offline_replays_manifest_without_fetching(self, tmp_path):
        online = Player(tmp_path)
        await online.coordinator.sync_once()

        offline = Player(tmp_path, probe=FakeProbe(online=False))
        outcome = await offline.coordinator.sync_once()

        assert outcome is SyncOutcome.OFFLINE
        assert offline.coordinator.status is PlayerStatus.OFFLINE
        assert offline.fetcher.calls == []
        assert offline.downloader.calls == []
        assert names(offline.rotation.assets) == ["a", "b", "news"]
        assert offline.coordinator.reconnect_pending
        await offline.coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_offline_skips_deleted_files(self, tmp_path):
        online = Player(tmp_path)
        await online.coordinator.sync_once()
        os.remove(online.rotation.assets[1].path)

        offline = Player(tmp_path, probe=FakeProbe(online=False))
        await offline.coordinator.sync_once()

        assert names(offline.rotation.assets) == ["a", "news"]
        await offline.coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_offline_without_cache_shows_error(self, tmp_path):
        player = Player(tmp_path, probe=FakeProbe(online=False))

        outcome = await player.coordinator.sync_once()

        assert outcome is SyncOutcome.FAILED
        assert player.coordinator.status is PlayerStatus.ERROR
        assert player.display.errors
        assert player.coordinator.reconnect_pending
        assert not player.coordinator.retry_pending
        assert player.coordinator.retry_count == 0
        await player.coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_reconnect_probe_resumes_online(self, tmp_path):
        player = Player(tmp_path, probe=FakeProbe(online=False), offline_retry_delay=0.01)
        await player.coordinator.sync_once()
        player.probe.online = True

        await asyncio.sleep(0.1)

        assert player.coordinator.status is PlayerStatus.PLAYING
        assert names(player.rotation.assets) == ["a", "b", "news"]
        await player.coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_reconnect_restores_asset_lost_while_offline(self, player):
        await player.coordinator.sync_once()
        os.remove(player.rotation.assets[1].path)
        player.probe.online = False
        assert await player.coordinator.sync_once() is SyncOutcome.OFFLINE
        assert names(player.rotation.assets) == ["a", "news"]

        player.probe.online = True
        outcome = await player.coordinator.sync_once()

        assert outcome is SyncOutcome.UPDATED
        assert names(player.rotation.assets) == ["a", "b", "news"]
        assert player.downloader.calls.count("http://cdn/b.mp4") == 2
        assert not player.coordinator.reconnect_pending
        await player.coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_no_reconnect_once_retries_exhausted(self, tmp_path):
        player = Player(tmp_path, probe=FakeProbe(online=False), offline_retry_delay=0.01)
        await player.coordinator.sync_once()
        assert player.coordinator.reconnect_pending
        player.coordinator.status = PlayerStatus.FAILED

        await asyncio.sleep(0.05)

        assert player.probe.calls == 1
        await player.coordinator.shutdown()


class TestFailures:

    @pytest.mark.asyncio
    async def test_fetch_error_schedules_retry(self, tmp_path):
        player = Player(tmp_path, fetcher=FakeFetcher(error=NetworkError("API Error: 500", 500)),
                        retry_delay=10)

        outcome = await player.coordinator.sync_once()

        assert outcome is SyncOutcome.FAILED
        assert player.coordinator.status is PlayerStatus.ERROR
        assert isinstance(player.coordinator.last_error, NetworkError)
        assert player.coordinator.retry_pending
        assert player.coordinator.retry_count == 1
        assert player.display.errors == ["API Error: 500"]
        await player.coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_retries_stop_at_maximum(self, tmp_path):
        player = Player(tmp_path, fetcher=FakeFetcher(error=NetworkError("down")))

        await player.coordinator.sync_once()
        await asyncio.sleep(0.3)

        assert player.coordinator.status is PlayerStatus.FAILED
        assert len(player.fetcher.calls) == 3
        assert not player.coordinator.retry_pending

    @pytest.mark.asyncio
    async def test_retry_delay_backs_off_with_cap(self, tmp_path):
        player = Player(tmp_path, retry_delay=60, retry_delay_max=300)
        delays = []
        for count in range(5):
            player.coordinator.retry_count = count
            delays.append(player.coordinator.retry_delay())
        assert delays == [60, 120, 240, 300, 300]

    @pytest.mark.asyncio
    async def test_no_valid_assets_is_retried_later(self, tmp_path):
        response = make_response({"is_default": True, "assets": [
            asset_payload("http://cdn/a.jpg", time="0"),
        ]})
        player = Player(tmp_path, fetcher=FakeFetcher(response=response), retry_delay=10)

        assert await player.coordinator.sync_once() is SyncOutcome.FAILED
        assert player.coordinator.retry_pending
        await player.coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_failure_keeps_last_good_content(self, player):
        await player.coordinator.sync_once()
        player.fetcher.error = NetworkError("timeout")

        assert await player.coordinator.sync_once() is SyncOutcome.FAILED

        assert player.rotation.state is RotationState.SHOWING
        assert names(player.rotation.assets) == ["a", "b", "news"]
        assert player.display.errors == []
        await player.coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_new_cycle_cancels_pending_retry(self, tmp_path):
        player = Player(tmp_path, fetcher=FakeFetcher(error=NetworkError("down")), retry_delay=10)
        await player.coordinator.sync_once()
        assert player.coordinator.retry_pending

        player.fetcher.error = None
        assert await player.coordinator.sync_once() is SyncOutcome.UPDATED

        assert not player.coordinator.retry_pending
        assert player.coordinator.retry_count == 0

    @pytest.mark.asyncio
    async def test_reset_after_failed(self, tmp_path):
        player = Player(tmp_path, fetcher=FakeFetcher(error=NetworkError("down")), max_retries=0)
        await player.coordinator.sync_once()
        assert player.coordinator.status is PlayerStatus.FAILED

        player.coordinator.reset_retries()

        assert player.coordinator.status is PlayerStatus.ERROR
        assert player.coordinator.retry_count == 0

    @pytest.mark.asyncio
    async def test_broken_error_screen_is_contained(self, tmp_path):
        player = Player(tmp_path, fetcher=FakeFetcher(error=NetworkError("down")), retry_delay=10)

        async def broken_error(message):
            raise RuntimeError("screen gone")

        player.display.show_error = broken_error

        assert await player.coordinator.sync_once() is SyncOutcome.FAILED
        assert player.coordinator.status is PlayerStatus.ERROR
        assert player.coordinator.retry_pending
        await player.coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_periodic_check_survives_broken_error_screen(self, tmp_path):
        player = Player(tmp_path, fetcher=FakeFetcher(error=NetworkError("down")),
                        max_retries=100, check_interval=0.02)

        async def broken_error(message):
            raise RuntimeError("screen gone")

        player.display.show_error = broken_error

        await player.coordinator.start()
        await asyncio.sleep(0.15)

        assert len(player.fetcher.calls) >= 3
        assert not player.coordinator._periodic_task.done()
        await player.coordinator.shutdown()


class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_overlapping_sync_is_skipped(self, player):
        player.fetcher.gate = asyncio.Event()
        first = asyncio.create_task(player.coordinator.sync_once())
        await settle()

        assert await player.coordinator.sync_once() is SyncOutcome.SKIPPED

        player.fetcher.gate.set()
        assert await first is SyncOutcome.UPDATED
        assert len(player.fetcher.calls) == 1


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_periodic_recheck(self, tmp_path):
        player = Player(tmp_path, check_interval=0.02)

        await player.coordinator.start()
        await asyncio.sleep(0.15)
        await player.coordinator.shutdown()

        assert len(player.fetcher.calls) >= 3
        assert len(player.downloader.calls) == 2

    @pytest.mark.asyncio
    async def test_shutdown_cancels_all_timers(self, tmp_path):
        player = Player(tmp_path, fetcher=FakeFetcher(error=NetworkError("down")), retry_delay=10)
        await player.coordinator.start()
        await settle()
        assert player.coordinator.retry_pending

        await player.coordinator.shutdown()

        assert not player.coordinator.retry_pending
        assert not player.coordinator.reconnect_pending
        assert player.rotation.state is RotationState.IDLE

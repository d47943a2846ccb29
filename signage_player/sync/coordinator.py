import asyncio
from datetime import datetime
from enum import Enum
from signage_player.api_requests import api_requests
from signage_player.models.assets import Asset
from signage_player.models.errors import OfflineNoCache, SignageError
from signage_player.models.machine import DeviceIdentity, PlayerConfig
from signage_player.scheduler.resolver import resolve_playlist
from signage_player.scheduler.rotation import DisplaySurface, RotationScheduler
from signage_player.system_works.cache import AssetCache
import logging

logger = logging.getLogger(__name__)


class PlayerStatus(Enum):

    STARTING = 'starting'
    PLAYING = 'playing'
    OFFLINE = 'offline'
    ERROR = 'error'  # цикл упал, ждем повтора
    FAILED = 'failed'  # попытки кончились, автоматически больше не пробуем

    def __str__(self):
        return self.value


class SyncOutcome(Enum):

    UPDATED = 'updated'
    UNCHANGED = 'unchanged'
    OFFLINE = 'offline'
    FAILED = 'failed'
    SKIPPED = 'skipped'

    def __str__(self):
        return self.value


class SyncCoordinator:
    '''Цикл синхронизации: связь -> плейлист -> выбор по расписанию ->
    кеш -> ротация. Повтор при ошибке, периодическая перепроверка,
    офлайн-режим из манифеста. Одновременно идет только один цикл'''

    def __init__(self, config: PlayerConfig, display: DisplaySurface, *,
                 identity: DeviceIdentity | None = None,
                 cache: AssetCache | None = None,
                 rotation: RotationScheduler | None = None,
                 fetch_playlist=None,
                 check_connection=None,
                 clock=datetime.now):
        self.config = config
        self.display = display
        self.identity = identity or DeviceIdentity(config.data_dir, config.device_name)
        self.cache = cache or AssetCache(config.cache_dir,
                                         timeout=config.request_timeout,
                                         user_agent=config.user_agent)
        self.rotation = rotation or RotationScheduler(display,
                                                      floor_seconds=config.min_asset_seconds,
                                                      watchdog_seconds=config.watchdog_seconds)
        self._fetch_playlist = fetch_playlist or api_requests.request_playlist
        self._check_connection = check_connection or api_requests.check_connection
        self._clock = clock

        self.status = PlayerStatus.STARTING
        self.last_error: SignageError | Exception | None = None
        self.retry_count = 0
        self._last_assets: list[Asset] | None = None
        self._sync_lock = asyncio.Lock()
        self._periodic_task: asyncio.Task | None = None
        self._retry_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None

    @property
    def retry_pending(self) -> bool:
        return self._retry_task is not None and not self._retry_task.done()

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    async def start(self):
        if self._periodic_task is None or self._periodic_task.done():
            self._periodic_task = asyncio.create_task(self._periodic_loop())

    async def shutdown(self):
        tasks = [task for task in (self._periodic_task, self._retry_task, self._reconnect_task)
                 if task is not None and task is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._periodic_task = self._retry_task = self._reconnect_task = None
        self.rotation.stop()
        logger.info('Sync coordinator stopped')

    def reset_retries(self):
        '''Ручной сброс после FAILED: счетчик в ноль, периодика снова работает'''

        self.retry_count = 0
        if self.status is PlayerStatus.FAILED:
            self.status = PlayerStatus.ERROR

    async def sync_once(self) -> SyncOutcome:
        if self._sync_lock.locked():
            logger.info('Sync already in progress, skipping')
            return SyncOutcome.SKIPPED

        async with self._sync_lock:
            self._cancel_pending()
            try:
                return await self._cycle()
            except SignageError as e:
                await self._handle_failure(e)
            except Exception as e:
                logger.exception(f'Unexpected sync error: {e!r}')
                await self._handle_failure(e)
            return SyncOutcome.FAILED

    async def _cycle(self) -> SyncOutcome:
        device_id = self.identity.get_device_id()
        logger.info(f'Sync cycle for device: {device_id}')

        online = await self._check_connection(self.config.probe_url,
                                              retries=self.config.probe_retries,
                                              timeout=self.config.probe_timeout,
                                              user_agent=self.config.user_agent)
        if not online:
            return await self._go_offline()

        response = await self._fetch_playlist(self.config.api_url, device_id,
                                              timeout=self.config.request_timeout,
                                              user_agent=self.config.user_agent)
        if response.functions.is_restarting:
            logger.warning('Restart flag detected - clearing local state')
            await self.cache.clear()
            self.identity.clear()
            self._last_assets = None

        assets = resolve_playlist(response, self._clock())

        if assets == self._last_assets and self.rotation.is_running:
            logger.info('Playlist unchanged, keeping current state')
            self._succeeded()
            return SyncOutcome.UNCHANGED

        logger.info(f'Playlist updated, caching {len(assets)} assets')
        local_assets = await self.cache.download_all(assets)
        await self.cache.save_manifest(local_assets, device_id)
        await self.rotation.replace(local_assets)
        self._last_assets = assets
        try:
            await self.cache.prune(local_assets)
        except OSError as e:
            # новый контент уже крутится, мусор уберем в следующий раз
            logger.warning(f'Cache prune failed: {e}')
        self._succeeded()
        return SyncOutcome.UPDATED

    async def _go_offline(self) -> SyncOutcome:
        logger.warning('No internet connection - attempting to use cached content')
        cached = await self.cache.load_manifest()
        # переподключение пробуем в любом случае, счетчик повторов не трогаем
        self._schedule_reconnect()
        if not cached:
            raise OfflineNoCache('No internet connection and no cached content available')

        logger.info(f'Using {len(cached)} cached assets (offline mode)')
        await self.rotation.replace(cached)
        # крутится не то, что пришло онлайн: после связи сравнивать не с чем
        self._last_assets = None
        self.status = PlayerStatus.OFFLINE
        self.last_error = None
        return SyncOutcome.OFFLINE

    def _succeeded(self):
        self.status = PlayerStatus.PLAYING
        self.last_error = None
        self.retry_count = 0

    async def _handle_failure(self, error: Exception):
        self.last_error = error
        logger.error(f'Failed to load content: {type(error).__name__}: {error}')

        if isinstance(error, OfflineNoCache):
            # повтор только через проверку связи, он уже запланирован
            self.status = PlayerStatus.ERROR
        elif self.retry_count >= self.config.max_retries:
            self.status = PlayerStatus.FAILED
            logger.error('Maximum retry attempts exceeded. Please check your network '
                         'connection and device configuration.')
        else:
            self.status = PlayerStatus.ERROR
            self._schedule_retry()

        if self.rotation.is_running:
            logger.info('Keeping existing content due to error')
            return
        try:
            await self.display.show_error(str(error))
        except Exception as e:
            logger.exception(f'Error screen failed: {e!r}')

    def retry_delay(self) -> float:
        return min(self.config.retry_delay * 2 ** self.retry_count, self.config.retry_delay_max)

    def _schedule_retry(self):
        delay = self.retry_delay()
        self.retry_count += 1
        logger.info(f'Scheduling retry {self.retry_count}/{self.config.max_retries} in {delay}s')
        self._retry_task = asyncio.create_task(self._sync_later(delay))

    def _schedule_reconnect(self):
        delay = self.config.offline_retry_delay
        logger.info(f'Reconnect probe in {delay}s')
        self._reconnect_task = asyncio.create_task(self._reconnect_later(delay))

    async def _sync_later(self, delay: float):
        await asyncio.sleep(delay)
        await self.sync_once()

    async def _reconnect_later(self, delay: float):
        # восстановление по связи - только пока попытки не исчерпаны
        await asyncio.sleep(delay)
        if self.status is PlayerStatus.FAILED:
            logger.info('Reconnect skipped - retries exhausted')
            return
        await self.sync_once()

    def _cancel_pending(self):
        current = asyncio.current_task()
        for task in (self._retry_task, self._reconnect_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._retry_task = self._reconnect_task = None

    async def _periodic_loop(self):
        while True:
            if self.status is PlayerStatus.FAILED:
                logger.info('Skipping periodic check - retries exhausted')
            else:
                try:
                    await self.sync_once()
                except Exception as e:
                    logger.exception(f'Periodic check failed: {e!r}')
            await asyncio.sleep(self.config.check_interval)

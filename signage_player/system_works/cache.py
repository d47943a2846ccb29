import asyncio
import hashlib
import os
import shutil
from time import time
import aiofiles
import aiohttp
from signage_player.api_requests import api_requests
from signage_player.models.assets import Asset, CacheManifest, ContentKind, LocalAsset
from signage_player.models.errors import (DownloadFailed, NoAssetsDownloaded,
                                          UnsupportedType)
from signage_player.system_works.logs import async_log_exception_wrapper
import logging


logger = logging.getLogger(__name__)

IMAGE_TYPES = frozenset(('jpg', 'jpeg', 'png', 'gif', 'webp', 'bmp'))
VIDEO_TYPES = frozenset(('mp4', 'webm', 'mov', 'mkv', 'm4v'))
WEB_TYPES = frozenset(('url', 'html', 'stream'))

# Живой контент не кешируем никогда, даже если он помечен как видео
STREAMING_MARKERS = ('twitch.tv', 'youtube.com', 'youtu.be', 'facebook.com/watch',
                     'instagram.com', '.m3u8', 'rtmp://', 'rtsp://')


def is_streaming_url(url: str) -> bool:
    url = url.lower()
    return any(marker in url for marker in STREAMING_MARKERS)


def classify(asset: Asset) -> ContentKind:
    filetype = asset.filetype.lower()
    if filetype in WEB_TYPES:
        return ContentKind.WEB
    if filetype in IMAGE_TYPES or filetype in VIDEO_TYPES:
        if is_streaming_url(asset.filepath):
            return ContentKind.WEB
        return ContentKind.IMAGE if filetype in IMAGE_TYPES else ContentKind.VIDEO
    raise UnsupportedType(asset.filetype, asset.filepath)


class AssetCache:
    '''Локальное хранилище медиа. Имя файла в кеше - md5 от адреса источника,
    поэтому один и тот же адрес никогда не качается дважды. Недокачанное лежит
    в downloading/ и переносится в кеш только целиком'''

    manifest_name = 'manifest.json'

    def __init__(self, cache_dir, *, downloader=None, timeout=30, user_agent=None):
        self.cache_dir = os.path.abspath(cache_dir)
        self.downloading_dir = os.path.join(self.cache_dir, 'downloading')
        self.manifest_path = os.path.join(self.cache_dir, self.manifest_name)
        self.timeout = timeout
        self.user_agent = user_agent or api_requests.DEFAULT_USER_AGENT
        self._downloader = downloader or api_requests.get_file
        self.async_events: dict[str, asyncio.Event] = {}
        self._make_dirs()

    def _make_dirs(self):
        if not os.path.exists(self.downloading_dir):
            os.makedirs(self.downloading_dir)

    def get_event(self, eventname: str) -> asyncio.Event:
        '''Проверяет или заводит событие для контроля доступа к объекту(файлу)
        инициирует и возвращает его'''

        if self.async_events.get(eventname, None) is None:
            self.async_events[eventname] = asyncio.Event()
            self.async_events[eventname].set()
        return self.async_events[eventname]

    def cache_filename(self, asset: Asset) -> str:
        md5hash = hashlib.md5(asset.filepath.encode('utf-8')).hexdigest()
        return f'{md5hash}.{asset.filetype.lower()}'

    def local_path(self, asset: Asset) -> str:
        return os.path.join(self.cache_dir, self.cache_filename(asset))

    async def resolve(self, asset: Asset) -> LocalAsset:
        kind = classify(asset)
        if kind is ContentKind.WEB:
            # web показываем вживую, в кеш не кладем
            return LocalAsset(kind=kind, path=asset.filepath,
                              duration=asset.duration, name=asset.name)

        path = await self._ensure_file(asset)
        return LocalAsset(kind=kind, path=path, duration=asset.duration, name=asset.name)

    async def _ensure_file(self, asset: Asset) -> str:
        filename = self.cache_filename(asset)
        dst_path = os.path.join(self.cache_dir, filename)

        # ниже механизм предотвращения одновременной закачки одного файла кеша
        file_handling_event = self.get_event(filename)
        waited = not file_handling_event.is_set()
        if waited:
            logger.info(f'Already downloading: {asset.filepath}, waiting')
            await file_handling_event.wait()

        if os.path.exists(dst_path):
            logger.debug(f'Asset cached: {filename}')
            return dst_path
        if waited:
            raise DownloadFailed(asset.filepath, reason='concurrent download failed')

        file_handling_event.clear()
        try:
            src_path = os.path.join(self.downloading_dir, filename)
            logger.info(f'Downloading: {asset.label} -> {filename}')
            try:
                status = await self._downloader(asset.filepath, src_path,
                                                timeout=self.timeout,
                                                user_agent=self.user_agent)
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
                raise DownloadFailed(asset.filepath, reason=f'{type(e).__name__}: {e}') from e
            if status not in (200, 206):
                raise DownloadFailed(asset.filepath, status=status)
            os.replace(src_path, dst_path)
        finally:
            file_handling_event.set()
        return dst_path

    @async_log_exception_wrapper
    async def _resolve_logged(self, asset: Asset) -> LocalAsset | None:
        try:
            return await self.resolve(asset)
        except (DownloadFailed, UnsupportedType) as e:
            logger.error(f'Failed to download {asset.filepath}: {e}')
            return None

    async def download_all(self, assets: list[Asset]) -> list[LocalAsset]:
        self._make_dirs()
        tasks = [asyncio.create_task(self._resolve_logged(asset)) for asset in assets]
        results = await asyncio.gather(*tasks)
        local_assets = [local for local in results if local is not None]

        if not local_assets:
            raise NoAssetsDownloaded('Failed to download any assets')
        logger.info(f'Successfully resolved {len(local_assets)}/{len(assets)} assets')
        return local_assets

    async def save_manifest(self, local_assets: list[LocalAsset], device_id: str):
        if not local_assets:
            raise ValueError('Refusing to save an empty manifest')

        manifest = CacheManifest(assets=local_assets,
                                 timestamp=int(time() * 1000),
                                 device_id=device_id)
        tmp_path = f'{self.manifest_path}.tmp'
        self._make_dirs()
        async with aiofiles.open(tmp_path, mode='w', encoding='utf-8') as manifest_json:
            await manifest_json.write(manifest.model_dump_json(by_alias=True, indent=2))
        # старый манифест заменяется только целиком
        os.replace(tmp_path, self.manifest_path)
        logger.info(f'Cache manifest saved with {len(local_assets)} assets')

    async def load_manifest(self) -> list[LocalAsset]:
        if not os.path.exists(self.manifest_path):
            logger.info('No cache manifest found')
            return []
        try:
            async with aiofiles.open(self.manifest_path, encoding='utf-8') as manifest_json:
                manifest = CacheManifest.model_validate_json(await manifest_json.read())
        except (OSError, ValueError) as e:
            # ValidationError тоже ValueError
            logger.warning(f'Error loading cached assets: {e}')
            return []

        valid_assets = []
        for local in manifest.assets:
            if local.kind is ContentKind.WEB or os.path.exists(local.path):
                valid_assets.append(local)
            else:
                logger.info(f'Cached file missing: {local.path}')

        logger.info(f'Found {len(valid_assets)} valid cached assets')
        return valid_assets

    async def prune(self, keep: list[LocalAsset]) -> list[str]:
        '''Удаляет из кеша файлы, на которые больше не ссылается манифест'''

        keep_paths = {os.path.abspath(local.path) for local in keep
                      if local.kind is not ContentKind.WEB}
        keep_paths.add(self.manifest_path)
        removed = []
        for name in os.listdir(self.cache_dir):
            path = os.path.join(self.cache_dir, name)
            if path in keep_paths or not os.path.isfile(path):
                continue
            os.remove(path)
            removed.append(path)
        if removed:
            logger.info(f'Pruned {len(removed)} stale cache files')
        return removed

    async def clear(self):
        logger.info('Clearing cache directory ...')
        shutil.rmtree(self.cache_dir, ignore_errors=True)
        self.async_events.clear()
        self._make_dirs()
        logger.info('Cache directory created')

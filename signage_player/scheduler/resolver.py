from datetime import datetime
from signage_player.models.api_collections import WEEKDAYS, PlaylistRecord, PlaylistResponse
from signage_player.models.assets import Asset
from signage_player.models.errors import EmptyPlaylistSet, NoValidAssets
import logging

logger = logging.getLogger(__name__)


def is_playlist_active(playlist: PlaylistRecord, now: datetime) -> bool:
    '''Проверка расписания плейлиста: даты -> день недели -> время суток.
    Незаданная граница не ограничивает'''

    today = now.date()
    if playlist.startdate is not None and today < playlist.startdate:
        return False
    if playlist.enddate is not None and today > playlist.enddate:
        return False

    if playlist.weekdays and WEEKDAYS[now.weekday()] not in playlist.weekdays:
        return False

    current_time = now.strftime('%H:%M:%S')
    if playlist.starttime is not None and current_time < playlist.starttime:
        return False
    if playlist.endtime is not None and current_time > playlist.endtime:
        return False

    return True


def select_playlist(response: PlaylistResponse, now: datetime) -> PlaylistRecord:
    if not response.playlists:
        raise EmptyPlaylistSet('No playlists found in API response')

    # первый подходящий, а не лучший
    active = next((playlist for playlist in response.playlists
                   if not playlist.is_default and is_playlist_active(playlist, now)), None)
    if active is None:
        active = next((playlist for playlist in response.playlists if playlist.is_default),
                      response.playlists[0])
    logger.info(f'Using playlist: {active.title}')
    return active


def resolve_playlist(response: PlaylistResponse, now: datetime | None = None) -> list[Asset]:
    if now is None:
        now = datetime.now()
    playlist = select_playlist(response, now)

    valid = [record for record in playlist.assets
             if record.filepath and record.time is not None and record.time > 0]
    skipped = len(playlist.assets) - len(valid)
    if skipped:
        logger.warning(f'Skipped {skipped} assets without filepath or duration')

    # sorted стабилен: одинаковый playing_order сохраняет порядок сервера
    valid = sorted(valid, key=lambda record: record.playing_order)
    assets = [Asset(filepath=record.filepath,
                    filetype=record.filetype,
                    duration=record.time,
                    name=record.name,
                    playing_order=record.playing_order)
              for record in valid]

    if not assets:
        raise NoValidAssets(f'No valid assets found in playlist {playlist.title}')
    logger.info(f'Loaded {len(assets)} assets successfully')
    return assets

import asyncio
import json
import os
import aiofiles
import aiohttp
from pydantic import ValidationError
from signage_player.models.api_collections import PlaylistResponse
from signage_player.models.errors import NetworkError, PayloadError
import logging

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = 'SignageApp/2.0 (Linux Player)'


async def get_file(
        url,
        downloading_path,
        *,
        chunk_write_size=64 * 1024,
        timeout=30,
        user_agent=DEFAULT_USER_AGENT) -> int:
    '''Качаем файл в downloading_path. Если там уже лежит кусок от прошлой
    попытки - докачиваем через Range. Возвращает http статус, файл считается
    скачанным только при 200 или 206'''

    resume_mode = os.path.exists(downloading_path)
    resume_byte_pos = os.path.getsize(downloading_path) if resume_mode else 0
    headers = {'User-Agent': user_agent}
    if resume_byte_pos:
        headers['Range'] = f'bytes={resume_byte_pos}-'

    # total не ставим: большое видео может качаться дольше любого разумного лимита
    client_timeout = aiohttp.ClientTimeout(total=None, sock_connect=timeout, sock_read=timeout)
    async with aiohttp.ClientSession(timeout=client_timeout) as session:
        async with session.get(url, headers=headers) as response:

            if response.status // 100 != 2:
                logger.warning(f'No such file: {url}, status: {response.status}')
                if response.status == 416 and os.path.exists(downloading_path):
                    # кусок битый или больше самого файла, начнем заново в следующий раз
                    os.remove(downloading_path)
                return response.status

            mode = 'ab' if response.status == 206 and resume_byte_pos else 'wb'
            if resume_byte_pos and mode == 'wb':
                logger.info(f'Server ignored Range, restarting download: {url}')
            async with aiofiles.open(downloading_path, mode) as file:
                async for chunk in response.content.iter_chunked(chunk_write_size):
                    await file.write(chunk)
            logger.info(f'Download completed: {url}')
            return response.status


async def request_playlist(url, device_id, *, timeout=30,
                           user_agent=DEFAULT_USER_AGENT) -> PlaylistResponse:

    _headers = {'Content-Type': 'application/json',
                'Cache-Control': 'no-cache',
                'User-Agent': user_agent}

    logger.info(f'Fetching playlist from: {url}?id={device_id}')
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.get(url,
                                   headers=_headers,
                                   params={'id': device_id},
                                   allow_redirects=True) as response:

                if response.status // 100 != 2:
                    raise NetworkError(f'API Error: {response.status} {response.reason}',
                                       status=response.status)
                # php отдает json с text/html, content_type не проверяем
                data = await response.json(content_type=None)
    except asyncio.TimeoutError as e:
        raise NetworkError('Request timeout - check network connection') from e
    except json.JSONDecodeError as e:
        raise PayloadError(f'Response is not json: {e}') from e
    except aiohttp.ClientError as e:
        raise NetworkError(f'{type(e).__name__}: {e}') from e

    if not isinstance(data, dict):
        raise PayloadError(f'Unexpected response: {type(data).__name__}')
    try:
        return PlaylistResponse.model_validate(data)
    except ValidationError as e:
        raise PayloadError(f'Malformed playlist response: {e}') from e


async def check_connection(url, *, retries=3, timeout=5,
                           user_agent=DEFAULT_USER_AGENT) -> bool:
    '''Легкая проверка связи HEAD запросом. Своя пауза между попытками:
    1, 2, 4... секунд, не больше 5'''

    for attempt in range(retries):
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
                async with session.head(url,
                                        headers={'User-Agent': user_agent},
                                        allow_redirects=True) as response:
                    if 200 <= response.status < 400:
                        return True
                    logger.info(f'Connectivity check failed with status: {response.status}')
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.info(f'Connectivity check attempt {attempt + 1}/{retries} failed: {e!r}')

        if attempt < retries - 1:
            await asyncio.sleep(min(2 ** attempt, 5))

    logger.warning('No internet connection after retries')
    return False

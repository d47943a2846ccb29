import asyncio
from dataclasses import dataclass
from enum import Enum
from time import monotonic
from typing import Protocol
from signage_player.models.assets import LocalAsset
import logging

logger = logging.getLogger(__name__)


class RotationState(Enum):

    IDLE = 'idle'
    SHOWING = 'showing'
    TRANSITIONING = 'transitioning'

    def __str__(self):
        return self.value


class DisplaySurface(Protocol):
    '''Экран. О неудачном показе сообщает через
    RotationScheduler.report_render_failure(index), либо бросает исключение
    прямо из show'''

    async def show(self, asset: LocalAsset) -> None: ...

    async def show_error(self, message: str) -> None: ...


@dataclass
class PlaybackState:

    current_index: int = 0
    is_transitioning: bool = False
    timer: asyncio.TimerHandle | None = None
    shown_at: float = 0.0
    sequence: int = 0  # номер показа, растет с каждым переключением


class RotationScheduler:
    '''Крутит ассеты по кругу. Таймер max(duration, floor_seconds) заводится
    в момент переключения, экран его не держит. По ошибке показа переключаемся
    сразу. Пока идет переключение (TRANSITIONING) остальные запросы на
    переключение игнорируются. Сторожевой таймер перезапускает ротацию, если
    она встала'''

    def __init__(self, display: DisplaySurface, *,
                 floor_seconds: float = 5,
                 error_debounce_seconds: float = 1.0,
                 skip_delay_seconds: float = 0.1,
                 show_timeout_seconds: float | None = None,
                 watchdog_seconds: float | None = 30,
                 call_later=None,
                 clock=monotonic):
        self._display = display
        self.floor_seconds = floor_seconds
        self.error_debounce_seconds = error_debounce_seconds
        self.skip_delay_seconds = skip_delay_seconds
        self.show_timeout_seconds = show_timeout_seconds
        self.watchdog_seconds = watchdog_seconds
        self._call_later = call_later
        self._clock = clock
        self._assets: list[LocalAsset] = []
        self._playback: PlaybackState | None = None
        self._watchdog: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Future] = set()

    @property
    def state(self) -> RotationState:
        if self._playback is None:
            return RotationState.IDLE
        if self._playback.is_transitioning:
            return RotationState.TRANSITIONING
        return RotationState.SHOWING

    @property
    def is_running(self) -> bool:
        return self._playback is not None

    @property
    def assets(self) -> list[LocalAsset]:
        return list(self._assets)

    @property
    def current_index(self) -> int | None:
        return None if self._playback is None else self._playback.current_index

    @property
    def current_asset(self) -> LocalAsset | None:
        if self._playback is None:
            return None
        return self._assets[self._playback.current_index]

    async def replace(self, assets: list[LocalAsset]) -> bool:
        '''Новый список: сброс и показ с нуля. Тот же самый список - ничего
        не трогаем, чтобы экран не мигал'''

        if not assets:
            raise ValueError('Rotation needs at least one asset')
        assets = list(assets)
        if self._playback is not None and assets == self._assets:
            logger.info('Playlist unchanged, keeping current rotation')
            return False

        self._cancel_timer()
        if self._watchdog is None:
            self._arm_watchdog()
        self._assets = assets
        playback = self._playback = PlaybackState(is_transitioning=True)
        logger.info(f'Starting rotation of {len(assets)} assets')
        try:
            sequence, asset = self._switch(playback, 0)
        finally:
            playback.is_transitioning = False
        await self._present(playback, sequence, asset)
        return True

    async def advance(self, reason: str = 'timer') -> bool:
        playback = self._playback
        if playback is None:
            logger.error('No assets available for switching')
            return False
        if playback.is_transitioning:
            logger.debug(f'Already transitioning, {reason} ignored')
            return False

        playback.is_transitioning = True
        try:
            next_index = (playback.current_index + 1) % len(self._assets)
            logger.info(f'Switching from asset {playback.current_index + 1} '
                        f'to {next_index + 1}/{len(self._assets)} ({reason})')
            sequence, asset = self._switch(playback, next_index)
        finally:
            playback.is_transitioning = False
        await self._present(playback, sequence, asset)
        return True

    async def report_render_failure(self, index: int) -> bool:
        playback = self._playback
        if playback is None or playback.is_transitioning:
            return False
        if index != playback.current_index:
            logger.debug(f'Stale render failure for asset {index + 1} ignored')
            return False
        # при одном ассете индекс не меняется, отсекаем повторы по времени
        if (len(self._assets) == 1
                and self._clock() - playback.shown_at < self.error_debounce_seconds):
            logger.debug('Repeated render failure ignored')
            return False

        logger.warning(f'Asset {index + 1} failed to render, switching to next asset immediately')
        return await self.advance('render-error')

    def report_render_success(self, index: int):
        logger.debug(f'Asset {index + 1} rendered')

    def stop(self):
        self._cancel_timer()
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._playback = None
        self._assets = []
        logger.info('Rotation stopped')

    def _window(self, asset: LocalAsset) -> float:
        return max(asset.duration, self.floor_seconds)

    def _switch(self, playback: PlaybackState, index: int) -> tuple[int, LocalAsset]:
        # Таймер заводится сразу при смене индекса, от экрана он не зависит
        self._cancel_timer()
        playback.current_index = index
        playback.sequence += 1
        playback.shown_at = self._clock()
        asset = self._assets[index]
        logger.info(f'Showing asset {index + 1}/{len(self._assets)}: '
                    f'"{asset.label}" ({asset.kind}) - {asset.duration}s')
        self._arm_timer(playback, self._window(asset))
        return playback.sequence, asset

    async def _present(self, playback: PlaybackState, sequence: int, asset: LocalAsset):
        '''Отдает ассет экрану. Ждем не дольше show_timeout_seconds (по
        умолчанию окно показа): молчание экрана считается успехом'''

        timeout = self.show_timeout_seconds or self._window(asset) or None
        try:
            await asyncio.wait_for(self._display.show(asset), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f'Display did not confirm {asset.label} in {timeout}s, keeping the timer')
            return
        except Exception as e:
            logger.error(f'Display failed on {asset.label}: {type(e).__name__}: {e}')
            if self._playback is playback and playback.sequence == sequence:
                self._cancel_timer()
                self._arm_timer(playback, self.skip_delay_seconds)

    def _get_call_later(self):
        return self._call_later or asyncio.get_running_loop().call_later

    def _arm_timer(self, playback: PlaybackState, delay: float):
        playback.timer = self._get_call_later()(delay, self._on_timer, playback.sequence)

    def _on_timer(self, sequence: int):
        playback = self._playback
        if playback is None or playback.sequence != sequence:
            return
        playback.timer = None
        self._spawn(self.advance('timer'))

    def _arm_watchdog(self):
        if self.watchdog_seconds is None:
            return
        self._watchdog = self._get_call_later()(self.watchdog_seconds, self._on_watchdog)

    def _on_watchdog(self):
        '''Страховка от остановки ротации: нет живого таймера или текущий
        ассет висит на экране дольше окна плюс период проверки'''

        self._watchdog = None
        playback = self._playback
        if playback is None:
            return
        if not playback.is_transitioning:
            overdue = (self._clock() - playback.shown_at
                       > self._window(self._assets[playback.current_index]) + self.watchdog_seconds)
            if playback.timer is None or overdue:
                logger.warning('No rotation timer detected, restarting rotation')
                self._spawn(self.advance('watchdog'))
        self._arm_watchdog()

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _cancel_timer(self):
        if self._playback is not None and self._playback.timer is not None:
            self._playback.timer.cancel()
            self._playback.timer = None

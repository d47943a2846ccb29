import argparse
import asyncio
import signal
from time import time
from signage_player.models.assets import LocalAsset
from signage_player.models.machine import PlayerConfig
from signage_player.sync.coordinator import SyncCoordinator
from signage_player.system_works.logs import setup_logging
import logging

logger = logging.getLogger(__name__)


class LoggingDisplay:
    # Заглушка экрана: только пишет в лог, что сейчас показывалось бы

    def __init__(self):
        self.current: LocalAsset | None = None
        self.error: str | None = None

    async def show(self, asset: LocalAsset):
        self.current, self.error = asset, None
        logger.info(f'[display] {asset.kind}: {asset.path} ({asset.duration}s)')

    async def show_error(self, message: str):
        self.error = message
        logger.error(f'[display] error screen: {message}')


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog='signage-player',
                                     description='Digital signage playlist player')
    parser.add_argument('--env-file', default=None, help='.env file with SIGNAGE_* settings')
    parser.add_argument('--log-level', default=None)
    parser.add_argument('--cache-dir', default=None)
    parser.add_argument('--device-name', default=None)
    parser.add_argument('--clear-cache', action='store_true',
                        help='start fresh: drop all cached media before the first sync')
    return parser.parse_args(argv)


async def main(args):

    config = PlayerConfig.from_env(args.env_file,
                                   log_level=args.log_level,
                                   cache_dir=args.cache_dir,
                                   device_name=args.device_name)
    setup_logging(config.log_level)

    coordinator = SyncCoordinator(config, LoggingDisplay())
    if args.clear_cache:
        await coordinator.cache.clear()

    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # windows
            pass

    await coordinator.start()
    await stop.wait()
    await coordinator.shutdown()


def run(argv=None):
    start = time()
    asyncio.run(main(parse_args(argv)))
    logger.info(f'Выполнено за {time()-start:.0f}s')


if __name__ == '__main__':
    run()

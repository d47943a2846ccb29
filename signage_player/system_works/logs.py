import logging
from functools import wraps


logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'


def setup_logging(level: str | int = 'INFO'):
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)
    # aiohttp слишком болтлив на DEBUG
    logging.getLogger('aiohttp').setLevel(max(level, logging.INFO))


def async_log_exception_wrapper(func):
    '''Ошибка внутри корутины логируется и превращается в None,
    наружу не выходит'''

    @wraps(func)
    async def log_exception_wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except Exception as exception:
            logger.exception(f"function {func.__name__=} got {exception=} with: {args=},{kwargs=}")

    return log_exception_wrapper


import json
import os
import re
import socket
import subprocess
from dataclasses import dataclass, field
from time import time
from dotenv import load_dotenv
import logging

logger = logging.getLogger(__name__)

ENV_PREFIX = 'SIGNAGE_'


@dataclass
class PlayerConfig:

    api_url: str = field(default='https://www.applicationbank.com/signage/api.php')
    probe_url: str = field(default='https://www.applicationbank.com')
    cache_dir: str = field(compare=False, default='./signage_cache')
    data_dir: str = field(compare=False, default='./signage_data')
    device_name: str | None = field(default=None)  # Имя устройства, если задано вручную
    check_interval: float = 30 * 60  # periodic re-check, seconds
    retry_delay: float = 60
    retry_delay_max: float = 5 * 60
    max_retries: int = 5
    offline_retry_delay: float = 60
    min_asset_seconds: float = 5  # ни один ассет не показываем меньше
    watchdog_seconds: float = 30
    request_timeout: float = 30
    probe_timeout: float = 5
    probe_retries: int = 3
    user_agent: str = 'SignageApp/2.0 (Linux Player)'
    log_level: str = 'INFO'

    def __post_init__(self):

        self.cache_dir = os.path.abspath(self.cache_dir)
        self.data_dir = os.path.abspath(self.data_dir)
        for path in (self.cache_dir, self.data_dir):
            if not os.path.exists(path):
                os.makedirs(path)

    @classmethod
    def from_env(cls, env_file: str | None = None, **overrides) -> 'PlayerConfig':
        '''Читаем SIGNAGE_* из окружения (и из .env, если он есть).
        Явно переданные overrides важнее окружения'''

        load_dotenv(env_file)
        values = {}
        for name, dc_field in cls.__dataclass_fields__.items():
            raw = os.getenv(f'{ENV_PREFIX}{name.upper()}')
            if raw is None or raw == '':
                continue
            if dc_field.type is int:
                values[name] = int(raw)
            elif dc_field.type is float:
                values[name] = float(raw)
            else:
                values[name] = raw
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)


def sanitize_device_id(name: str) -> str:
    name = re.sub(r'[^a-zA-Z0-9\-_.]', '_', name)
    name = re.sub(r'_{2,}', '_', name)
    return name.lower()


def _usable(name: str | None) -> bool:
    return bool(name) and name.strip().lower() not in ('', 'unknown', 'localhost')


@dataclass
class DeviceIdentity:

    data_dir: str
    device_name: str | None = None
    id_file: str = field(default='device.json')
    _device_id: str | None = field(init=False, default=None, repr=False)

    def get_device_id(self) -> str:
        '''Стабильный идентификатор устройства: сохраненный -> заданный
        в конфиге -> серийник платы -> hostname -> tvbox_<ms>'''

        if self._device_id:
            return self._device_id

        device_id = self._load()
        if not device_id:
            raw = self.device_name
            if not _usable(raw):
                raw = self.get_serial()
            if not _usable(raw):
                raw = socket.gethostname()
            if not _usable(raw):
                raw = f'tvbox_{int(time() * 1000)}'
            device_id = sanitize_device_id(raw.strip())
            self._save(device_id)
            logger.info(f'New device id: {device_id}')

        self._device_id = device_id
        return device_id

    def clear(self):
        # Сброс по команде сервера: следующий get_device_id выведет id заново
        self._device_id = None
        path = os.path.join(self.data_dir, self.id_file)
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        logger.info('Device id cleared')

    @staticmethod
    def get_serial() -> str | None:
        # Серийник есть только на raspberry, на остальных машинах None
        try:
            syst = subprocess.run(['grep', '-E', '^Serial', '/proc/cpuinfo'],
                                  capture_output=True, text=True, timeout=5)
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f'No cpuinfo: {e}')
            return None
        for line in syst.stdout.splitlines():
            serial = line.split(':', 1)[-1].strip().lstrip('0')
            if serial:
                return serial
        return None

    def _load(self) -> str | None:
        path = os.path.join(self.data_dir, self.id_file)
        try:
            with open(path, encoding='utf-8') as id_json:
                device_id = json.load(id_json).get('deviceId')
        except (OSError, ValueError, AttributeError):
            return None
        if device_id and device_id == sanitize_device_id(device_id):
            return device_id
        return None

    def _save(self, device_id: str):
        path = os.path.join(self.data_dir, self.id_file)
        try:
            os.makedirs(self.data_dir, exist_ok=True)
            with open(path, mode='w', encoding='utf-8') as id_json:
                json.dump({'deviceId': device_id}, id_json, indent=2)
        except OSError as e:
            logger.warning(f'Device id not saved, {path}: {e}')

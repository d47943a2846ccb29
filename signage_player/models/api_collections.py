from datetime import date
from typing import Optional
from pydantic import BaseModel, ConfigDict, field_validator


WEEKDAYS = ('Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat', 'Sun')
_FULL_WEEKDAYS = {
    'monday': 'Mon', 'tuesday': 'Tue', 'wednesday': 'Wed', 'thursday': 'Thu',
    'friday': 'Fri', 'saturday': 'Sat', 'sunday': 'Sun',
    }


def _to_int(value, default=None):
    # сервер присылает числа строками: "10", " 5", "" или вообще null
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(str(value).strip())
    except ValueError:
        return default


def normalize_weekday(name: str) -> str | None:
    name = name.strip().lower()
    if name in _FULL_WEEKDAYS:
        return _FULL_WEEKDAYS[name]
    short = name[:3].capitalize()
    return short if short in WEEKDAYS else None


def normalize_time(value: str) -> str:
    '''"9:00" -> "09:00:00". Сравниваем время строками, поэтому
    обязательно дополняем нулями до HH:MM:SS'''

    parts = [part.strip() for part in value.strip().split(':')]
    if not 1 <= len(parts) <= 3 or not all(part.isdigit() for part in parts):
        raise ValueError(f'Bad time of day: {value!r}')
    parts += ['0'] * (3 - len(parts))
    hours, minutes, seconds = (int(part) for part in parts)
    if hours > 23 or minutes > 59 or seconds > 59:
        raise ValueError(f'Bad time of day: {value!r}')
    return f'{hours:02d}:{minutes:02d}:{seconds:02d}'


class AssetRecord(BaseModel):

    # necessary
    filepath: Optional[str] = None
    filetype: str = ''
    time: Optional[int] = None  # seconds, comes as string
    # optional
    id: Optional[str] = None
    name: Optional[str] = None
    playing_order: int = 0

    @field_validator('id', 'name', mode='before')
    @classmethod
    def _stringify(cls, value):
        return None if value is None else str(value)

    @field_validator('filepath', mode='before')
    @classmethod
    def _filepath(cls, value):
        if value is None:
            return None
        return str(value).strip() or None

    @field_validator('filetype', mode='before')
    @classmethod
    def _filetype(cls, value):
        return '' if value is None else str(value).strip().lower()

    @field_validator('time', mode='before')
    @classmethod
    def _time(cls, value):
        return _to_int(value)

    @field_validator('playing_order', mode='before')
    @classmethod
    def _playing_order(cls, value):
        return _to_int(value, default=0)


class PlaylistRecord(BaseModel):

    # optional
    id: Optional[str] = None
    name: Optional[str] = None
    startdate: Optional[date] = None
    enddate: Optional[date] = None
    weekdays: Optional[frozenset[str]] = None
    starttime: Optional[str] = None  # HH:MM:SS
    endtime: Optional[str] = None  # HH:MM:SS
    is_default: bool = False
    # necessary
    assets: list[AssetRecord]

    @field_validator('id', 'name', mode='before')
    @classmethod
    def _stringify(cls, value):
        return None if value is None else str(value)

    @field_validator('startdate', 'enddate', mode='before')
    @classmethod
    def _date(cls, value):
        # "2024-05-01" или "2024-05-01 00:00:00"
        if value is None or isinstance(value, date):
            return value
        value = str(value).strip()
        return value[:10] or None

    @field_validator('weekdays', mode='before')
    @classmethod
    def _weekdays(cls, value):
        if value is None:
            return None
        if isinstance(value, str):
            value = value.split(',')
        days = set()
        for name in value:
            if not str(name).strip():
                continue
            day = normalize_weekday(str(name))
            if day is None:
                raise ValueError(f'Unknown weekday: {name!r}')
            days.add(day)
        return frozenset(days) or None

    @field_validator('starttime', 'endtime', mode='before')
    @classmethod
    def _time_of_day(cls, value):
        if value is None or not str(value).strip():
            return None
        return normalize_time(str(value))

    @field_validator('is_default', mode='before')
    @classmethod
    def _is_default(cls, value):
        return False if value is None else value

    @property
    def title(self) -> str:
        return f"{self.name or 'Default'} (ID: {self.id})"


class Functions(BaseModel):

    is_restarting: bool = False

    @field_validator('is_restarting', mode='before')
    @classmethod
    def _is_restarting(cls, value):
        return False if value is None else value


class PlaylistResponse(BaseModel):
    model_config = ConfigDict(extra='ignore')

    playlists: list[PlaylistRecord] = []
    functions: Functions = Functions()

    @field_validator('playlists', mode='before')
    @classmethod
    def _playlists(cls, value):
        return [] if value is None else value

    @field_validator('functions', mode='before')
    @classmethod
    def _functions(cls, value):
        return {} if value is None else value

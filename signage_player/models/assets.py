from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class ContentKind(Enum):
    # Семейства контента, по которым дисплей выбирает способ показа

    IMAGE = 'image'
    VIDEO = 'video'
    WEB = 'web'

    def __str__(self):
        return self.value


class Asset(BaseModel):
    '''Ассет выбранного плейлиста после фильтрации. Живет один цикл,
    сравнение двух списков ассетов - это и есть проверка изменений'''

    model_config = ConfigDict(frozen=True)

    filepath: str
    filetype: str
    duration: int = Field(gt=0)  # seconds
    name: Optional[str] = None
    playing_order: int = 0

    @property
    def label(self) -> str:
        return self.name or self.filepath


class LocalAsset(BaseModel):
    # Запись манифеста. Ключи в json как у старого плеера: type/url/duration/name

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    kind: ContentKind = Field(alias='type')
    path: str = Field(alias='url')  # local file or remote uri for web
    duration: int
    name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or self.path


class CacheManifest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    assets: list[LocalAsset]
    timestamp: int  # epoch ms
    device_id: str = Field(alias='deviceId')

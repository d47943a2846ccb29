class SignageError(Exception):
    '''Базовая ошибка плеера. Все ошибки цикла синхронизации наследуются от нее'''


class NetworkError(SignageError):
    # timeout, unreachable host, non-2xx

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class PayloadError(SignageError):
    pass


class EmptyPlaylistSet(PayloadError):
    pass


class NoValidAssets(SignageError):
    pass


class AssetError(SignageError):
    '''Ошибка одного ассета, на весь цикл не влияет'''

    def __init__(self, message: str, filepath: str | None = None):
        super().__init__(message)
        self.filepath = filepath


class DownloadFailed(AssetError):

    def __init__(self, filepath: str, status: int | None = None, reason: str = ''):
        message = f'Download failed: {filepath}, status: {status}'
        if reason:
            message = f'{message} ({reason})'
        super().__init__(message, filepath)
        self.status = status


class UnsupportedType(AssetError):

    def __init__(self, filetype: str, filepath: str | None = None):
        super().__init__(f'Unsupported file type: {filetype}', filepath)
        self.filetype = filetype


class NoAssetsDownloaded(SignageError):
    pass


class OfflineNoCache(SignageError):
    pass


class RenderFailed(SignageError):
    pass

class TeleboxError(Exception):
    """Base error. status_code is used by the HTTP layer."""

    status_code = 500

    def __init__(self, message):
        self.message = message
        super().__init__(message)


class PlaylistFormatError(TeleboxError):
    status_code = 400


class UploadTooLargeError(TeleboxError):
    status_code = 413


class TMDBError(TeleboxError):
    status_code = 502


class TMDBAuthError(TMDBError):
    """TMDB rejected the configured token (401/403)."""


class EPGFetchError(TeleboxError):
    status_code = 502


class ContentNotFoundError(TeleboxError):
    status_code = 404


class InvalidRequestError(TeleboxError):
    status_code = 400


class ImportNotFoundError(TeleboxError):
    """No catalog row carries the import UUID being finalized."""

    status_code = 404

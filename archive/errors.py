class ArchiveError(Exception):
    """Base class for errors surfaced to the request layer."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ArchiveError):
    """Raised when a required name is blank or an upload carries no files."""

    status_code = 400


class NotFoundError(ArchiveError):
    """Raised when an operation targets an unknown folder, file or blob."""

    status_code = 404


class StorageError(ArchiveError):
    """Raised when the metadata document or a blob cannot be written."""

    status_code = 500

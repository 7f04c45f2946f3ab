"""
Storage errors.

Every failure the storage layer can report is a StorageError subclass that
carries the HTTP status code it maps to. Services raise these; only the HTTP
layer turns them into responses.
"""
from typing import Optional


class StorageError(Exception):
    """Base class for all storage failures."""

    status_code: int = 500
    default_message: str = "Storage error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert the error to the JSON body returned to clients."""
        return {"error": self.message}


class MissingInput(StorageError):
    status_code = 400
    default_message = "No file provided"


class FileTooLarge(StorageError):
    status_code = 400
    default_message = "File too large"


class InvalidFileName(StorageError):
    status_code = 400
    default_message = "Invalid file name"


class NotFound(StorageError):
    status_code = 404
    default_message = "File not found"


class WriteFailed(StorageError):
    status_code = 500
    default_message = "Failed to save file"


class DeleteFailed(StorageError):
    status_code = 500
    default_message = "Failed to delete file"


class DirectoryReadFailed(StorageError):
    status_code = 500
    default_message = "Failed to read upload directory"


class ReadFailed(StorageError):
    status_code = 500
    default_message = "Failed to read file"

import re
import secrets
import shutil
import stat
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, List, Optional, Sequence, Tuple
from urllib.parse import quote

import aiofiles
import aiofiles.os

import config
from logger_config import setup_logger
from app.services.exceptions import (
    DeleteFailed,
    DirectoryReadFailed,
    FileTooLarge,
    InvalidFileName,
    MissingInput,
    NotFound,
    ReadFailed,
    StorageError,
    WriteFailed,
)
from app.services.failure_monitor import FailureMonitor

logger = setup_logger()

DOWNLOAD_MODE = "download"
STREAM_MODE = "stream"

DEFAULT_CONTENT_TYPE = "application/octet-stream"

MIME_TYPES = {
    ".txt": "text/plain",
    ".html": "text/html",
    ".css": "text/css",
    ".js": "application/javascript",
    ".json": "application/json",
    ".xml": "application/xml",
    ".pdf": "application/pdf",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".mp4": "video/mp4",
    ".mp3": "audio/mpeg",
    ".zip": "application/zip",
    ".rar": "application/x-rar-compressed",
}

_CONTROL_CHARS = re.compile(r'[\x00-\x1f\x7f]')


@dataclass
class StoredFile:
    stored_name: str
    original_name: str
    size_bytes: int
    modified_time: datetime
    path: Path


@dataclass
class FileEntry:
    name: str
    size: int
    mod_time: datetime
    is_dir: bool


@dataclass
class FileListing:
    files: List[FileEntry] = field(default_factory=list)
    skipped: int = 0  # entries whose metadata could not be read


@dataclass
class DownloadTarget:
    path: Path
    stored_name: str
    content_type: str
    size_bytes: int
    disposition: Optional[str] = None


def _truncate_name(name: str, max_bytes: int) -> str:
    """Shorten a name to at most max_bytes of UTF-8, keeping its extension when it fits."""
    if len(name.encode("utf-8")) <= max_bytes:
        return name

    stem, dot, ext = name.rpartition(".")
    if not dot or not stem or len(ext.encode("utf-8")) + 1 > max_bytes // 2:
        stem, ext = name, ""
    else:
        ext = "." + ext

    budget = max_bytes - len(ext.encode("utf-8"))
    # errors="ignore" drops a multi-byte character cut in half
    return stem.encode("utf-8")[:budget].decode("utf-8", errors="ignore") + ext


def sanitize_original_name(original_name: str) -> str:
    """Reduce a client-supplied file name to a single safe path component."""
    name = (original_name or "").replace("\\", "/").rsplit("/", 1)[-1]
    name = _CONTROL_CHARS.sub("", name).strip()
    if name in ("", ".", ".."):
        return "file"
    return _truncate_name(name, config.MAX_ORIGINAL_NAME_BYTES)


def generate_stored_name(original_name: str) -> str:
    """Build a unique on-disk name: nanosecond timestamp, random token, sanitized original name."""
    return f"{time.time_ns()}_{secrets.token_hex(4)}_{sanitize_original_name(original_name)}"


def guess_content_type(filename: str) -> str:
    """Infer a content type from the file extension, defaulting to octet-stream."""
    return MIME_TYPES.get(Path(filename).suffix.lower(), DEFAULT_CONTENT_TYPE)


def attachment_disposition(filename: str) -> str:
    """Content-Disposition value that forces a save dialog for filename."""
    ascii_name = filename.encode("ascii", "ignore").decode("ascii").replace('"', '\\"')
    if ascii_name == filename:
        return f'attachment; filename="{ascii_name}"'
    return f'attachment; filename="{ascii_name}"; filename*=UTF-8\'\'{quote(filename)}'


class StorageManager:
    def __init__(
        self,
        upload_dir: Path,
        monitor: Optional[FailureMonitor] = None,
        min_free_space: int = config.MIN_FREE_SPACE,
    ):
        self.upload_dir = Path(upload_dir)
        self.staging_dir = self.upload_dir / config.STAGING_DIR_NAME
        self.monitor = monitor or FailureMonitor(
            config.FAILURE_THRESHOLD, config.FAILURE_WINDOW_SECONDS
        )
        self.min_free_space = min_free_space

    async def initialize(self):
        """Create the upload and staging directories and clear leftovers from interrupted uploads."""
        logger.info("Initializing storage manager...")

        self.upload_dir.mkdir(exist_ok=True, parents=True)
        self.staging_dir.mkdir(exist_ok=True)
        logger.debug(f"Storage directories created/verified: {self.upload_dir}, {self.staging_dir}")

        files_removed = 0
        for leftover in self.staging_dir.iterdir():
            if leftover.is_file():
                await aiofiles.os.remove(leftover)
                files_removed += 1
        logger.info(f"Cleaned staging directory, removed {files_removed} files")

        _, _, free = shutil.disk_usage(str(self.upload_dir))
        if free < self.min_free_space:
            logger.warning(
                f"Low disk space: {free / (1024*1024):.2f} MB free, "
                f"recommended minimum is {self.min_free_space / (1024*1024):.2f} MB"
            )
        else:
            logger.info(f"Free disk space: {free / (1024*1024):.2f} MB")

    def resolve_path(self, stored_name: str) -> Path:
        """Map a stored name to its path, refusing anything that would leave the upload root."""
        if (
            not stored_name
            or stored_name in (".", "..", config.STAGING_DIR_NAME)
            or "/" in stored_name
            or "\\" in stored_name
            or "\x00" in stored_name
        ):
            raise InvalidFileName(f"Invalid file name: {stored_name}")

        root = self.upload_dir.resolve()
        # Canonical form only decides containment; callers act on the entry itself
        if (root / stored_name).resolve().parent != root:
            raise InvalidFileName(f"Invalid file name: {stored_name}")
        return root / stored_name

    async def _discard(self, *paths: Path) -> None:
        for path in paths:
            try:
                await aiofiles.os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not remove {path}: {e}")

    async def save_upload(
        self,
        content: Any,
        declared_size: Optional[int],
        original_name: str,
        max_bytes: int = config.MAX_UPLOAD_SIZE,
    ) -> StoredFile:
        """Write an uploaded stream under a freshly generated stored name.

        Args:
            content: Object with an async ``read(size)`` method, e.g. an UploadFile
            declared_size: Size reported by the client, checked before anything is written
            original_name: Client-supplied file name
            max_bytes: Upper bound for both the declared and the actually received size

        Raises:
            MissingInput: No original name was supplied
            FileTooLarge: The declared size or the received stream exceeds max_bytes
            WriteFailed: The filesystem rejected the write
        """
        if not original_name:
            raise MissingInput()
        if declared_size is not None and declared_size > max_bytes:
            raise FileTooLarge(f"File exceeds maximum size of {max_bytes} bytes")

        stored_name = generate_stored_name(original_name)
        target_path = self.resolve_path(stored_name)
        staged_path = self.staging_dir / stored_name
        logger.debug(f"Saving {original_name!r} as {stored_name}")

        # Write to the staging directory first so a partial file is never listed
        written = 0
        try:
            async with aiofiles.open(staged_path, 'wb') as f:
                while chunk := await content.read(config.CHUNK_SIZE):
                    written += len(chunk)
                    if written > max_bytes:
                        raise FileTooLarge(f"File exceeds maximum size of {max_bytes} bytes")
                    await f.write(chunk)

            await aiofiles.os.rename(staged_path, target_path)
            file_stat = await aiofiles.os.stat(target_path)
        except FileTooLarge:
            await self._discard(staged_path)
            raise
        except OSError as e:
            logger.error(f"Error saving {stored_name}: {str(e)}", exc_info=True)
            await self._discard(staged_path, target_path)
            self.monitor.record_failure(f"write {stored_name}: {e}")
            raise WriteFailed() from e

        self.monitor.record_success()
        logger.info(f"Saved {stored_name} ({written} bytes)")

        return StoredFile(
            stored_name=stored_name,
            original_name=original_name,
            size_bytes=written,
            modified_time=datetime.fromtimestamp(file_stat.st_mtime).astimezone(),
            path=self.upload_dir / stored_name,
        )

    async def save_multiple_uploads(
        self,
        files: Sequence[Tuple[Any, Optional[int], str]],
        per_file_max_bytes: int = config.MAX_UPLOAD_SIZE,
    ) -> List[StoredFile]:
        """Best-effort batch save. Files that are too large or fail to save are skipped."""
        saved = []
        for content, declared_size, original_name in files:
            if declared_size is not None and declared_size > per_file_max_bytes:
                logger.info(f"Skipping {original_name!r}: {declared_size} bytes exceeds per-file limit")
                continue
            try:
                saved.append(
                    await self.save_upload(content, declared_size, original_name, per_file_max_bytes)
                )
            except StorageError as e:
                logger.info(f"Skipping {original_name!r}: {e.message}")

        logger.info(f"Batch upload saved {len(saved)} of {len(files)} files")
        return saved

    async def delete_file(self, stored_name: str) -> None:
        path = self.resolve_path(stored_name)
        if not await aiofiles.os.path.isfile(path):
            raise NotFound(f"File {stored_name} not found")

        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError as e:
            # Removed by a concurrent request
            raise NotFound(f"File {stored_name} not found") from e
        except OSError as e:
            logger.error(f"Error deleting {stored_name}: {str(e)}", exc_info=True)
            self.monitor.record_failure(f"delete {stored_name}: {e}")
            raise DeleteFailed() from e

        self.monitor.record_success()
        logger.info(f"Deleted {stored_name}")

    async def open_for_download(self, stored_name: str, mode: str = DOWNLOAD_MODE) -> DownloadTarget:
        """Resolve a stored file and the headers it should be served with.

        Download mode always serves application/octet-stream as an attachment.
        Stream mode infers the content type from the extension and allows inline rendering.
        """
        if mode not in (DOWNLOAD_MODE, STREAM_MODE):
            raise ValueError(f"Unknown download mode: {mode}")

        path = self.resolve_path(stored_name)
        if not await aiofiles.os.path.isfile(path):
            raise NotFound(f"File {stored_name} not found")
        # Open once up front so an unreadable file fails before any response is sent
        try:
            async with aiofiles.open(path, 'rb'):
                pass
            file_stat = await aiofiles.os.stat(path)
        except FileNotFoundError as e:
            raise NotFound(f"File {stored_name} not found") from e
        except OSError as e:
            logger.error(f"Error reading {stored_name}: {str(e)}", exc_info=True)
            raise ReadFailed() from e

        if mode == DOWNLOAD_MODE:
            return DownloadTarget(
                path=path,
                stored_name=stored_name,
                content_type=DEFAULT_CONTENT_TYPE,
                size_bytes=file_stat.st_size,
                disposition=attachment_disposition(stored_name),
            )
        return DownloadTarget(
            path=path,
            stored_name=stored_name,
            content_type=guess_content_type(stored_name),
            size_bytes=file_stat.st_size,
        )

    async def iter_file(self, path: Path, chunk_size: int = config.CHUNK_SIZE) -> AsyncIterator[bytes]:
        async with aiofiles.open(path, 'rb') as f:
            while chunk := await f.read(chunk_size):
                yield chunk

    async def scan(self) -> FileListing:
        """Read every entry of the upload directory once.

        Raises:
            DirectoryReadFailed: The directory itself could not be read
        """
        try:
            names = await aiofiles.os.listdir(self.upload_dir)
        except OSError as e:
            raise DirectoryReadFailed(f"Failed to read upload directory: {e}") from e

        listing = FileListing()
        for name in names:
            if name == config.STAGING_DIR_NAME:
                continue
            try:
                entry_stat = await aiofiles.os.stat(self.upload_dir / name)
            except OSError as e:
                # e.g. deleted mid-scan or a dangling symlink
                logger.warning(f"Skipping {name}: {e}")
                listing.skipped += 1
                continue

            listing.files.append(FileEntry(
                name=name,
                size=entry_stat.st_size,
                mod_time=datetime.fromtimestamp(entry_stat.st_mtime).astimezone(),
                is_dir=stat.S_ISDIR(entry_stat.st_mode),
            ))
        return listing

    async def list_files(self) -> FileListing:
        """List the upload directory. A directory read failure yields an empty listing."""
        try:
            return await self.scan()
        except DirectoryReadFailed as e:
            logger.error(e.message, exc_info=True)
            return FileListing()

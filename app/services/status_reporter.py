from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict

from logger_config import setup_logger
from app.services.exceptions import DirectoryReadFailed
from app.services.storage_manager import FileListing, StorageManager

logger = setup_logger()

BYTES_PER_MB = 1 << 20


@dataclass
class StorageStatus:
    file_count: int
    total_size_bytes: int
    total_size_mb: int
    directory_path: str
    server_time: datetime
    skipped: int = 0
    failures: Dict[str, int] = field(default_factory=dict)


class StatusReporter:
    def __init__(self, storage_manager: StorageManager):
        self.storage_manager = storage_manager

    async def get_status(self) -> StorageStatus:
        """Summarize the upload directory.

        Only regular files are counted; subdirectories are listed by
        list_files but do not contribute to the totals. Never raises on a
        directory read failure, the totals are reported as zero instead.
        """
        try:
            listing = await self.storage_manager.scan()
        except DirectoryReadFailed as e:
            logger.error(f"Status scan failed: {e.message}")
            listing = FileListing()

        files = [entry for entry in listing.files if not entry.is_dir]
        total_size = sum(entry.size for entry in files)

        return StorageStatus(
            file_count=len(files),
            total_size_bytes=total_size,
            total_size_mb=total_size // BYTES_PER_MB,
            directory_path=str(self.storage_manager.upload_dir),
            server_time=datetime.now().astimezone(),
            skipped=listing.skipped,
            failures=self.storage_manager.monitor.stats,
        )

from datetime import datetime
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field


def format_timestamp(value: datetime) -> str:
    """RFC 3339 timestamp with offset, second precision."""
    return value.isoformat(timespec="seconds")


class ErrorResponse(BaseModel):
    error: str


class MessageResponse(BaseModel):
    message: str


class UploadResponse(BaseModel):
    message: str
    filename: str
    size: int
    path: str


class UploadedFile(BaseModel):
    filename: str
    original: str
    size: int
    path: str


class MultipleUploadResponse(BaseModel):
    message: str
    files: List[UploadedFile]


class FileInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    size: int
    mod_time: str = Field(alias="modTime")
    is_dir: bool = Field(alias="isDir")


class FileListResponse(BaseModel):
    count: int
    files: List[FileInfo]
    skipped: int = 0


class StatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    files_count: int = Field(alias="filesCount")
    total_size: int = Field(alias="totalSize")
    total_size_mb: int = Field(alias="totalSizeMB")
    upload_dir: str = Field(alias="uploadDir")
    server_time: str = Field(alias="serverTime")
    skipped: int = 0
    failures: Dict[str, int] = Field(default_factory=dict)

from pathlib import Path
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.datastructures import FormData, UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException
import uvicorn
import config
from logger_config import setup_logger
from app.models.responses import (
    ErrorResponse,
    FileInfo,
    FileListResponse,
    MessageResponse,
    MultipleUploadResponse,
    StatusResponse,
    UploadedFile,
    UploadResponse,
    format_timestamp,
)
from app.services.exceptions import FileTooLarge, MissingInput, StorageError
from app.services.status_reporter import StatusReporter
from app.services.storage_manager import DOWNLOAD_MODE, STREAM_MODE, StorageManager

# Upload storage path
UPLOAD_DIR = Path(config.UPLOAD_DIR)

# Multipart field names accepted by /upload/multiple
BATCH_FIELD_NAMES = ("files", "files[]")

# Logger setup
logger = setup_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.storage_manager = StorageManager(UPLOAD_DIR)
    await app.state.storage_manager.initialize()
    yield


app = FastAPI(title="File Storage Server", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type"],
)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.info(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=str(exc.detail)).model_dump(),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content=ErrorResponse(error="Invalid request").model_dump())


def check_content_length(request: Request, max_bytes: int) -> int:
    """Reject a request body larger than max_bytes before it is parsed."""
    content_length = request.headers.get("content-length")

    if content_length is None:
        raise HTTPException(status_code=400, detail="Missing Content-Length header")

    try:
        content_length_value = int(content_length)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid Content-Length header")

    if content_length_value > max_bytes:
        raise FileTooLarge(f"Request body too large (max {max_bytes // (1024*1024)}MB)")
    return content_length_value


@asynccontextmanager
async def open_form(request: Request):
    """Parse the multipart form and close its spooled files afterwards."""
    try:
        form: FormData = await request.form()
    except MultiPartException as e:
        raise HTTPException(status_code=400, detail=f"Could not read form: {e.message}")
    try:
        yield form
    finally:
        await form.close()


def get_declared_size(file: UploadFile) -> int:
    if file.size is not None:
        return file.size
    file.file.seek(0, 2)  # Seek to end
    size = file.file.tell()
    file.file.seek(0)
    return size


def is_file_part(value) -> bool:
    return isinstance(value, UploadFile) and bool(value.filename)


@app.post("/upload", response_model=UploadResponse)
async def upload_file(request: Request):
    """Upload a single file sent as the multipart field ``file``."""
    storage_manager = request.app.state.storage_manager
    logger.info("Receiving upload request")

    content_length = check_content_length(request, config.MAX_UPLOAD_SIZE)
    logger.debug(f"Content-Length: {content_length} bytes")

    async with open_form(request) as form:
        file = form.get("file")
        if not is_file_part(file):
            raise MissingInput()

        stored = await storage_manager.save_upload(
            file, get_declared_size(file), file.filename, config.MAX_UPLOAD_SIZE
        )

    return UploadResponse(
        message="File uploaded successfully",
        filename=stored.stored_name,
        size=stored.size_bytes,
        path=str(stored.path),
    )


@app.post("/upload/multiple", response_model=MultipleUploadResponse)
async def upload_multiple_files(request: Request):
    """Upload several files sent as the multipart field ``files`` (or ``files[]``).

    Files over the per-file limit are skipped rather than failing the request.
    """
    storage_manager = request.app.state.storage_manager
    logger.info("Receiving multiple upload request")

    check_content_length(request, config.MAX_BATCH_SIZE)

    async with open_form(request) as form:
        uploads = [
            value for key, value in form.multi_items()
            if key in BATCH_FIELD_NAMES and is_file_part(value)
        ]
        if not uploads:
            raise MissingInput("No files provided")

        batch = [(f, get_declared_size(f), f.filename) for f in uploads]
        saved = await storage_manager.save_multiple_uploads(batch, config.MAX_UPLOAD_SIZE)

    return MultipleUploadResponse(
        message=f"Uploaded {len(saved)} files",
        files=[
            UploadedFile(
                filename=stored.stored_name,
                original=stored.original_name,
                size=stored.size_bytes,
                path=str(stored.path),
            )
            for stored in saved
        ],
    )


@app.get("/download/{filename}")
async def download_file(filename: str, request: Request):
    """Send a stored file as an attachment, regardless of its type."""
    storage_manager = request.app.state.storage_manager
    logger.info(f"Receiving download request for: {filename}")

    target = await storage_manager.open_for_download(filename, DOWNLOAD_MODE)
    headers = {
        "Content-Description": "File Transfer",
        "Content-Transfer-Encoding": "binary",
        "Content-Disposition": target.disposition,
        "Content-Type": target.content_type,
        "Content-Length": str(target.size_bytes),
    }

    return StreamingResponse(storage_manager.iter_file(target.path), headers=headers)


@app.get("/files", response_model=FileListResponse)
async def list_files(request: Request):
    storage_manager = request.app.state.storage_manager
    listing = await storage_manager.list_files()

    return FileListResponse(
        count=len(listing.files),
        files=[
            FileInfo(
                name=entry.name,
                size=entry.size,
                mod_time=format_timestamp(entry.mod_time),
                is_dir=entry.is_dir,
            )
            for entry in listing.files
        ],
        skipped=listing.skipped,
    )


@app.get("/files/{filename}")
async def stream_file(filename: str, request: Request):
    """Serve a stored file inline with a content type inferred from its extension."""
    storage_manager = request.app.state.storage_manager
    logger.info(f"Receiving stream request for: {filename}")

    target = await storage_manager.open_for_download(filename, STREAM_MODE)

    # Set verbatim; media_type would append a charset to text types
    headers = {
        "Content-Type": target.content_type,
        "Content-Length": str(target.size_bytes),
    }

    return StreamingResponse(storage_manager.iter_file(target.path), headers=headers)


@app.delete("/files/{filename}", response_model=MessageResponse)
async def delete_file(filename: str, request: Request):
    storage_manager = request.app.state.storage_manager
    logger.info(f"Receiving delete request for: {filename}")

    await storage_manager.delete_file(filename)

    return MessageResponse(message="File deleted successfully")


@app.get("/status", response_model=StatusResponse)
async def get_status(request: Request):
    status = await StatusReporter(request.app.state.storage_manager).get_status()

    return StatusResponse(
        files_count=status.file_count,
        total_size=status.total_size_bytes,
        total_size_mb=status.total_size_mb,
        upload_dir=status.directory_path,
        server_time=format_timestamp(status.server_time),
        skipped=status.skipped,
        failures=status.failures,
    )


if __name__ == "__main__":
    logger.info("Starting file storage server...")
    logger.info(f"Upload directory: {UPLOAD_DIR}")
    logger.info(f"Maximum upload size: {config.MAX_UPLOAD_SIZE / (1024*1024):.2f} MB")
    uvicorn.run(app, host=config.HOST, port=config.PORT)

"""Configuration settings for the file storage server."""
import os

# Upload limits
MAX_UPLOAD_SIZE = 10 * 1024 * 1024  # 10MB per file
MAX_BATCH_SIZE = 50 * 1024 * 1024  # 50MB per multi-file request
MIN_FREE_SPACE = 100 * 1024 * 1024  # warn below 100MB free

# Stored name constraints
MAX_ORIGINAL_NAME_BYTES = 200

# I/O
CHUNK_SIZE = 8192

# Failure monitoring
FAILURE_THRESHOLD = 5
FAILURE_WINDOW_SECONDS = 60

# Directory paths
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "./uploads")
STAGING_DIR_NAME = ".incoming"
LOG_DIR = os.getenv("LOG_DIR", "./logs")

# Server
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "9080"))

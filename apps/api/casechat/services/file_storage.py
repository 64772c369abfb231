"""File storage for message attachments (local disk or S3)."""

from __future__ import annotations

import logging
import mimetypes
import os
import uuid
from dataclasses import dataclass
from io import BytesIO
from urllib.parse import urlparse

import boto3
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError

from casechat.core.config import settings
from casechat.core.errors import InvalidArgument

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

ALLOWED_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "pdf", "doc", "docx", "xls", "xlsx", "txt"}
ALLOWED_MIME_TYPES = {
    "image/jpeg",
    "image/png",
    "image/gif",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "text/plain",
}
KEY_PREFIX = "conversations"


@dataclass(frozen=True)
class StoredFile:
    """What the message pipeline needs to reference an uploaded file."""
    url: str
    name: str
    size: int
    mime_type: str


# =============================================================================
# Storage Backend
# =============================================================================

def get_s3_client() -> BaseClient:
    """Return a configured S3 client (supports S3-compatible endpoints)."""
    endpoint_url = settings.S3_ENDPOINT_URL.rstrip("/") or None
    return boto3.client(
        "s3",
        region_name=settings.S3_REGION or None,
        aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
        aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None,
        endpoint_url=endpoint_url,
    )


def _get_storage_backend() -> str:
    return (settings.STORAGE_BACKEND or "local").strip().lower()


def get_local_storage_path() -> str:
    """Local storage directory (created on demand)."""
    path = settings.LOCAL_STORAGE_PATH
    os.makedirs(path, exist_ok=True)
    return path


def _public_url(storage_key: str) -> str:
    if _get_storage_backend() == "s3":
        if settings.S3_PUBLIC_BASE_URL:
            return f"{settings.S3_PUBLIC_BASE_URL.rstrip('/')}/{storage_key}"
        if settings.S3_ENDPOINT_URL:
            return f"{settings.S3_ENDPOINT_URL.rstrip('/')}/{settings.S3_BUCKET}/{storage_key}"
        return f"https://{settings.S3_BUCKET}.s3.{settings.S3_REGION}.amazonaws.com/{storage_key}"
    return f"{settings.LOCAL_STORAGE_URL_PREFIX.rstrip('/')}/{storage_key}"


def _storage_key_from_url(url: str) -> str | None:
    """Inverse of _public_url. None for URLs this service did not issue."""
    path = urlparse(url).path
    marker = f"/{KEY_PREFIX}/"
    if marker not in path:
        return None
    return KEY_PREFIX + "/" + path.split(marker, 1)[1]


# =============================================================================
# File Operations
# =============================================================================

def validate_file(filename: str, content_type: str, file_size: int) -> tuple[bool, str | None]:
    """
    Validate file against allowlists and size limits.

    Returns (is_valid, error_message)
    """
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    if ext not in ALLOWED_EXTENSIONS:
        return False, f"File extension '.{ext}' not allowed"

    if content_type not in ALLOWED_MIME_TYPES:
        return False, f"Content type '{content_type}' not allowed"

    if file_size <= 0:
        return False, "File is empty"

    if file_size > settings.MAX_UPLOAD_BYTES:
        max_mb = settings.MAX_UPLOAD_BYTES / (1024 * 1024)
        return False, f"File size exceeds {max_mb:.0f} MB limit"

    return True, None


def store(file_bytes: bytes, filename: str, content_type: str | None = None) -> StoredFile:
    """
    Persist an upload and return its retrievable URL.

    Blocks until the file is stored, so a message never references a file
    that is not yet readable.

    Raises:
        InvalidArgument: file type or size not allowed
    """
    filename = os.path.basename(filename or "") or "upload"
    content_type = content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"

    is_valid, error = validate_file(filename, content_type, len(file_bytes))
    if not is_valid:
        raise InvalidArgument(error)

    ext = filename.rsplit(".", 1)[-1].lower()
    storage_key = f"{KEY_PREFIX}/{uuid.uuid4().hex}.{ext}"

    if _get_storage_backend() == "s3":
        s3 = get_s3_client()
        s3.upload_fileobj(
            BytesIO(file_bytes),
            settings.S3_BUCKET,
            storage_key,
            ExtraArgs={"ContentType": content_type},
        )
    else:
        path = os.path.join(get_local_storage_path(), storage_key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(file_bytes)

    logger.info("Stored attachment %s (%s bytes)", storage_key, len(file_bytes))
    return StoredFile(
        url=_public_url(storage_key),
        name=filename,
        size=len(file_bytes),
        mime_type=content_type,
    )


def delete(url: str) -> bool:
    """Delete a previously stored file. Returns False when nothing was removed."""
    storage_key = _storage_key_from_url(url)
    if storage_key is None:
        return False

    if _get_storage_backend() == "s3":
        try:
            get_s3_client().delete_object(Bucket=settings.S3_BUCKET, Key=storage_key)
        except (BotoCoreError, ClientError):
            logger.warning("Failed to delete attachment %s", storage_key, exc_info=True)
            return False
        return True

    path = os.path.join(get_local_storage_path(), storage_key)
    if not os.path.exists(path):
        return False
    os.remove(path)
    return True

"""
Local storage for uploaded spreadsheets.

Uploads are validated (extension, size) before anything is written, then
streamed to ``settings.upload_dir`` in chunks while the content hash is
computed, so large files never sit in memory.
"""
import hashlib
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import BinaryIO, Optional, Sequence

from candidate_intake.core.exceptions import FileTooLargeException, UnsupportedFileTypeException

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class StoredUpload:
    file_name: str
    storage_path: str
    file_size: int
    file_hash: str


def sanitize_file_name(file_name: str) -> str:
    """Strip any directory part and replace characters that are unsafe in a path."""
    base = os.path.basename(str(file_name or "").replace("\\", "/"))
    sanitized = _UNSAFE_CHARS.sub("_", base).strip("._")
    return sanitized or "upload"


def validate_extension(file_name: Optional[str], allowed_extensions: Sequence[str]) -> str:
    """Return the lower-cased extension or raise UnsupportedFileTypeException."""
    allowed = [ext.lower() for ext in allowed_extensions]
    ext = os.path.splitext(str(file_name or ""))[1].lower()
    if ext not in allowed:
        raise UnsupportedFileTypeException(file_name or "", allowed)
    return ext


def ensure_within_size_limit(file_size: int, file_name: str, limit_mb: int) -> None:
    """Raise FileTooLargeException if a file exceeds the configured upload limit."""
    if file_size > limit_mb * 1024 * 1024:
        raise FileTooLargeException(file_name, limit_mb)


def store_upload(
    source: BinaryIO,
    file_name: str,
    *,
    upload_dir: str,
    limit_mb: int,
    now: Optional[datetime] = None,
) -> StoredUpload:
    """
    Copy an upload stream to ``{upload_dir}/{timestamp}_{sanitized_name}``.

    The size limit is enforced while copying; an oversize upload leaves no
    file behind.
    """
    os.makedirs(upload_dir, exist_ok=True)
    timestamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d%H%M%S%f")
    storage_path = os.path.join(upload_dir, f"{timestamp}_{sanitize_file_name(file_name)}")

    digest = hashlib.sha256()
    size = 0
    try:
        with open(storage_path, "wb") as target:
            while True:
                chunk = source.read(CHUNK_SIZE)
                if not chunk:
                    break
                size += len(chunk)
                ensure_within_size_limit(size, file_name, limit_mb)
                digest.update(chunk)
                target.write(chunk)
    except BaseException:
        remove_stored_upload(storage_path)
        raise

    logger.info("Stored upload '%s' at %s (%d bytes)", file_name, storage_path, size)
    return StoredUpload(
        file_name=file_name,
        storage_path=storage_path,
        file_size=size,
        file_hash=digest.hexdigest(),
    )


def remove_stored_upload(storage_path: str) -> None:
    try:
        os.remove(storage_path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove stored upload %s: %s", storage_path, e)

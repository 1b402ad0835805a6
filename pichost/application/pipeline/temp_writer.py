import hashlib
import logging
import os
import re
import tempfile

from fastapi import UploadFile

from .stages import RawImage
from ...exceptions import MissingFilenameError, StorageIOError, UploadTooLargeError
from ...media_utils import remove_quietly

logger = logging.getLogger(__name__)

# A full hex-encoded SHA-256 is 64 characters. Only the first half is kept.
HASH_BYTES = 16
DEFAULT_CHUNK_SIZE = 64 * 1024

_SAFE_EXTENSION = re.compile(r"^\.[A-Za-z0-9]{1,10}$")


def _temp_suffix(filename: str) -> str:
    ext = os.path.splitext(os.path.basename(filename))[1]
    return ext if _SAFE_EXTENSION.match(ext) else ""


async def save_to_temp(upload: UploadFile, image_dir: str, max_bytes: int,
                       chunk_size: int = DEFAULT_CHUNK_SIZE) -> RawImage:
    """Stream an uploaded file into a temp file under ``image_dir``.

    The temp file lives in the image directory so the final rename into the
    library stays on the same volume. The content hash is computed over the
    same bytes while they are written.
    """
    filename = upload.filename
    if not filename:
        raise MissingFilenameError("No filename in upload")

    try:
        fd, temp_path = tempfile.mkstemp(prefix="temp-", suffix=_temp_suffix(filename), dir=image_dir)
    except OSError as e:
        raise StorageIOError(f"Failed to open temp file: {e}") from e

    hasher = hashlib.sha256()
    written = 0
    try:
        with os.fdopen(fd, "wb") as f:
            while True:
                chunk = await upload.read(chunk_size)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_bytes:
                    raise UploadTooLargeError(f"Upload exceeds {max_bytes} bytes")
                hasher.update(chunk)
                f.write(chunk)
    except OSError as e:
        remove_quietly(temp_path)
        raise StorageIOError(f"Failed to write temp file: {e}") from e
    except BaseException:
        remove_quietly(temp_path)
        raise

    content_hash = hasher.digest()[:HASH_BYTES].hex()
    logger.debug(f"Saved {written} bytes of {filename!r} to {temp_path} ({content_hash})")
    return RawImage(path=temp_path, hash=content_hash, original_filename=filename)

# services/storage_service.py
import os
import re
import logging
from dotenv import load_dotenv

from services.errors import InvalidInput, NotFound, PayloadTooLarge
from services.push_ids import generate_push_id

load_dotenv()

logger = logging.getLogger(__name__)

STORAGE_DIR = os.path.abspath(os.getenv("PARLEY_STORAGE_DIR", os.path.join(os.path.dirname(__file__), "..", "data", "uploads")))
MAX_UPLOAD_BYTES = int(os.getenv("PARLEY_MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))  # 10MB
ALLOWED_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}
FILES_PREFIX = "/files/"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_filename(filename: str, content_type: str) -> str:
    base = os.path.basename(filename or "")
    base = _UNSAFE_CHARS.sub("_", base).strip("._")
    if not base:
        base = "image"
    # the stored extension always matches the declared image type
    stem = os.path.splitext(base)[0] or "image"
    return f"{stem[:80]}{ALLOWED_TYPES[content_type]}"


def upload(owner_id: str, filename: str, data: bytes, content_type: str) -> dict:
    """Store an image blob and return its retrieval URL."""
    if content_type not in ALLOWED_TYPES:
        raise InvalidInput("File type not allowed")
    if not data:
        raise InvalidInput("Empty file")
    if len(data) > MAX_UPLOAD_BYTES:
        raise PayloadTooLarge(f"File too large. Maximum size is {MAX_UPLOAD_BYTES} bytes.")

    relative = "/".join([owner_id, f"{generate_push_id()}_{_safe_filename(filename, content_type)}"])
    full_path = resolve(relative, must_exist=False)
    os.makedirs(os.path.dirname(full_path), exist_ok=True)
    with open(full_path, "wb") as f:
        f.write(data)

    logger.info(f"Stored upload {relative} ({len(data)} bytes) for {owner_id}")
    return {
        "url": FILES_PREFIX + relative,
        "path": relative,
        "size": len(data),
        "content_type": content_type,
    }


def media_type(path: str) -> str:
    ext = os.path.splitext(path)[1].lower()
    for content_type, allowed_ext in ALLOWED_TYPES.items():
        if ext == allowed_ext:
            return content_type
    return "application/octet-stream"


def resolve(relative_path: str, must_exist: bool = True) -> str:
    """Map a storage path to a file under STORAGE_DIR, refusing traversal."""
    full_path = os.path.abspath(os.path.join(STORAGE_DIR, relative_path))
    if os.path.commonpath([full_path, STORAGE_DIR]) != STORAGE_DIR or full_path == STORAGE_DIR:
        raise NotFound("File not found")
    if must_exist and not os.path.isfile(full_path):
        raise NotFound("File not found")
    return full_path

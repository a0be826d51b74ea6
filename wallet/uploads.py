import logging
import uuid
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

MAX_PHOTO_BYTES = 10 * 1024 * 1024

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


class PhotoRejectedError(ValueError):
    pass


class PhotoTooLarge(PhotoRejectedError):
    pass


class PhotoStore:
    def __init__(self, upload_dir: str = "uploads", max_bytes: int = MAX_PHOTO_BYTES):
        self.root = Path(upload_dir)
        self.max_bytes = max_bytes

    def validate(self, content_type: Optional[str], data: bytes) -> None:
        if not content_type or not content_type.lower().startswith("image/"):
            raise PhotoRejectedError("Only image files are allowed")
        if not data:
            raise PhotoRejectedError("Uploaded file is empty")
        if len(data) > self.max_bytes:
            raise PhotoTooLarge(f"Image exceeds the {self.max_bytes // (1024 * 1024)} MB limit")

    def save(self, request_id: int, content_type: Optional[str], data: bytes) -> str:
        """Validate and write the image, returning its path relative to the upload dir."""
        self.validate(content_type, data)
        ext = _EXTENSIONS.get(content_type.lower().split(";")[0].strip(), ".img")
        relative = Path("purchase-photos") / f"{request_id}-{uuid.uuid4().hex}{ext}"
        target = self.root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.info("Stored photo evidence for purchase request %s at %s", request_id, relative)
        return relative.as_posix()

    def discard(self, relative_path: str) -> None:
        (self.root / relative_path).unlink(missing_ok=True)
        logger.info("Discarded orphaned photo %s", relative_path)

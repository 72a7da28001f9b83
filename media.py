from __future__ import annotations

import logging
import re
from secrets import token_hex
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

import cloudinary.exceptions
import cloudinary.uploader
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from config import Config
from exceptions import ImageStorageError, UploadRejected

logger = logging.getLogger(__name__)

ALLOWED_FORMATS = ("jpeg", "jpg", "png")
_EXTENSION_RE = re.compile(r"\.jpeg|\.jpg|\.png", re.IGNORECASE)


class UploadedImage(NamedTuple):
    secure_url: str
    public_id: str

    def to_doc(self) -> Dict[str, str]:
        return {"url": self.secure_url, "public_id": self.public_id}


def allowed_file(filename: str) -> bool:
    return "." in filename and filename.rsplit(".", 1)[1].lower() in ALLOWED_FORMATS


def unique_filename(original: str) -> str:
    """Drop image extensions from ``original`` and append 16 random bytes as hex."""
    stem = _EXTENSION_RE.sub("", secure_filename(original or ""))
    return stem + token_hex(16)


class ImageStorage:
    """Cloudinary-backed storage for post photos and profile images."""

    def __init__(self, config: Config) -> None:
        self.config = config

    def _credentials(self) -> Dict[str, Any]:
        return {
            "cloud_name": self.config.cloudinary_cloud_name,
            "api_key": self.config.cloudinary_api_key,
            "api_secret": self.config.cloudinary_secret,
        }

    def upload(self, file: FileStorage) -> UploadedImage:
        filename = file.filename or ""
        if not allowed_file(filename):
            raise UploadRejected(filename)
        try:
            result = cloudinary.uploader.upload(
                file.stream,
                folder=self.config.cloudinary_folder,
                public_id=unique_filename(filename),
                allowed_formats=list(ALLOWED_FORMATS),
                resource_type="image",
                **self._credentials(),
            )
        except cloudinary.exceptions.Error as exc:
            logger.exception("Cloudinary upload failed filename=%r", filename)
            raise ImageStorageError(f"Image upload failed: {exc}") from exc
        logger.info("Uploaded image public_id=%s", result["public_id"])
        return UploadedImage(result["secure_url"], result["public_id"])

    def upload_many(self, files: Iterable[FileStorage]) -> List[UploadedImage]:
        uploaded: List[UploadedImage] = []
        try:
            for file in files:
                if file and file.filename:
                    uploaded.append(self.upload(file))
        except (UploadRejected, ImageStorageError):
            for image in uploaded:
                self.delete(image.public_id)
            raise
        return uploaded

    def delete(self, public_id: Optional[str]) -> None:
        if not public_id:
            return
        try:
            result = cloudinary.uploader.destroy(public_id, resource_type="image", **self._credentials())
        except cloudinary.exceptions.Error as exc:
            logger.exception("Cloudinary destroy failed public_id=%s", public_id)
            raise ImageStorageError(f"Image delete failed: {exc}") from exc
        logger.info("Deleted image public_id=%s result=%s", public_id, (result or {}).get("result"))

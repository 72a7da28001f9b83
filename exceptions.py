"""Errors raised by the surf-shop adapters and views."""

from __future__ import annotations


class SurfShopError(Exception):
    """Base class for application errors."""


class ExternalServiceError(SurfShopError):
    """A remote service (geocoder, image host, mail relay) failed."""

    service = "external service"


class GeocodingError(ExternalServiceError):
    service = "geocoding"


class ImageStorageError(ExternalServiceError):
    service = "image storage"


class UploadRejected(SurfShopError):
    """The uploaded file is not an accepted image format."""

    def __init__(self, filename: str) -> None:
        super().__init__(f"{filename or 'File'} is not an allowed image (jpeg, jpg, png)")
        self.filename = filename

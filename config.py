from __future__ import annotations

import os
from dataclasses import dataclass, field
from secrets import token_hex
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv


@dataclass
class Config:
    secret_key: str = field(default_factory=lambda: token_hex(32))
    mongodb_uri: str = "mongodb://127.0.0.1:27017/surf_shop"
    mongodb_db_name: str = "surf_shop"
    mapbox_token: Optional[str] = None
    mapbox_api_url: str = "https://api.mapbox.com"
    geocoding_timeout: float = 10.0
    cloudinary_cloud_name: Optional[str] = None
    cloudinary_api_key: Optional[str] = None
    cloudinary_secret: Optional[str] = None
    cloudinary_folder: str = "surf-shop"
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_pass: Optional[str] = None
    smtp_from: Optional[str] = None
    posts_per_page: int = 10
    max_content_length: int = 5 * 1024 * 1024
    testing: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        if environ is None:
            load_dotenv()
            environ = os.environ
        defaults = cls()
        return cls(
            secret_key=environ.get("FLASK_SECRET_KEY") or defaults.secret_key,
            mongodb_uri=environ.get("MONGODB_URI", defaults.mongodb_uri),
            mongodb_db_name=environ.get("MONGODB_DB_NAME", defaults.mongodb_db_name),
            mapbox_token=environ.get("MAPBOX_TOKEN"),
            mapbox_api_url=environ.get("MAPBOX_API_URL", defaults.mapbox_api_url),
            cloudinary_cloud_name=environ.get("CLOUDINARY_CLOUD_NAME"),
            cloudinary_api_key=environ.get("CLOUDINARY_API_KEY"),
            cloudinary_secret=environ.get("CLOUDINARY_SECRET"),
            cloudinary_folder=environ.get("CLOUDINARY_FOLDER", defaults.cloudinary_folder),
            smtp_host=environ.get("SMTP_HOST") or None,
            smtp_port=_int(environ.get("SMTP_PORT"), defaults.smtp_port),
            smtp_user=environ.get("SMTP_USER") or None,
            smtp_pass=environ.get("SMTP_PASS") or None,
            smtp_from=environ.get("SMTP_FROM") or None,
            posts_per_page=_int(environ.get("POSTS_PER_PAGE"), defaults.posts_per_page),
        )

    def flask_settings(self) -> Dict[str, Any]:
        return {
            "SECRET_KEY": self.secret_key,
            "MONGODB_URI": self.mongodb_uri,
            "MONGODB_DB_NAME": self.mongodb_db_name,
            "MAX_CONTENT_LENGTH": self.max_content_length,
            "POSTS_PER_PAGE": self.posts_per_page,
            "TESTING": self.testing,
        }


def _int(raw: Optional[str], default: int) -> int:
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        return default

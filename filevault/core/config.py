# filevault/core/config.py
import tempfile
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent.parent

# MIME type -> extension accepted at the upload boundary
DEFAULT_ALLOWED_MIME_TYPES = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "application/pdf": "pdf",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "text/plain": "txt",
    "application/zip": "zip",
    "application/x-zip-compressed": "zip",
}


class Settings(BaseSettings):
    environment: str = "development"
    log_level: str = "INFO"

    database_url: str = f"sqlite:///{BASE_DIR / 'filevault.db'}"

    # Physical storage
    storage_root: Path = BASE_DIR / "storage"
    scratch_dir: Path = Path(tempfile.gettempdir()) / "filevault-scratch"
    staging_dir: Path = Path(tempfile.gettempdir()) / "filevault-staging"
    permission_fallback: bool = True

    # Uploads
    max_upload_size_bytes: int = 5 * 1024 * 1024
    allowed_mime_types: dict[str, str] = DEFAULT_ALLOWED_MIME_TYPES
    max_name_attempts: int = 1000
    system_folders: list[str] = []

    # Delivery
    chunk_size: int = 64 * 1024
    range_threshold_bytes: int = 10 * 1024 * 1024
    preview_timeout_seconds: float = 45.0
    cache_max_age: int = 3600

    # Tell pydantic-settings to load from .env at project root
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="FILEVAULT_",
        extra="ignore",  # ignore any extra stuff in .env
    )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    return Settings()

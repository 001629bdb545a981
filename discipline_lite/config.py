"""
Configuration for the Disciplinary Case Service
===============================================

Environment variables:
- CASE_NUMBER_PREFIX: Prefix for generated case numbers (default: DC)
- CASE_NUMBER_MAX_ATTEMPTS: Inserts retried on case number collision (default: 5)
- MAX_IMAGE_SIZE_KB: Ceiling per inline image payload (default: 500)
- MAX_DOCUMENT_SIZE_KB: Ceiling per inline document payload (default: 5120)
- UPLOAD_TIMEOUT_SECONDS: Per-upload timeout against the blob store (default: 30)
- STORAGE_BACKEND: imagekit|local (default: local)
- IMAGEKIT_PRIVATE_KEY / IMAGEKIT_PUBLIC_KEY / IMAGEKIT_URL_ENDPOINT
- LOCAL_STORAGE_DIR / LOCAL_STORAGE_BASE_URL
- JWT_SECRET_KEY / JWT_ALGORITHM: Bearer token verification
- TRUST_IDENTITY_HEADERS: Accept X-User-Id / X-User-Role from a trusted gateway (default: false)
- APPEND_MAX_ATTEMPTS: Optimistic retries for note/image appends (default: 3)
- CORS_ALLOW_ORIGINS: Comma separated list of origins

DATABASE_URL and SQL_ECHO are read by db.session.
"""

from typing import List, Optional
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings from environment variables"""

    # Case numbers
    case_number_prefix: str = "DC"
    case_number_max_attempts: int = 5

    # Evidence ceilings (KB)
    max_image_size_kb: int = 500
    max_document_size_kb: int = 5120

    # Uploads
    upload_timeout_seconds: float = 30.0
    storage_backend: str = "local"  # imagekit | local

    # ImageKit
    imagekit_private_key: Optional[str] = None
    imagekit_public_key: Optional[str] = None
    imagekit_url_endpoint: Optional[str] = None
    imagekit_upload_url: str = "https://upload.imagekit.io/api/v1/files/upload"

    # Local storage (development)
    local_storage_dir: str = "./uploads"
    local_storage_base_url: str = "http://localhost:8000/uploads"

    # Identity
    jwt_secret_key: str = "dev-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"
    trust_identity_headers: bool = False

    # Concurrency
    append_max_attempts: int = 3

    cors_allow_origins: str = "http://localhost:3000,http://127.0.0.1:3000"

    # Service info
    service_version: str = "1.0.0"

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"
        env_file_encoding = "utf-8"

    def validate_storage_config(self) -> List[str]:
        """Validate storage configuration, return list of warnings"""
        warnings = []

        if self.storage_backend == "imagekit":
            missing = [
                name for name, value in (
                    ("IMAGEKIT_PRIVATE_KEY", self.imagekit_private_key),
                    ("IMAGEKIT_PUBLIC_KEY", self.imagekit_public_key),
                    ("IMAGEKIT_URL_ENDPOINT", self.imagekit_url_endpoint),
                )
                if not value
            ]
            if missing:
                warnings.append(
                    f"STORAGE_BACKEND=imagekit but {', '.join(missing)} not set; uploads will fail"
                )
        elif self.storage_backend != "local":
            warnings.append(f"Unknown STORAGE_BACKEND={self.storage_backend!r}, falling back to local")

        if self.jwt_secret_key == "dev-secret-key-change-in-production":
            warnings.append("JWT_SECRET_KEY is the development default")

        return warnings

    def cors_origins(self) -> List[str]:
        origins: List[str] = []
        for item in self.cors_allow_origins.split(","):
            origin = item.strip().strip('"').strip("'").rstrip("/")
            if origin:
                origins.append(origin)
        return origins


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Database
    database_url: str = Field("sqlite:///./images.db")

    # Object storage (MinIO / S3)
    minio_endpoint: str = Field("minio:9000")
    minio_access_key: str = Field("minioadmin")
    minio_secret_key: str = Field("minioadmin")
    minio_secure: bool = Field(False)
    minio_bucket_name: str = Field("images")
    minio_region: str = Field("us-east-1")
    upload_url_expiry_seconds: int = Field(180)  # 3 minutes

    # Public base URL that stored keys are appended to
    image_domain: str = Field("http://localhost:9000/images")

    # Auth Service
    auth_service_url: str = Field("http://auth-service:8000")

    # Upload validation
    max_upload_size: int = Field(10 * 1024 * 1024)  # 10MB
    allowed_content_types: List[str] = Field(
        ["image/jpeg", "image/png", "image/webp", "image/avif", "image/tiff"]
    )

    # Image Processing
    default_quality: int = Field(80)
    max_image_pixels: int = Field(50_000_000)

    # Pagination
    default_page_size: int = Field(10)
    max_page_size: int = Field(100)

    # API Configuration
    api_title: str = "Image Transformation Service"
    api_description: str = "Upload originals, derive transformed variants and list them"
    api_version: str = "1.0.0"

    # Logging
    log_level: str = Field("INFO")

    # Metrics
    metrics_enabled: bool = Field(True)


settings = Settings()

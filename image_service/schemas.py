from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Any, Dict, List, Optional
from datetime import datetime
from enum import Enum

from image_service.config import settings


class OutputFormat(str, Enum):
    AVIF = "avif"
    WEBP = "webp"
    PNG = "png"
    JPEG = "jpeg"


class FitPolicy(str, Enum):
    COVER = "cover"
    CONTAIN = "contain"
    FILL = "fill"
    INSIDE = "inside"
    OUTSIDE = "outside"


# Request schemas
class UploadRequest(BaseModel):
    content_type: str = Field(..., max_length=100)
    file_size: int = Field(..., gt=0)

    @field_validator("content_type")
    @classmethod
    def normalize_content_type(cls, value: str) -> str:
        return value.strip().lower()


class CropSpec(BaseModel):
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    x: int = Field(0, ge=0)
    y: int = Field(0, ge=0)


class ResizeSpec(BaseModel):
    width: Optional[int] = Field(None, gt=0, le=10000)
    height: Optional[int] = Field(None, gt=0, le=10000)
    fit: FitPolicy = FitPolicy.COVER

    @model_validator(mode="after")
    def require_dimension(self):
        if self.width is None and self.height is None:
            raise ValueError("resize requires width, height or both")
        return self


class TransformationSpec(BaseModel):
    crop: Optional[CropSpec] = None
    resize: Optional[ResizeSpec] = None
    rotate: Optional[float] = Field(None, ge=-360, le=360)
    grayscale: bool = False
    # kept as a plain string; unknown names fall back to webp at encode time
    format: str = OutputFormat.WEBP.value
    quality: int = Field(default_factory=lambda: settings.default_quality, ge=1, le=100)
    lossless: bool = False

    @field_validator("format")
    @classmethod
    def normalize_format(cls, value: str) -> str:
        return value.strip().lower()


class TransformRequest(BaseModel):
    transformation: TransformationSpec = Field(default_factory=TransformationSpec)


# Catalog records
class OriginalImage(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    storage_key: str
    mime_type: str
    size_in_bytes: int
    uploaded_at: datetime


class DerivedImageCreated(BaseModel):
    id: int
    storage_key: str


class DerivedImageRecord(BaseModel):
    id: int
    storage_key: str
    original_image_id: int
    original_storage_key: str
    mime_type: str
    size_in_bytes: int
    created_at: datetime


# Response schemas
class UploadTicket(BaseModel):
    upload_url: str
    image_id: int
    storage_key: str
    expires_in: int


class TransformResult(BaseModel):
    id: int
    original_image_url: str
    transformed_image_url: str
    mime_type: str
    size_in_bytes: int


class DerivedImageView(BaseModel):
    id: int
    transformed_image_url: str
    original_image_url: str
    size_in_bytes: int
    mime_type: str
    created_at: datetime


class Pagination(BaseModel):
    total: int
    total_pages: int
    page_size: int
    current_page: int


class DerivedImagePage(BaseModel):
    items: List[DerivedImageView]
    pagination: Pagination


class ApiResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    data: Any = None
    meta: Optional[Dict[str, Any]] = None


class HealthCheck(BaseModel):
    status: str
    database: str
    storage: str

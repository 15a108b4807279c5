"""Typed failures raised by the ingestion and transformation pipeline.

Each error carries an HTTP-ish ``status_code`` and a stable ``code`` so the
API layer can render it without inspecting the message. ``NotFound`` and
``Forbidden`` share no base beyond ``ImageServiceError``.
"""
from typing import Any, Dict, List, Optional


class ImageServiceError(Exception):
    status_code = 500
    code = "INTERNAL_SERVER_ERROR"
    message = "Something went wrong"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[Dict[str, Any]]] = None):
        self.message = message or self.message
        self.errors = errors or []
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "code": self.code,
            "message": self.message,
            "errors": self.errors,
        }


class ValidationError(ImageServiceError):
    status_code = 400
    code = "BAD_REQUEST"
    message = "Validation Failed"


class NotFound(ImageServiceError):
    status_code = 404
    code = "NOT_FOUND"
    message = "Image not found"


class OriginalNotFound(NotFound):
    message = "Original image not found"


class DerivedNotFound(NotFound):
    pass


class ObjectNotFound(NotFound):
    message = "Image object not found in storage"


class Forbidden(ImageServiceError):
    status_code = 403
    code = "FORBIDDEN"
    message = "Forbidden"


class StorageUnavailable(ImageServiceError):
    status_code = 502
    code = "STORAGE_UNAVAILABLE"
    message = "Object storage request failed"


class PersistenceFailure(ImageServiceError):
    status_code = 500
    code = "PERSISTENCE_FAILURE"
    message = "Failed to persist image record"


class TransformationFailed(ImageServiceError):
    status_code = 500
    code = "TRANSFORMATION_FAILED"
    message = "Image transformation failed"


class InvalidCropGeometry(TransformationFailed):
    # caller supplied a region outside the source image
    status_code = 422
    code = "INVALID_CROP"
    message = "Crop region exceeds source image bounds"

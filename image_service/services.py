"""Coordinators for the ingestion, transformation and retrieval flows.

Each coordinator is a plain object wired with its collaborators at startup.
Operations fail fast on the first error and never retry; compensation is
limited to logging (an object stored before a failed catalog write is left
in place and reported).
"""
import asyncio
import time
import uuid
from typing import Any, Dict, Iterable, Optional, Union

import pydantic
import structlog

from image_service import schemas
from image_service.crud import ImageCatalog
from image_service.errors import Forbidden, ImageServiceError, PersistenceFailure, ValidationError
from image_service.image_processor import ImageProcessor, mime_type_for, resolve_format
from image_service.metrics import PipelineMetrics
from image_service.storage import StorageGateway

logger = structlog.get_logger(__name__)

# largest offset every supported database accepts as a bind parameter
MAX_OFFSET = 2 ** 31 - 1


def public_url(image_domain: str, storage_key: str) -> str:
    return f"{image_domain.rstrip('/')}/{storage_key}"


def build_upload_key(owner_id: int, content_type: str) -> str:
    subtype = content_type.split("/", 1)[1]
    return f"uploads/{owner_id}-{uuid.uuid4()}.{subtype}"


def build_derived_key(owner_id: int, extension: str) -> str:
    return f"transformed/{owner_id}-{uuid.uuid4()}.{extension}"


def _field_errors(exc: pydantic.ValidationError):
    return [
        {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]


def coerce_spec(spec: Union[schemas.TransformationSpec, Dict[str, Any], None]) -> schemas.TransformationSpec:
    """Accept a parsed spec or a raw mapping, raising ValidationError on bad input"""
    if isinstance(spec, schemas.TransformationSpec):
        return spec
    try:
        return schemas.TransformationSpec.model_validate(spec or {})
    except pydantic.ValidationError as e:
        raise ValidationError(errors=_field_errors(e)) from e


class IngestionCoordinator:
    def __init__(
        self,
        catalog: ImageCatalog,
        storage: StorageGateway,
        allowed_content_types: Iterable[str],
        max_upload_size: int,
        metrics: Optional[PipelineMetrics] = None,
    ):
        self.catalog = catalog
        self.storage = storage
        self.allowed_content_types = {ct.lower() for ct in allowed_content_types}
        self.max_upload_size = max_upload_size
        self.metrics = metrics or PipelineMetrics(enabled=False)

    def _validate(self, content_type: str, file_size: int):
        errors = []
        if content_type not in self.allowed_content_types:
            errors.append({
                "field": "content_type",
                "message": f"Unsupported content type, expected one of {sorted(self.allowed_content_types)}",
            })
        if file_size <= 0:
            errors.append({"field": "file_size", "message": "File size must be positive"})
        elif file_size > self.max_upload_size:
            errors.append({
                "field": "file_size",
                "message": f"File size must not exceed {self.max_upload_size} bytes",
            })
        if errors:
            raise ValidationError(errors=errors)

    async def begin_upload(self, owner_id: int, content_type: str, file_size: int) -> schemas.UploadTicket:
        """Reserve an original image and hand out a presigned upload url.

        The catalog row is written before any bytes reach storage, so it is a
        reservation rather than proof of upload. A fresh key is generated on
        every call, which makes caller retries safe.
        """
        content_type = (content_type or "").strip().lower()
        try:
            self._validate(content_type, file_size)
        except ValidationError:
            self.metrics.record_upload_credential("invalid")
            raise

        storage_key = build_upload_key(owner_id, content_type)

        try:
            upload_url = await self.storage.issue_write_credential(storage_key, content_type)
        except ImageServiceError:
            self.metrics.record_upload_credential("storage_error")
            raise

        try:
            image_id = await asyncio.to_thread(
                self.catalog.insert_original, owner_id, storage_key, content_type, file_size
            )
        except PersistenceFailure:
            self.metrics.record_upload_credential("persistence_error")
            logger.error(
                "Upload credential issued but original was not recorded",
                user_id=owner_id,
                storage_key=storage_key
            )
            raise

        self.metrics.record_upload_credential("success")
        logger.info("Presigned upload url generated", user_id=owner_id, image_id=image_id, storage_key=storage_key)

        return schemas.UploadTicket(
            upload_url=upload_url,
            image_id=image_id,
            storage_key=storage_key,
            expires_in=self.storage.upload_url_expiry,
        )


class TransformCoordinator:
    def __init__(
        self,
        catalog: ImageCatalog,
        storage: StorageGateway,
        processor: ImageProcessor,
        image_domain: str,
        metrics: Optional[PipelineMetrics] = None,
    ):
        self.catalog = catalog
        self.storage = storage
        self.processor = processor
        self.image_domain = image_domain
        self.metrics = metrics or PipelineMetrics(enabled=False)

    async def transform(self, requester_id: int, original_image_id: int, spec) -> schemas.TransformResult:
        """
        Derive a new image from an owned original

        Args:
            requester_id: Verified id of the calling user
            original_image_id: Id of the original to transform
            spec: TransformationSpec or an equivalent mapping

        Returns:
            Identity, public urls and MIME type of the stored derived image
        """
        start_time = time.time()
        spec = coerce_spec(spec)
        fmt = resolve_format(spec.format)

        try:
            result = await self._transform(requester_id, original_image_id, spec, fmt)
        except ImageServiceError as e:
            self.metrics.record_transform(e.code.lower(), fmt.value, time.time() - start_time)
            raise

        self.metrics.record_transform("success", fmt.value, time.time() - start_time, result.size_in_bytes)
        logger.info(
            "Image transformed successfully",
            original_image_id=original_image_id,
            derived_image_id=result.id,
            mime_type=result.mime_type,
            size_in_bytes=result.size_in_bytes,
            processing_time_ms=(time.time() - start_time) * 1000
        )
        return result

    async def _transform(self, requester_id, original_image_id, spec, fmt) -> schemas.TransformResult:
        original = await asyncio.to_thread(self.catalog.get_original, original_image_id)

        if original.user_id != requester_id:
            logger.warning(
                "Transform denied for non-owner",
                original_image_id=original_image_id,
                requester_id=requester_id
            )
            raise Forbidden()

        source = await self.storage.get_object(original.storage_key)

        data = await asyncio.to_thread(self.processor.apply, source, spec)

        mime_type = mime_type_for(fmt)
        storage_key = build_derived_key(original.user_id, fmt.value)
        await self.storage.put_object(storage_key, data, mime_type)

        try:
            created = await asyncio.to_thread(
                self.catalog.insert_derived, storage_key, original.id, mime_type, len(data)
            )
        except PersistenceFailure:
            # the uploaded object is not removed
            logger.error(
                "Derived image stored but not recorded, object orphaned",
                original_image_id=original.id,
                orphaned_key=storage_key
            )
            raise

        return schemas.TransformResult(
            id=created.id,
            original_image_url=public_url(self.image_domain, original.storage_key),
            transformed_image_url=public_url(self.image_domain, created.storage_key),
            mime_type=mime_type,
            size_in_bytes=len(data),
        )


class RetrievalCoordinator:
    def __init__(self, catalog: ImageCatalog, image_domain: str, max_page_size: int = 100):
        self.catalog = catalog
        self.image_domain = image_domain
        self.max_page_size = max_page_size

    def _to_view(self, record: schemas.DerivedImageRecord) -> schemas.DerivedImageView:
        return schemas.DerivedImageView(
            id=record.id,
            transformed_image_url=public_url(self.image_domain, record.storage_key),
            original_image_url=public_url(self.image_domain, record.original_storage_key),
            size_in_bytes=record.size_in_bytes,
            mime_type=record.mime_type,
            created_at=record.created_at,
        )

    async def get_one(self, requester_id: int, derived_id: int) -> schemas.DerivedImageView:
        # absent and not-owned both surface as NotFound
        record = await asyncio.to_thread(self.catalog.get_derived_for_owner, derived_id, requester_id)
        return self._to_view(record)

    async def list_page(self, requester_id: int, page: int = 1, page_size: int = 10) -> schemas.DerivedImagePage:
        page = max(page or 1, 1)
        page_size = min(max(page_size or 1, 1), self.max_page_size)
        # pages past the end come back empty with the requested page number
        skip = min((page - 1) * page_size, MAX_OFFSET)

        records, total = await asyncio.to_thread(
            self.catalog.list_derived_for_owner, requester_id, limit=page_size, offset=skip
        )
        pages = (total + page_size - 1) // page_size

        return schemas.DerivedImagePage(
            items=[self._to_view(record) for record in records],
            pagination=schemas.Pagination(
                total=total,
                total_pages=pages,
                page_size=page_size,
                current_page=page,
            ),
        )

from sqlalchemy import desc, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from typing import List, Tuple
import structlog

from image_service.errors import DerivedNotFound, OriginalNotFound, PersistenceFailure
from image_service.models import DerivedImage, OriginalImage
from image_service import schemas

logger = structlog.get_logger(__name__)


class ImageCatalog:
    """Persistence boundary for original and derived image provenance.

    Built once at startup around a session factory and handed to the
    coordinators. Rows are only ever inserted; every derived-image read is
    filtered by the owner of the referenced original inside the query.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def insert_original(self, user_id: int, storage_key: str, mime_type: str, size_in_bytes: int) -> int:
        with self.session_factory() as db:
            db_image = OriginalImage(
                user_id=user_id,
                storage_key=storage_key,
                mime_type=mime_type,
                size_in_bytes=size_in_bytes,
            )
            self._commit(db, db_image, "original")
            return db_image.id

    def get_original(self, image_id: int) -> schemas.OriginalImage:
        with self.session_factory() as db:
            try:
                db_image = db.query(OriginalImage).filter(OriginalImage.id == image_id).first()
            except SQLAlchemyError as e:
                logger.error("Failed to load original image", image_id=image_id, error=str(e))
                raise PersistenceFailure("Failed to load original image") from e

            if db_image is None:
                raise OriginalNotFound()
            return schemas.OriginalImage.model_validate(db_image)

    def insert_derived(self, storage_key: str, original_image_id: int, mime_type: str, size_in_bytes: int) -> schemas.DerivedImageCreated:
        with self.session_factory() as db:
            db_image = DerivedImage(
                storage_key=storage_key,
                original_image_id=original_image_id,
                mime_type=mime_type,
                size_in_bytes=size_in_bytes,
            )
            self._commit(db, db_image, "derived")
            return schemas.DerivedImageCreated(id=db_image.id, storage_key=db_image.storage_key)

    def get_derived_for_owner(self, derived_id: int, user_id: int) -> schemas.DerivedImageRecord:
        with self.session_factory() as db:
            try:
                row = (
                    self._owned_derived(db, user_id)
                    .filter(DerivedImage.id == derived_id)
                    .first()
                )
            except SQLAlchemyError as e:
                logger.error("Failed to load derived image", derived_id=derived_id, error=str(e))
                raise PersistenceFailure("Failed to load derived image") from e

            if row is None:
                raise DerivedNotFound()
            return self._to_record(row)

    def list_derived_for_owner(self, user_id: int, limit: int, offset: int) -> Tuple[List[schemas.DerivedImageRecord], int]:
        """Get a page of derived images, newest first, plus the owner's total"""
        with self.session_factory() as db:
            try:
                rows = (
                    self._owned_derived(db, user_id)
                    .order_by(desc(DerivedImage.created_at), desc(DerivedImage.id))
                    .offset(offset)
                    .limit(limit)
                    .all()
                )
                total = (
                    db.query(func.count(DerivedImage.id))
                    .join(OriginalImage, DerivedImage.original_image_id == OriginalImage.id)
                    .filter(OriginalImage.user_id == user_id)
                    .scalar()
                )
            except SQLAlchemyError as e:
                logger.error("Failed to list derived images", user_id=user_id, error=str(e))
                raise PersistenceFailure("Failed to list derived images") from e

            return [self._to_record(row) for row in rows], int(total or 0)

    def _owned_derived(self, db: Session, user_id: int):
        return (
            db.query(
                DerivedImage.id,
                DerivedImage.storage_key,
                DerivedImage.original_image_id,
                OriginalImage.storage_key.label("original_storage_key"),
                DerivedImage.mime_type,
                DerivedImage.size_in_bytes,
                DerivedImage.created_at,
            )
            .join(OriginalImage, DerivedImage.original_image_id == OriginalImage.id)
            .filter(OriginalImage.user_id == user_id)
        )

    @staticmethod
    def _to_record(row) -> schemas.DerivedImageRecord:
        return schemas.DerivedImageRecord(**row._asdict())

    @staticmethod
    def _commit(db: Session, db_image, kind: str):
        storage_key = db_image.storage_key
        try:
            db.add(db_image)
            db.commit()
            db.refresh(db_image)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to record image", kind=kind, storage_key=storage_key, error=str(e))
            raise PersistenceFailure(f"Failed to record {kind} image in database") from e

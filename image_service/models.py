from sqlalchemy import Column, Integer, BigInteger, String, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from image_service.database import Base


class OriginalImage(Base):
    __tablename__ = "original_images"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    storage_key = Column(Text, nullable=False, unique=True)
    mime_type = Column(String(100), nullable=False)
    size_in_bytes = Column(BigInteger, nullable=False)
    uploaded_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # Relationships
    derived_images = relationship("DerivedImage", back_populates="original", cascade="all, delete-orphan")


class DerivedImage(Base):
    __tablename__ = "derived_images"

    id = Column(Integer, primary_key=True, autoincrement=True)
    original_image_id = Column(
        Integer,
        ForeignKey("original_images.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    storage_key = Column(Text, nullable=False, unique=True)
    mime_type = Column(String(100), nullable=False)
    size_in_bytes = Column(BigInteger, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    # Relationships
    original = relationship("OriginalImage", back_populates="derived_images")

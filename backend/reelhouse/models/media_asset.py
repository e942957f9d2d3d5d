"""Media asset model"""
from sqlalchemy import Column, String, Text, DateTime, Float, Integer, Boolean, BigInteger, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from reelhouse.models.base import Base


def _utcnow():
    return datetime.now(timezone.utc)


class MediaAsset(Base):
    """Uploaded video and the lifecycle of its derived artifacts"""
    __tablename__ = "media_assets"

    id = Column(String(64), primary_key=True, index=True)  # opaque id supplied by the caller
    original_name = Column(String(255), nullable=False)
    filename = Column(String(255), nullable=False)  # stored file name, e.g. "{id}.mp4"
    path = Column(String(512), nullable=False)  # artifact store key of the original
    size = Column(BigInteger, nullable=False, default=0)
    mime_type = Column(String(100), nullable=False)
    duration = Column(Float, nullable=True)  # seconds, set by metadata extraction
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    codec = Column(String(50), nullable=True)
    fps = Column(Float, nullable=True)
    status = Column(String(20), default="uploading", nullable=False)  # uploading, processing, completed, failed
    processing_error = Column(Text)  # user-safe reason, only while failed
    thumbnail_path = Column(String(512))  # artifact store key of the primary thumbnail
    original_deleted = Column(Boolean, default=False, nullable=False)
    processing_started_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    renditions = relationship(
        "Rendition",
        back_populates="asset",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Rendition.created_at",
    )

    __table_args__ = (
        Index('ix_media_assets_status_updated_at', 'status', 'updated_at'),
    )

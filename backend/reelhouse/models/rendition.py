"""Rendition model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, BigInteger, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from reelhouse.models.base import Base


class Rendition(Base):
    """One transcoded quality of a media asset"""
    __tablename__ = "renditions"

    id = Column(Integer, primary_key=True, index=True)
    asset_id = Column(String(64), ForeignKey("media_assets.id", ondelete="CASCADE"), nullable=False, index=True)
    quality = Column(String(20), nullable=False)  # 360p, 480p, 720p, 1080p
    path = Column(String(512), nullable=False)  # artifact store key
    size = Column(BigInteger, nullable=False, default=0)
    bitrate = Column(String(20), nullable=False)  # e.g. "2500k"
    resolution = Column(String(20), nullable=False)  # e.g. "1280x720"
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    asset = relationship("MediaAsset", back_populates="renditions")

    __table_args__ = (
        UniqueConstraint('asset_id', 'quality', name='uq_renditions_asset_quality'),
    )

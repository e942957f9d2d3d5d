"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from reelhouse.models.base import Base
from reelhouse.models.media_asset import MediaAsset
from reelhouse.models.rendition import Rendition

# Export all for convenience
__all__ = ["Base", "MediaAsset", "Rendition"]

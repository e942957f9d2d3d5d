"""Database helper functions for media assets and renditions"""
import logging
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from reelhouse.models.media_asset import MediaAsset
from reelhouse.models.rendition import Rendition

logger = logging.getLogger(__name__)


def create_media_asset(
    db: Session,
    asset_id: str,
    original_name: str,
    filename: str,
    path: str,
    size: int,
    mime_type: str,
    status: str = "uploading",
) -> MediaAsset:
    """Persist a new media asset record

    Args:
        db: Database session
        asset_id: Opaque id supplied by the caller
        original_name: File name as uploaded by the client
        filename: Stored file name
        path: Artifact store key of the original
        size: Size of the original in bytes
        mime_type: Declared content type
        status: Initial status
    """
    asset = MediaAsset(
        id=asset_id,
        original_name=original_name,
        filename=filename,
        path=path,
        size=size,
        mime_type=mime_type,
        status=status,
    )
    db.add(asset)
    db.commit()
    db.refresh(asset)
    return asset


def get_media_asset(db: Session, asset_id: str) -> Optional[MediaAsset]:
    return db.query(MediaAsset).filter(MediaAsset.id == asset_id).first()


def save_media_asset(db: Session, asset: MediaAsset) -> MediaAsset:
    """Commit pending changes on an asset and reload it"""
    db.add(asset)
    db.commit()
    db.refresh(asset)
    return asset


def list_renditions(db: Session, asset_id: str) -> List[Rendition]:
    return db.query(Rendition).filter(Rendition.asset_id == asset_id).order_by(Rendition.id).all()


def create_rendition(
    db: Session,
    asset_id: str,
    quality: str,
    path: str,
    size: int,
    bitrate: str,
    resolution: str,
) -> Rendition:
    """Record a finished rendition, replacing any row for the same quality"""
    rendition = db.query(Rendition).filter(
        Rendition.asset_id == asset_id,
        Rendition.quality == quality
    ).first()
    if rendition is None:
        rendition = Rendition(asset_id=asset_id, quality=quality)
        db.add(rendition)
    rendition.path = path
    rendition.size = size
    rendition.bitrate = bitrate
    rendition.resolution = resolution
    db.commit()
    db.refresh(rendition)
    return rendition


def delete_renditions(db: Session, asset_id: str) -> int:
    count = db.query(Rendition).filter(Rendition.asset_id == asset_id).delete(synchronize_session=False)
    db.commit()
    return count


def delete_media_asset(db: Session, asset_id: str) -> bool:
    """Delete an asset row and its rendition rows"""
    asset = get_media_asset(db, asset_id)
    if asset is None:
        return False
    db.query(Rendition).filter(Rendition.asset_id == asset_id).delete(synchronize_session=False)
    db.delete(asset)
    db.commit()
    return True


def find_stale_assets(db: Session, cutoff: datetime, statuses: Sequence[str] = ("uploading", "processing")) -> List[MediaAsset]:
    """Assets stuck in an in-flight status since before ``cutoff``"""
    return db.query(MediaAsset).filter(
        MediaAsset.status.in_(list(statuses)),
        MediaAsset.updated_at < cutoff
    ).all()

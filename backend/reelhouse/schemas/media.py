"""Pydantic schemas for media assets"""
from datetime import datetime
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class _StatusBase(BaseModel):
    id: str


class UploadingStatus(_StatusBase):
    status: Literal["uploading"] = "uploading"


class ProcessingStatus(_StatusBase):
    status: Literal["processing"] = "processing"
    progress: float = 0.0  # 0-100
    completed_qualities: List[str] = []
    quality_progress: Dict[str, float] = {}


class CompletedStatus(_StatusBase):
    status: Literal["completed"] = "completed"
    duration: float
    qualities: List[str]
    thumbnail_url: Optional[str] = None


class FailedStatus(_StatusBase):
    status: Literal["failed"] = "failed"
    reason: str


StatusView = Annotated[
    Union[UploadingStatus, ProcessingStatus, CompletedStatus, FailedStatus],
    Field(discriminator="status"),
]


class RenditionResponse(BaseModel):
    quality: str
    resolution: str
    bitrate: str
    size: int
    url: str


class MediaAssetResponse(BaseModel):
    id: str
    original_name: str
    mime_type: str
    size: int
    duration: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    codec: Optional[str] = None
    fps: Optional[float] = None
    original_available: bool
    created_at: datetime
    updated_at: datetime
    state: StatusView
    renditions: List[RenditionResponse] = []


class UploadAcceptedResponse(BaseModel):
    id: str
    status: str


class ToolInfo(BaseModel):
    available: bool
    binary: str
    version: Optional[str] = None


class ToolHealthResponse(BaseModel):
    healthy: bool
    tools: Dict[str, ToolInfo]

# studio_ingest/schemas/ingest.py
from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

TagType = Literal["normal", "project", "filename"]


class TagIn(BaseModel):
    name: str
    tag_type: TagType = "normal"
    color: Optional[str] = None


class TagOut(BaseModel):
    id: int
    name: str
    slug: str
    tag_type: str
    color: Optional[str] = None


class TagsIn(BaseModel):
    tags: list[TagIn] = Field(default_factory=list)


class StagedImageOut(BaseModel):
    id: str
    original_filename: str
    file_size: Optional[int] = None
    thumbnail_url: Optional[str] = None
    preview_url: Optional[str] = None
    preview_width: Optional[int] = None
    preview_status: str
    preview_error: Optional[str] = None
    enhancement_status: str = "none"
    culled: bool = False
    starred: bool = False
    rating: int = 0
    rotation: int = 0
    order_index: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    extraction_method: Optional[str] = None
    metadata_error: Optional[str] = None
    created_at: str
    tags: list[TagOut] = Field(default_factory=list)


class ImageEdit(BaseModel):
    """Only the fields that are sent are applied."""
    culled: Optional[bool] = None
    starred: Optional[bool] = None
    rating: Optional[int] = None
    rotation: Optional[int] = None
    order_index: Optional[int] = None


class BatchEdit(BaseModel):
    ids: list[str]
    changes: ImageEdit = Field(default_factory=ImageEdit)
    tags: Optional[list[TagIn]] = None


class IdsIn(BaseModel):
    ids: list[str]


class PreviewStatusOut(BaseModel):
    id: str
    preview_status: str
    preview_url: Optional[str] = None
    preview_width: Optional[int] = None
    preview_error: Optional[str] = None
    thumbnail_url: Optional[str] = None
    enhancement_status: str = "none"


class EnhanceOut(BaseModel):
    id: str
    status: Literal["queued", "already_max", "busy", "rejected", "not_found"]
    target_width: Optional[int] = None
    width: Optional[int] = None
    detail: Optional[str] = None


class AssociationIn(BaseModel):
    type: str
    id: str


class PromoteIn(BaseModel):
    ids: list[str]
    association: Optional[AssociationIn] = None


class PromotionOutcomeOut(BaseModel):
    image_id: str
    status: Literal["promoted", "failed"]
    final_image_id: Optional[int] = None
    file_path: Optional[str] = None
    sequence: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class PromoteOut(BaseModel):
    batch_id: str
    promoted: list[PromotionOutcomeOut]
    failed: list[PromotionOutcomeOut]
    skipped: list[str]


class SettingsIn(BaseModel):
    values: dict[str, Any]


class SettingsOut(BaseModel):
    effective: dict[str, Any]
    overrides: dict[str, Any]

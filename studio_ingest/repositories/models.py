# studio_ingest/repositories/models.py
# Row objects returned by the repositories.

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Optional

PREVIEW_STATUSES = ("pending", "processing", "ready", "failed")
ENHANCEMENT_STATUSES = ("none", "requested", "processing", "ready", "failed")
TAG_TYPES = ("normal", "project", "filename")
SINGLE_VALUED_TAG_TYPES = ("project", "filename")
ROTATIONS = (0, 90, 180, 270, -90, -180, -270)


def _json_or_none(s: Optional[str]) -> Optional[dict]:
    if not s:
        return None
    return json.loads(s)


@dataclass
class Tag:
    id: int
    name: str
    slug: str
    tag_type: str = "normal"
    color: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Tag":
        return cls(id=row["id"], name=row["name"], slug=row["slug"],
                   tag_type=row["tag_type"], color=row["color"])


@dataclass
class StagedImage:
    id: str
    user_id: int
    original_filename: str
    temp_path: str
    file_size: Optional[int] = None
    thumbnail_path: Optional[str] = None
    preview_path: Optional[str] = None
    preview_width: Optional[int] = None
    preview_status: str = "pending"
    preview_attempted_at: Optional[str] = None
    preview_attempt: int = 0
    preview_error: Optional[str] = None
    enhancement_status: str = "none"
    enhancement_width: Optional[int] = None
    enhancement_error: Optional[str] = None
    culled: bool = False
    starred: bool = False
    rating: int = 0
    rotation: int = 0
    order_index: int = 0
    metadata: dict = field(default_factory=dict)
    metadata_raw: Optional[dict] = None
    extraction_method: Optional[str] = None
    metadata_error: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    tags: list[Tag] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: sqlite3.Row, tags: Optional[list[Tag]] = None) -> "StagedImage":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            original_filename=row["original_filename"],
            temp_path=row["temp_path"],
            file_size=row["file_size"],
            thumbnail_path=row["thumbnail_path"],
            preview_path=row["preview_path"],
            preview_width=row["preview_width"],
            preview_status=row["preview_status"],
            preview_attempted_at=row["preview_attempted_at"],
            preview_attempt=row["preview_attempt"],
            preview_error=row["preview_error"],
            enhancement_status=row["enhancement_status"],
            enhancement_width=row["enhancement_width"],
            enhancement_error=row["enhancement_error"],
            culled=bool(row["culled"]),
            starred=bool(row["starred"]),
            rating=row["rating"],
            rotation=row["rotation"],
            order_index=row["order_index"],
            metadata=_json_or_none(row["metadata"]) or {},
            metadata_raw=_json_or_none(row["metadata_raw"]),
            extraction_method=row["extraction_method"],
            metadata_error=row["metadata_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            tags=list(tags or []),
        )

    def tag_of_type(self, tag_type: str) -> Optional[Tag]:
        for t in self.tags:
            if t.tag_type == tag_type:
                return t
        return None


@dataclass
class FinalImage:
    id: int
    user_id: int
    disk: str
    file_path: str
    file_name: str
    staged_id: str
    batch_id: Optional[str] = None
    sequence: Optional[int] = None
    size: Optional[int] = None
    columns: dict[str, Any] = field(default_factory=dict)
    raw_metadata: Optional[dict] = None
    imageable_type: Optional[str] = None
    imageable_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row, column_names: tuple[str, ...]) -> "FinalImage":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            disk=row["disk"],
            file_path=row["file_path"],
            file_name=row["file_name"],
            staged_id=row["staged_id"],
            batch_id=row["batch_id"],
            sequence=row["sequence"],
            size=row["size"],
            columns={c: row[c] for c in column_names},
            raw_metadata=_json_or_none(row["raw_metadata"]),
            imageable_type=row["imageable_type"],
            imageable_id=row["imageable_id"],
        )

# studio_ingest/services/promotion.py
# Promotion: staged image -> schema-named file in final storage + final_images row.
#
# One image = one BEGIN IMMEDIATE transaction:
#   read batch counter -> render name -> copy file -> insert final row + tags
#   -> delete staged row -> bump counter -> COMMIT
# Anything failing before COMMIT rolls back and removes the copied file, so the
# staged row is untouched and the caller can retry.

from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional

from studio_ingest.core.config import IngestConfig
from studio_ingest.core.errors import (
    AssociationError,
    ImageNotFoundError,
    IngestError,
    PromotionError,
    SourceUnreadableError,
)
from studio_ingest.core.logging import get_logger, image_logger
from studio_ingest.repositories.db import connect, transaction, utcnow
from studio_ingest.repositories.models import FinalImage, StagedImage
from studio_ingest.repositories.staging import StagingRegistry
from studio_ingest.services.metadata import (
    _as_float,
    _as_int,
    _clean_str,
    _ungroup,
    normalize_metadata,
    parse_exif_datetime,
    parse_focal_length,
    parse_gps,
    parse_shutter,
)
from studio_ingest.services.naming import NamingContext, render_destination, resolve_collision
from studio_ingest.services.storage import LocalStorage

log = get_logger("promotion")


# -------------------- denormalized columns --------------------

def _f2(v) -> Optional[float]:
    f = _as_float(v)
    return round(f, 2) if f is not None else None


def _date(v) -> Optional[str]:
    dt = parse_exif_datetime(v)
    return dt.isoformat() if dt else None


_COLUMN_PARSERS: dict[str, Callable] = {
    "date_taken": _date,
    "camera_make": _clean_str,
    "camera_model": _clean_str,
    "lens": _clean_str,
    "f_stop": _f2,
    "iso": _as_int,
    "shutter_speed": parse_shutter,
    "focal_length": parse_focal_length,
    "gps_lat": None,   # needs the Ref tag, see project_columns
    "gps_lng": None,
}
FINAL_COLUMNS = tuple(_COLUMN_PARSERS)


def project_columns(raw_metadata: Optional[Mapping], denormalize_keys: Mapping[str, str]) -> dict:
    """
    Fast-filter columns for final_images, computed from raw metadata alone.
    Each configured raw key feeds its column; when that key is absent the
    normalized value (which knows the tag aliases) is used instead.
    """
    raw = _ungroup(dict(raw_metadata or {}))
    normalized = normalize_metadata(raw)
    out: dict = {c: None for c in FINAL_COLUMNS}
    for src_key, column in denormalize_keys.items():
        if column not in _COLUMN_PARSERS:
            log.warning("denormalize_keys: unknown column %r (from %r) ignored", column, src_key)
            continue
        value = None
        if raw.get(src_key) not in (None, ""):
            if column in ("gps_lat", "gps_lng"):
                value = parse_gps({"GPSX": raw[src_key], "GPSXRef": raw.get(f"{src_key}Ref")}, "X")
            else:
                value = _COLUMN_PARSERS[column](raw[src_key])
        if value is None:
            value = normalized.get(column)
        out[column] = value
    return out


# -------------------- associations --------------------

class AssociationRegistry:
    """
    Host entities a promoted image may attach to, as (type tag, opaque id).
    Each type has a resolver: id -> bool (does the entity exist / may it be used).
    """

    def __init__(self) -> None:
        self._resolvers: dict[str, Callable[[str], bool]] = {}

    def register(self, type_name: str, resolver: Callable[[str], bool]) -> None:
        self._resolvers[type_name] = resolver

    def types(self) -> list[str]:
        return sorted(self._resolvers)

    def validate(self, association: Optional[Mapping], allowed_types: Iterable[str]) -> Optional[tuple[str, str]]:
        if not association:
            return None
        type_name = str(association.get("type") or "")
        entity_id = str(association.get("id") or "")
        if not type_name or not entity_id:
            raise AssociationError("association needs both type and id")
        allowed = set(allowed_types or [])
        if type_name not in allowed:
            raise AssociationError(f"association type '{type_name}' is not enabled")
        resolver = self._resolvers.get(type_name)
        if resolver is None:
            raise AssociationError(f"no resolver registered for association type '{type_name}'")
        if not resolver(entity_id):
            raise AssociationError(f"{type_name} '{entity_id}' not found")
        return type_name, entity_id


# -------------------- batch locks --------------------

class BatchLocks:
    """In-process lock per batch id; the sqlite write lock covers other processes."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def get(self, batch_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(batch_id, threading.Lock())

    def discard(self, batch_id: str) -> None:
        with self._guard:
            self._locks.pop(batch_id, None)


# -------------------- promotion --------------------

@dataclass
class PromotionOutcome:
    image_id: str
    status: str                        # promoted | failed
    final_image_id: Optional[int] = None
    file_path: Optional[str] = None
    sequence: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class BatchReport:
    batch_id: str
    outcomes: list[PromotionOutcome] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)   # culled or not owned

    @property
    def promoted(self) -> list[PromotionOutcome]:
        return [o for o in self.outcomes if o.status == "promoted"]

    @property
    def failed(self) -> list[PromotionOutcome]:
        return [o for o in self.outcomes if o.status == "failed"]


class Promoter:
    def __init__(self, config: IngestConfig, *, db_path: Path, temp: LocalStorage, final: LocalStorage,
                 associations: Optional[AssociationRegistry] = None,
                 locks: Optional[BatchLocks] = None) -> None:
        self.config = config
        self.db_path = Path(db_path)
        self.busy_timeout_ms = int(config.get("db.busy_timeout_ms", 30000))
        self.temp = temp
        self.final = final
        self.associations = associations or AssociationRegistry()
        self.locks = locks or BatchLocks()
        self.registry = StagingRegistry(db_path, busy_timeout_ms=self.busy_timeout_ms)

    # ---- batches ----

    def open_batch(self, user_id: int) -> str:
        batch_id = str(uuid.uuid4())
        start = int(self.config.get("schema.sequence_start", 1))
        with connect(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as c, transaction(c):
            c.execute(
                "INSERT INTO ingest_batches (id, user_id, next_sequence, created_at) VALUES (?, ?, ?, ?)",
                (batch_id, user_id, start, utcnow()),
            )
        return batch_id

    def close_batch(self, batch_id: str) -> None:
        with connect(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as c, transaction(c):
            c.execute("UPDATE ingest_batches SET finished_at = ? WHERE id = ?", (utcnow(), batch_id))
        self.locks.discard(batch_id)

    # ---- one image ----

    def _context(self, img: StagedImage, sequence: int, conn: sqlite3.Connection) -> NamingContext:
        md = img.metadata or {}
        date = None
        if md.get("date_taken"):
            try:
                date = datetime.fromisoformat(md["date_taken"])
            except ValueError:
                date = None
        if date is None:
            date = datetime.fromisoformat(img.created_at)
        return NamingContext(
            image_id=img.id,
            original_filename=img.original_filename,
            sequence=sequence,
            date=date,
            camera_make=md.get("camera_make"),
            camera_model=md.get("camera_model"),
            project=self.registry.tags.project_tag_name(img.id, conn=conn),
            filename_tag=self.registry.tags.filename_tag_name(img.id, conn=conn),
        )

    def _taken(self, conn: sqlite3.Connection, rel: str) -> bool:
        if self.final.exists(rel):
            return True
        row = conn.execute(
            "SELECT 1 FROM final_images WHERE disk = ? AND file_path = ?", (self.final.name, rel)
        ).fetchone()
        return row is not None

    def promote(self, image_id: str, batch_id: str, *, user_id: int,
                association: Optional[tuple[str, str]] = None) -> PromotionOutcome:
        """Promote one image inside `batch_id`. Raises a typed IngestError on failure."""
        ilog = image_logger(log, image_id)
        schema = self.config.section("schema")
        policy = str(schema.get("on_collision", "suffix"))
        keys = self.config.get("exif.denormalize_keys", {}) or {}

        with self.locks.get(batch_id):
            with connect(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as conn:
                written: Optional[str] = None
                try:
                    with transaction(conn):
                        img = self.registry.find(image_id, user_id=user_id, conn=conn)
                        if img is None:
                            raise ImageNotFoundError(f"staged image {image_id} not found")
                        if img.culled:
                            raise PromotionError(f"image {image_id} is culled")
                        batch = conn.execute(
                            "SELECT next_sequence FROM ingest_batches WHERE id = ? AND user_id = ?",
                            (batch_id, user_id),
                        ).fetchone()
                        if batch is None:
                            raise PromotionError(f"unknown ingest batch {batch_id}")
                        sequence = int(batch["next_sequence"])

                        dest = render_destination(schema, self._context(img, sequence, conn))
                        rel = resolve_collision(dest.relative_path, lambda r: self._taken(conn, r), policy)

                        source = self.temp.path(img.temp_path)
                        if not source.is_file():
                            raise SourceUnreadableError(f"staged file missing: {img.temp_path}")
                        self.final.copy_from(source, rel)
                        written = rel

                        raw = img.metadata_raw if img.metadata_raw is not None else {}
                        columns = project_columns(raw, keys)
                        cols = ", ".join(FINAL_COLUMNS)
                        marks = ", ".join("?" * len(FINAL_COLUMNS))
                        cur = conn.execute(
                            f"""INSERT INTO final_images (
                                    user_id, batch_id, sequence, staged_id, disk, file_path, file_name,
                                    original_filename, size, {cols}, raw_metadata,
                                    imageable_type, imageable_id, created_at)
                                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, {marks}, ?, ?, ?, ?)""",
                            (user_id, batch_id, sequence, img.id, self.final.name, rel,
                             rel.rsplit("/", 1)[-1], img.original_filename, self.final.size(rel),
                             *[columns[c] for c in FINAL_COLUMNS],
                             json.dumps(raw),
                             association[0] if association else None,
                             association[1] if association else None,
                             utcnow()),
                        )
                        final_id = int(cur.lastrowid)
                        self.registry.tags.copy_to_final(conn, img.id, final_id)
                        conn.execute("DELETE FROM staged_images WHERE id = ?", (img.id,))
                        conn.execute(
                            """UPDATE ingest_batches
                               SET next_sequence = next_sequence + 1, promoted_count = promoted_count + 1
                               WHERE id = ?""",
                            (batch_id,),
                        )
                except BaseException:
                    if written:
                        self.final.delete(written)
                    raise

        # committed: staging artifacts are now garbage
        for rel_tmp in (img.temp_path, img.thumbnail_path, img.preview_path):
            try:
                self.temp.delete(rel_tmp)
            except (OSError, IngestError) as e:
                ilog.warning("could not remove staging file %s: %s", rel_tmp, e)
        ilog.info("promoted -> %s (seq %d)", rel, sequence)
        return PromotionOutcome(image_id=image_id, status="promoted", final_image_id=final_id,
                                file_path=rel, sequence=sequence)

    # ---- many ----

    def promote_many(self, image_ids: Iterable[str], *, user_id: int,
                     association: Optional[Mapping] = None) -> BatchReport:
        """Non-culled images in display order; one failure does not stop the rest."""
        ids = list(dict.fromkeys(image_ids))
        assoc = self.associations.validate(association, self.config.get("associations.types", []) or [])
        ordered = self.registry.ordered_for_promotion(ids, user_id)
        batch_id = self.open_batch(user_id)
        report = BatchReport(batch_id=batch_id, skipped=[i for i in ids if i not in set(ordered)])
        try:
            for image_id in ordered:
                try:
                    report.outcomes.append(self.promote(image_id, batch_id, user_id=user_id, association=assoc))
                except IngestError as e:
                    image_logger(log, image_id).warning("promotion failed: %s", e)
                    report.outcomes.append(PromotionOutcome(image_id=image_id, status="failed",
                                                            error=e.message, error_code=e.code))
        finally:
            self.close_batch(batch_id)
        return report

    def get_final(self, final_image_id: int) -> Optional[FinalImage]:
        with connect(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as c:
            row = c.execute("SELECT * FROM final_images WHERE id = ?", (final_image_id,)).fetchone()
        return FinalImage.from_row(row, FINAL_COLUMNS) if row else None

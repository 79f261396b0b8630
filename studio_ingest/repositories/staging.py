# studio_ingest/repositories/staging.py
# Staging registry: the authoritative state of an upload until promotion.
#
# Status columns double as mutexes. Every transition is a conditional UPDATE
# (WHERE status = <expected>) and the rowcount says whether we won.

from __future__ import annotations

import json
import sqlite3
from typing import Any, Iterable, Mapping, Optional

from studio_ingest.core.errors import ImageNotFoundError, InvalidEditError
from studio_ingest.repositories.db import Repository, utcnow
from studio_ingest.repositories.models import ROTATIONS, StagedImage
from studio_ingest.repositories.tags import TagResolver

EDITABLE_FIELDS = ("culled", "starred", "rating", "rotation", "order_index")


def validate_changes(changes: Mapping[str, Any]) -> dict:
    """Check a user edit and coerce it to column values."""
    out: dict = {}
    for key, value in changes.items():
        if value is None:
            continue
        if key not in EDITABLE_FIELDS:
            raise InvalidEditError(f"field '{key}' is not editable")
        if key in ("culled", "starred"):
            if not isinstance(value, bool):
                raise InvalidEditError(f"{key} must be a boolean")
            out[key] = int(value)
        elif key == "rating":
            if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 5:
                raise InvalidEditError("rating must be an integer 0..5")
            out[key] = value
        elif key == "rotation":
            if isinstance(value, bool) or value not in ROTATIONS:
                raise InvalidEditError(f"rotation must be one of {ROTATIONS}")
            out[key] = int(value)
        elif key == "order_index":
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise InvalidEditError("order_index must be a non-negative integer")
            out[key] = value
    return out


class StagingRegistry(Repository):

    def __init__(self, db_path, *, busy_timeout_ms: int = 30000) -> None:
        super().__init__(db_path, busy_timeout_ms=busy_timeout_ms)
        self.tags = TagResolver(db_path, busy_timeout_ms=busy_timeout_ms)

    # ---- create / read ----

    def create(self, *, image_id: str, user_id: int, original_filename: str, temp_path: str,
               file_size: Optional[int], metadata: Optional[dict], metadata_raw: Optional[dict],
               extraction_method: Optional[str], metadata_error: Optional[str],
               thumbnail_path: Optional[str]) -> StagedImage:
        now = utcnow()
        with self._write() as c:
            row = c.execute(
                "SELECT COALESCE(MAX(order_index) + 1, 0) AS nxt FROM staged_images WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            c.execute(
                """INSERT INTO staged_images (
                       id, user_id, original_filename, temp_path, file_size, thumbnail_path,
                       order_index, metadata, metadata_raw, extraction_method, metadata_error,
                       created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (image_id, user_id, original_filename, temp_path, file_size, thumbnail_path,
                 row["nxt"], json.dumps(metadata or {}),
                 json.dumps(metadata_raw) if metadata_raw is not None else None,
                 extraction_method, metadata_error, now, now),
            )
        return self.get(image_id)

    def find(self, image_id: str, *, user_id: Optional[int] = None,
             conn: Optional[sqlite3.Connection] = None) -> Optional[StagedImage]:
        sql = "SELECT * FROM staged_images WHERE id = ?"
        args: list = [image_id]
        if user_id is not None:
            sql += " AND user_id = ?"
            args.append(user_id)
        with self._read(conn) as c:
            row = c.execute(sql, args).fetchone()
            if not row:
                return None
            return StagedImage.from_row(row, self.tags.tags_for(image_id, conn=c))

    def get(self, image_id: str, *, user_id: Optional[int] = None,
            conn: Optional[sqlite3.Connection] = None) -> StagedImage:
        img = self.find(image_id, user_id=user_id, conn=conn)
        if img is None:
            raise ImageNotFoundError(f"staged image {image_id} not found")
        return img

    def list_for_user(self, user_id: int) -> list[StagedImage]:
        with self._read() as c:
            rows = c.execute(
                "SELECT * FROM staged_images WHERE user_id = ? ORDER BY order_index, created_at",
                (user_id,),
            ).fetchall()
            tags = self.tags.tags_for_many([r["id"] for r in rows], conn=c)
        return [StagedImage.from_row(r, tags[r["id"]]) for r in rows]

    def preview_statuses(self, image_ids: Iterable[str], *, user_id: Optional[int] = None) -> list[dict]:
        """Cheap read for client polling. Triggers no work."""
        ids = list(dict.fromkeys(image_ids))
        if not ids:
            return []
        marks = ",".join("?" * len(ids))
        sql = (f"""SELECT id, preview_status, preview_path, preview_width, preview_error,
                          thumbnail_path, enhancement_status
                   FROM staged_images WHERE id IN ({marks})""")
        args: list = list(ids)
        if user_id is not None:
            sql += " AND user_id = ?"
            args.append(user_id)
        with self._read() as c:
            rows = {r["id"]: dict(r) for r in c.execute(sql, args).fetchall()}
        return [rows[i] for i in ids if i in rows]

    def ordered_for_promotion(self, image_ids: Iterable[str], user_id: int) -> list[str]:
        """Requested, non-culled ids in display order."""
        ids = list(dict.fromkeys(image_ids))
        if not ids:
            return []
        marks = ",".join("?" * len(ids))
        with self._read() as c:
            rows = c.execute(
                f"""SELECT id FROM staged_images
                    WHERE id IN ({marks}) AND user_id = ? AND culled = 0
                    ORDER BY order_index, created_at""",
                [*ids, user_id],
            ).fetchall()
        return [r["id"] for r in rows]

    # ---- edits ----

    def update(self, image_id: str, user_id: int, changes: Mapping[str, Any]) -> StagedImage:
        values = validate_changes(changes)
        with self._write() as c:
            self.get(image_id, user_id=user_id, conn=c)
            if values:
                cols = ", ".join(f"{k} = ?" for k in values)
                c.execute(
                    f"UPDATE staged_images SET {cols}, updated_at = ? WHERE id = ?",
                    [*values.values(), utcnow(), image_id],
                )
        return self.get(image_id)

    def batch_update(self, image_ids: Iterable[str], user_id: int, changes: Mapping[str, Any],
                     tags: Optional[list[Mapping]] = None) -> list[StagedImage]:
        """One change set (and optionally tags to add) across many images, all or nothing."""
        ids = list(dict.fromkeys(image_ids))
        values = validate_changes(changes)
        with self._write() as c:
            for image_id in ids:
                self.get(image_id, user_id=user_id, conn=c)
            if values:
                cols = ", ".join(f"{k} = ?" for k in values)
                now = utcnow()
                for image_id in ids:
                    c.execute(
                        f"UPDATE staged_images SET {cols}, updated_at = ? WHERE id = ?",
                        [*values.values(), now, image_id],
                    )
            if tags:
                for image_id in ids:
                    self.tags.add(image_id, tags, conn=c)
        return [self.get(i) for i in ids]

    def reorder(self, user_id: int, ordered_ids: list[str]) -> list[StagedImage]:
        """
        Full or partial ordering. Listed ids take over the slots they held,
        in listed order; unlisted ids keep theirs. order_index is then
        renumbered 0..n-1.
        """
        if len(set(ordered_ids)) != len(ordered_ids):
            raise InvalidEditError("duplicate ids in ordering")
        with self._write() as c:
            rows = c.execute(
                "SELECT id FROM staged_images WHERE user_id = ? ORDER BY order_index, created_at",
                (user_id,),
            ).fetchall()
            current = [r["id"] for r in rows]
            unknown = [i for i in ordered_ids if i not in set(current)]
            if unknown:
                raise InvalidEditError(f"unknown image ids: {', '.join(unknown)}")
            listed = set(ordered_ids)
            queue = iter(ordered_ids)
            merged = [next(queue) if i in listed else i for i in current]
            now = utcnow()
            for idx, image_id in enumerate(merged):
                c.execute(
                    "UPDATE staged_images SET order_index = ?, updated_at = ? WHERE id = ?",
                    (idx, now, image_id),
                )
        return self.list_for_user(user_id)

    def set_thumbnail(self, image_id: str, thumbnail_path: Optional[str]) -> None:
        with self._write() as c:
            c.execute(
                "UPDATE staged_images SET thumbnail_path = ?, updated_at = ? WHERE id = ?",
                (thumbnail_path, utcnow(), image_id),
            )

    def delete(self, image_id: str, *, user_id: Optional[int] = None,
               conn: Optional[sqlite3.Connection] = None) -> Optional[StagedImage]:
        """Remove the row (tags cascade). Returns the deleted row so the caller can clean files."""
        with self._write(conn) as c:
            img = self.find(image_id, user_id=user_id, conn=c)
            if img is None:
                return None
            c.execute("DELETE FROM staged_images WHERE id = ?", (image_id,))
        return img

    def older_than(self, cutoff_iso: str) -> list[StagedImage]:
        with self._read() as c:
            rows = c.execute(
                "SELECT * FROM staged_images WHERE created_at < ? ORDER BY created_at", (cutoff_iso,)
            ).fetchall()
        return [StagedImage.from_row(r) for r in rows]

    # ---- preview state machine ----

    def claim_preview(self, image_id: str) -> Optional[int]:
        """
        pending -> processing. Returns the attempt number that now owns the
        row, or None if another request already holds it.
        """
        now = utcnow()
        with self._write() as c:
            cur = c.execute(
                """UPDATE staged_images
                   SET preview_status = 'processing', preview_attempted_at = ?, preview_error = NULL,
                       preview_attempt = preview_attempt + 1, updated_at = ?
                   WHERE id = ? AND preview_status = 'pending'""",
                (now, now, image_id),
            )
            if cur.rowcount != 1:
                return None
            row = c.execute("SELECT preview_attempt FROM staged_images WHERE id = ?", (image_id,)).fetchone()
            return int(row["preview_attempt"])

    @staticmethod
    def _owned(attempt: Optional[int]) -> tuple[str, tuple]:
        # a worker finishing after its claim was timed out and re-claimed
        # must not overwrite the newer attempt
        if attempt is None:
            return "", ()
        return " AND preview_attempt = ?", (attempt,)

    def mark_preview_ready(self, image_id: str, preview_path: str, preview_width: Optional[int],
                           thumbnail_path: Optional[str] = None, *, attempt: Optional[int] = None) -> bool:
        clause, extra = self._owned(attempt)
        with self._write() as c:
            cur = c.execute(
                """UPDATE staged_images
                   SET preview_status = 'ready', preview_path = ?, preview_width = ?,
                       thumbnail_path = COALESCE(?, thumbnail_path), preview_error = NULL,
                       updated_at = ?
                   WHERE id = ? AND preview_status = 'processing'""" + clause,
                (preview_path, preview_width, thumbnail_path, utcnow(), image_id, *extra),
            )
            return cur.rowcount == 1

    def mark_preview_failed(self, image_id: str, error: str, *, attempt: Optional[int] = None) -> bool:
        clause, extra = self._owned(attempt)
        with self._write() as c:
            cur = c.execute(
                """UPDATE staged_images SET preview_status = 'failed', preview_error = ?, updated_at = ?
                   WHERE id = ? AND preview_status = 'processing'""" + clause,
                ((error or "preview generation failed")[:1000], utcnow(), image_id, *extra),
            )
            return cur.rowcount == 1

    def reset_preview(self, image_id: str) -> bool:
        """failed -> pending (retry). Any other state is left alone."""
        with self._write() as c:
            cur = c.execute(
                """UPDATE staged_images SET preview_status = 'pending', preview_error = NULL, updated_at = ?
                   WHERE id = ? AND preview_status = 'failed'""",
                (utcnow(), image_id),
            )
            return cur.rowcount == 1

    def fail_stale_processing(self, cutoff_iso: str) -> int:
        """Rows stuck in processing since before cutoff become failed (and retryable)."""
        now = utcnow()
        with self._write() as c:
            n = c.execute(
                """UPDATE staged_images SET preview_status = 'failed', preview_error = 'timed out',
                       updated_at = ?
                   WHERE preview_status = 'processing' AND preview_attempted_at < ?""",
                (now, cutoff_iso),
            ).rowcount
            n += c.execute(
                """UPDATE staged_images SET enhancement_status = 'failed', enhancement_error = 'timed out',
                       updated_at = ?
                   WHERE enhancement_status IN ('requested','processing') AND updated_at < ?""",
                (now, cutoff_iso),
            ).rowcount
        return n

    # ---- enhancement state machine ----
    # preview_status stays 'ready' throughout; only preview_path/width swap on success.

    def request_enhancement(self, image_id: str, target_width: int) -> bool:
        with self._write() as c:
            cur = c.execute(
                """UPDATE staged_images
                   SET enhancement_status = 'requested', enhancement_width = ?, enhancement_error = NULL,
                       updated_at = ?
                   WHERE id = ? AND preview_status = 'ready'
                     AND enhancement_status NOT IN ('requested','processing')""",
                (target_width, utcnow(), image_id),
            )
            return cur.rowcount == 1

    def claim_enhancement(self, image_id: str) -> bool:
        with self._write() as c:
            cur = c.execute(
                """UPDATE staged_images SET enhancement_status = 'processing', updated_at = ?
                   WHERE id = ? AND enhancement_status = 'requested' AND preview_status = 'ready'""",
                (utcnow(), image_id),
            )
            return cur.rowcount == 1

    def finish_enhancement(self, image_id: str, preview_path: str, preview_width: int) -> bool:
        with self._write() as c:
            cur = c.execute(
                """UPDATE staged_images
                   SET enhancement_status = 'ready', preview_path = ?, preview_width = ?, updated_at = ?
                   WHERE id = ? AND enhancement_status = 'processing' AND preview_status = 'ready'""",
                (preview_path, preview_width, utcnow(), image_id),
            )
            return cur.rowcount == 1

    def fail_enhancement(self, image_id: str, error: str) -> bool:
        with self._write() as c:
            cur = c.execute(
                """UPDATE staged_images SET enhancement_status = 'failed', enhancement_error = ?, updated_at = ?
                   WHERE id = ? AND enhancement_status IN ('requested','processing')""",
                ((error or "enhancement failed")[:1000], utcnow(), image_id),
            )
            return cur.rowcount == 1

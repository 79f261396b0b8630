# studio_ingest/repositories/tags.py
# Tag taxonomy + staged-image associations.
# `project` and `filename` tags are naming variables: one of each per image.

from __future__ import annotations

import re
import sqlite3
from typing import Iterable, Mapping, Optional

from studio_ingest.core.errors import ImageNotFoundError, InvalidEditError, TagConflictError
from studio_ingest.repositories.db import Repository, utcnow
from studio_ingest.repositories.models import SINGLE_VALUED_TAG_TYPES, TAG_TYPES, Tag
from studio_ingest.utils.slug import slugify

MAX_TAG_NAME = 50
_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")


def _check_spec(name: str, tag_type: str, color: Optional[str]) -> str:
    name = (name or "").strip()
    if not name or len(name) > MAX_TAG_NAME:
        raise InvalidEditError(f"tag name must be 1..{MAX_TAG_NAME} characters")
    if tag_type not in TAG_TYPES:
        raise InvalidEditError(f"unknown tag type '{tag_type}'")
    if color is not None and not _COLOR_RE.match(color):
        raise InvalidEditError(f"invalid tag color '{color}'")
    if not slugify(name):
        raise InvalidEditError(f"tag name '{name}' has no sluggable characters")
    return name


class TagResolver(Repository):

    # ---- taxonomy ----

    def find_or_create(self, name: str, tag_type: str = "normal", color: Optional[str] = None,
                       *, conn: Optional[sqlite3.Connection] = None) -> Tag:
        """
        Idempotent on slug. A slug that already exists with another type is a
        conflict; the tag type is part of the tag's identity.
        """
        name = _check_spec(name, tag_type, color)
        slug = slugify(name)
        with self._write(conn) as c:
            c.execute(
                "INSERT OR IGNORE INTO tags (name, slug, color, tag_type, created_at) VALUES (?, ?, ?, ?, ?)",
                (name, slug, color, tag_type, utcnow()),
            )
            row = c.execute("SELECT * FROM tags WHERE slug = ?", (slug,)).fetchone()
        tag = Tag.from_row(row)
        if tag.tag_type != tag_type:
            raise TagConflictError(f"tag '{tag.name}' already exists as a {tag.tag_type} tag")
        return tag

    def get(self, tag_id: int, *, conn: Optional[sqlite3.Connection] = None) -> Optional[Tag]:
        with self._read(conn) as c:
            row = c.execute("SELECT * FROM tags WHERE id = ?", (tag_id,)).fetchone()
        return Tag.from_row(row) if row else None

    def search(self, query: str = "", tag_type: Optional[str] = None, limit: int = 20) -> list[Tag]:
        sql = "SELECT * FROM tags WHERE (name LIKE ? OR slug LIKE ?)"
        like = f"%{query.strip()}%"
        args: list = [like, like]
        if tag_type:
            sql += " AND tag_type = ?"
            args.append(tag_type)
        sql += " ORDER BY name COLLATE NOCASE LIMIT ?"
        args.append(int(limit))
        with self._read() as c:
            return [Tag.from_row(r) for r in c.execute(sql, args).fetchall()]

    # ---- associations ----

    def tags_for(self, image_id: str, *, conn: Optional[sqlite3.Connection] = None) -> list[Tag]:
        with self._read(conn) as c:
            rows = c.execute(
                """SELECT t.* FROM tags t JOIN staged_image_tags st ON st.tag_id = t.id
                   WHERE st.image_id = ? ORDER BY t.tag_type, t.name COLLATE NOCASE""",
                (image_id,),
            ).fetchall()
        return [Tag.from_row(r) for r in rows]

    def tags_for_many(self, image_ids: Iterable[str], *, conn: Optional[sqlite3.Connection] = None) -> dict[str, list[Tag]]:
        ids = list(image_ids)
        out: dict[str, list[Tag]] = {i: [] for i in ids}
        if not ids:
            return out
        marks = ",".join("?" * len(ids))
        with self._read(conn) as c:
            rows = c.execute(
                f"""SELECT st.image_id AS image_id, t.* FROM tags t
                    JOIN staged_image_tags st ON st.tag_id = t.id
                    WHERE st.image_id IN ({marks}) ORDER BY t.tag_type, t.name COLLATE NOCASE""",
                ids,
            ).fetchall()
        for r in rows:
            out[r["image_id"]].append(Tag.from_row(r))
        return out

    def _attach(self, c: sqlite3.Connection, image_id: str, tag: Tag) -> None:
        if tag.tag_type in SINGLE_VALUED_TAG_TYPES:
            # replace, never add: the naming engine reads a single value
            c.execute(
                "DELETE FROM staged_image_tags WHERE image_id = ? AND tag_type = ? AND tag_id != ?",
                (image_id, tag.tag_type, tag.id),
            )
        c.execute(
            "INSERT OR IGNORE INTO staged_image_tags (image_id, tag_id, tag_type) VALUES (?, ?, ?)",
            (image_id, tag.id, tag.tag_type),
        )

    def _require_image(self, c: sqlite3.Connection, image_id: str) -> None:
        if not c.execute("SELECT 1 FROM staged_images WHERE id = ?", (image_id,)).fetchone():
            raise ImageNotFoundError(f"staged image {image_id} not found")

    def add(self, image_id: str, specs: Iterable[Mapping], *,
            conn: Optional[sqlite3.Connection] = None) -> list[Tag]:
        """Attach tags (find-or-create by name). Special types replace."""
        with self._write(conn) as c:
            self._require_image(c, image_id)
            for spec in specs:
                tag = self.find_or_create(spec["name"], spec.get("tag_type") or "normal",
                                          spec.get("color"), conn=c)
                self._attach(c, image_id, tag)
            return self.tags_for(image_id, conn=c)

    def assign(self, image_id: str, specs: Iterable[Mapping], *,
               conn: Optional[sqlite3.Connection] = None) -> list[Tag]:
        """Sync: the image ends up with exactly the given tags."""
        specs = list(specs)
        with self._write(conn) as c:
            self._require_image(c, image_id)
            c.execute("DELETE FROM staged_image_tags WHERE image_id = ?", (image_id,))
            return self.add(image_id, specs, conn=c)

    def remove(self, image_id: str, tag_id: int) -> bool:
        with self._write() as c:
            cur = c.execute(
                "DELETE FROM staged_image_tags WHERE image_id = ? AND tag_id = ?", (image_id, tag_id)
            )
            return cur.rowcount > 0

    def copy_to_final(self, c: sqlite3.Connection, image_id: str, final_image_id: int) -> int:
        cur = c.execute(
            """INSERT OR IGNORE INTO final_image_tags (final_image_id, tag_id)
               SELECT ?, tag_id FROM staged_image_tags WHERE image_id = ?""",
            (final_image_id, image_id),
        )
        return cur.rowcount

    # ---- naming lookups ----

    def _single_name(self, image_id: str, tag_type: str, conn: Optional[sqlite3.Connection]) -> Optional[str]:
        with self._read(conn) as c:
            row = c.execute(
                """SELECT t.name FROM tags t JOIN staged_image_tags st ON st.tag_id = t.id
                   WHERE st.image_id = ? AND st.tag_type = ?""",
                (image_id, tag_type),
            ).fetchone()
        return row["name"] if row else None

    def project_tag_name(self, image_id: str, *, conn: Optional[sqlite3.Connection] = None) -> Optional[str]:
        return self._single_name(image_id, "project", conn)

    def filename_tag_name(self, image_id: str, *, conn: Optional[sqlite3.Connection] = None) -> Optional[str]:
        return self._single_name(image_id, "filename", conn)

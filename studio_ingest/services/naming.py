# studio_ingest/services/naming.py
# Naming schema: render "{variable}" templates into a final relative path.
#
#   path     = "shoots/{date:Y}/{date:m}/{camera}"
#   filename = "{sequence}-{original}"
#
# render_destination() is pure: same context + schema -> same result.
# Collision handling needs the storage area, so it lives in resolve_collision().

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import PurePosixPath
from typing import Callable, Mapping, Optional

from studio_ingest.core.errors import NamingCollisionError, NamingError
from studio_ingest.utils.slug import slugify

_VAR_RE = re.compile(r"\{(?P<name>[A-Za-z_]+)(?::(?P<arg>[^}]*))?\}")
_UNSAFE_RE = re.compile(r"[^\w.\- ]+")

TAG_VARIABLES = ("project", "filename")
KNOWN_VARIABLES = ("date", "camera", "model", "sequence", "original", "uuid", *TAG_VARIABLES)

# PHP-style date letters (the mini-language operators already know)
_DATE_LETTERS: dict[str, Callable[[datetime], str]] = {
    "Y": lambda d: f"{d.year:04d}",
    "y": lambda d: f"{d.year % 100:02d}",
    "m": lambda d: f"{d.month:02d}",
    "n": lambda d: str(d.month),
    "d": lambda d: f"{d.day:02d}",
    "j": lambda d: str(d.day),
    "H": lambda d: f"{d.hour:02d}",
    "G": lambda d: str(d.hour),
    "i": lambda d: f"{d.minute:02d}",
    "s": lambda d: f"{d.second:02d}",
    "M": lambda d: d.strftime("%b"),
    "F": lambda d: d.strftime("%B"),
    "D": lambda d: d.strftime("%a"),
    "l": lambda d: d.strftime("%A"),
    "N": lambda d: str(d.isoweekday()),
    "z": lambda d: str(d.timetuple().tm_yday - 1),
    "W": lambda d: f"{d.isocalendar()[1]:02d}",
    "U": lambda d: str(int(d.timestamp())),
}


def format_date(dt: datetime, fmt: str) -> str:
    """'Y-m-d' -> '2025-03-14'. Backslash escapes the next character."""
    out: list[str] = []
    escape = False
    for ch in fmt:
        if escape:
            out.append(ch)
            escape = False
        elif ch == "\\":
            escape = True
        elif ch in _DATE_LETTERS:
            out.append(_DATE_LETTERS[ch](dt))
        else:
            out.append(ch)
    return "".join(out)


@dataclass(frozen=True)
class NamingContext:
    image_id: str
    original_filename: str
    sequence: int
    date: datetime
    camera_make: Optional[str] = None
    camera_model: Optional[str] = None
    project: Optional[str] = None
    filename_tag: Optional[str] = None


@dataclass(frozen=True)
class Destination:
    path: str            # directory, relative to the final storage root
    filename: str
    used_fallback: bool = False

    @property
    def relative_path(self) -> str:
        return f"{self.path}/{self.filename}" if self.path else self.filename


def referenced_variables(template: str) -> set[str]:
    return {m.group("name") for m in _VAR_RE.finditer(template or "")}


def _segment(value: Optional[str]) -> str:
    """Tag/camera values become single path-safe segments."""
    s = slugify(value or "", lowercase=False)
    return s or "unknown"


def render_template(template: str, ctx: NamingContext, *, padding: int = 3) -> str:
    def sub(m: re.Match) -> str:
        name, arg = m.group("name"), m.group("arg")
        if name == "date":
            return format_date(ctx.date, arg or "Y-m-d")
        if name == "camera":
            return _segment(ctx.camera_make)
        if name == "model":
            return _segment(ctx.camera_model)
        if name == "sequence":
            return str(ctx.sequence).zfill(int(padding))
        if name == "original":
            stem = PurePosixPath(ctx.original_filename.replace("\\", "/")).stem
            return _UNSAFE_RE.sub("-", stem).strip(" -") or "file"
        if name == "uuid":
            return ctx.image_id
        if name == "project":
            return _segment(ctx.project)
        if name == "filename":
            return _segment(ctx.filename_tag)
        raise NamingError(f"unknown naming variable '{{{name}}}'")

    return _VAR_RE.sub(sub, template or "")


def _missing_tags(template: str, ctx: NamingContext) -> bool:
    used = referenced_variables(template)
    return ("project" in used and not ctx.project) or ("filename" in used and not ctx.filename_tag)


def _clean_dir(path: str) -> str:
    parts = [p for p in path.replace("\\", "/").split("/") if p not in ("", ".")]
    if any(p == ".." for p in parts):
        raise NamingError(f"rendered path escapes the storage root: {path!r}")
    return "/".join(parts)


def render_destination(schema: Mapping, ctx: NamingContext) -> Destination:
    """
    Render [schema] path + filename for one image.
    A template that needs a project/filename tag the image lacks is swapped
    for its fallback template.
    """
    padding = int(schema.get("sequence_padding", 3))
    path_t = str(schema.get("path", ""))
    file_t = str(schema.get("filename", "{sequence}-{original}"))
    used_fallback = False

    if _missing_tags(path_t, ctx):
        path_t = str(schema.get("fallback_path", ""))
        used_fallback = True
    if _missing_tags(file_t, ctx):
        file_t = str(schema.get("fallback_filename", "{sequence}-{original}"))
        used_fallback = True
    for t in (path_t, file_t):
        if _missing_tags(t, ctx):
            raise NamingError(f"fallback template {t!r} references a missing tag")

    path = _clean_dir(render_template(path_t, ctx, padding=padding))
    name = render_template(file_t, ctx, padding=padding).replace("/", "-").replace("\\", "-").strip()
    if not name or name in (".", ".."):
        raise NamingError(f"filename template {file_t!r} rendered empty")

    ext = PurePosixPath(ctx.original_filename).suffix
    if ext and not name.lower().endswith(ext.lower()):
        name += ext
    return Destination(path=path, filename=name, used_fallback=used_fallback)


def resolve_collision(relative_path: str, exists: Callable[[str], bool], policy: str = "suffix") -> str:
    """
    'fail'   -> NamingCollisionError if taken
    'suffix' -> first free of name_2.ext, name_3.ext, ...
    """
    if not exists(relative_path):
        return relative_path
    if policy == "fail":
        raise NamingCollisionError(f"destination already exists: {relative_path}")
    if policy != "suffix":
        raise NamingError(f"unknown collision policy {policy!r}")
    p = PurePosixPath(relative_path)
    i = 2
    while True:
        candidate = str(p.with_name(f"{p.stem}_{i}{p.suffix}"))
        if not exists(candidate):
            return candidate
        i += 1

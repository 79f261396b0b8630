# studio_ingest/services/metadata.py
# EXIF extraction through a fallback chain (exiftool first, Pillow last),
# plus normalization of the raw tag soup into the fields the pipeline uses.
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from PIL import ExifTags, Image, UnidentifiedImageError

from studio_ingest.core.config import IngestConfig
from studio_ingest.services.exiftool import ExifTool, check_source
from studio_ingest.services.fallback import Attempt, MethodFailed, MethodResult, build_chain, run_chain
from studio_ingest.services.tracing import AttemptObserver, new_session_id
from studio_ingest.utils.slug import slugify

# -------------------- raw value helpers --------------------

def _to_jsonable(v):
    """Generic: make any value JSON-serializable without special casing fields."""
    if isinstance(v, (str, int, float, bool)) or v is None:
        return v
    if isinstance(v, bytes):
        return None  # binary blobs never go into metadata
    if isinstance(v, tuple):
        return [_to_jsonable(x) for x in v]
    try:
        return float(v)  # IFDRational and friends
    except (TypeError, ValueError, ZeroDivisionError):
        pass
    try:
        json.dumps(v)
        return v
    except (TypeError, ValueError):
        return str(v)


# Generic compact rules (NOT per-field: pattern/namespace level).
_EXCLUDE_PREFIXES = (
    "MakerNotes:",    # vendor blobs
    "ICC_Profile:",   # color profile dumps
)
_EXCLUDE_EXACT = {
    "MakerNote",
    "PreviewImage",
    "ThumbnailImage",
    "JpgFromRaw",
}


def _compact(meta: dict) -> dict:
    """Drop noisy/binary-ish keys; stringify complex types."""
    out: dict = {}
    for k, v in meta.items():
        k = str(k)
        if any(k.startswith(pref) for pref in _EXCLUDE_PREFIXES):
            continue
        if k.split(":")[-1] in _EXCLUDE_EXACT:
            continue
        v = _to_jsonable(v)
        if v is None:
            continue
        if isinstance(v, str) and v.startswith("(Binary data"):
            continue
        out[k] = v
    return out


def _ungroup(raw: dict) -> dict:
    """'EXIF:Make' -> 'Make' (first group wins) so normalization sees one namespace."""
    out: dict = {}
    for k, v in raw.items():
        out.setdefault(k.split(":")[-1], v)
    return out


# -------------------- dates --------------------

_DATE_KEYS = ["DateTimeOriginal", "CreateDate", "DateTimeDigitized", "ModifyDate", "DateTime", "FileModifyDate"]
_OFFSET_KEYS = ["OffsetTimeOriginal", "OffsetTime", "OffsetTimeDigitized"]

_dt_re = re.compile(
    r"^(?P<y>\d{4}):(?P<m>\d{2}):(?P<d>\d{2})[ T]"
    r"(?P<H>\d{2}):(?P<M>\d{2}):(?P<S>\d{2})"
    r"(?:\.(?P<sub>\d+))?(?P<tz>Z|[+\-]\d{2}:?\d{2})?$"
)
_tz_re = re.compile(r"^[+\-]\d{2}:?\d{2}$")


def _norm_tz(tz: str) -> str:
    # "+hhmm" -> "+hh:mm"
    return tz if ":" in tz else (tz[:3] + ":" + tz[3:])


def parse_exif_datetime(s: Any, offset: Optional[str] = None) -> Optional[datetime]:
    """
    Parse 'YYYY:MM:DD HH:MM:SS[.sub][tz]' (or ISO). Sentinel dates -> None.
    `offset` (e.g. OffsetTimeOriginal) applies when the value has no zone.
    """
    if s is None:
        return None
    s = str(s).strip()

    # Common invalid/sentinel values → treat as missing
    if not s or s.startswith(("0000:00:00", "0001:01:01", "1970:01:01")):
        return None

    m = _dt_re.match(s)
    if m:
        try:
            dt = datetime.strptime(s[:19], "%Y:%m:%d %H:%M:%S")
        except ValueError:
            try:
                dt = datetime.strptime(s[:19], "%Y:%m:%dT%H:%M:%S")
            except ValueError:
                return None
        tz = m.group("tz")
        if tz == "Z":
            tz = "+00:00"
        elif not tz and offset and _tz_re.match(str(offset).strip()):
            tz = str(offset).strip()
        if tz:
            try:
                return datetime.fromisoformat(dt.strftime("%Y-%m-%dT%H:%M:%S") + _norm_tz(tz))
            except ValueError:
                return None
        return dt

    # ISO-like fallback some containers emit
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None


def resolve_date_taken(raw: dict) -> Optional[str]:
    offset = next((raw[k] for k in _OFFSET_KEYS if raw.get(k)), None)
    for key in _DATE_KEYS:
        if raw.get(key):
            dt = parse_exif_datetime(raw[key], offset)
            if dt:
                return dt.isoformat()
    return None


# -------------------- numbers --------------------

_num_re = re.compile(r"(-?\d+(?:\.\d+)?)")


def _clean_str(v) -> Optional[str]:
    if v is None:
        return None
    s = str(v).replace("\0", "").strip()
    return s or None


def _as_float(v) -> Optional[float]:
    if v is None or v == "":
        return None
    if isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return float(v)
    s = str(v).strip()
    if "/" in s:
        num, _, den = s.partition("/")
        try:
            return float(num) / float(den) if float(den) else None
        except ValueError:
            return None
    m = _num_re.search(s)
    return float(m.group(1)) if m else None


def _as_int(v) -> Optional[int]:
    if isinstance(v, (list, tuple)):
        v = v[0] if v else None
    f = _as_float(v)
    return int(f) if f is not None else None


def parse_shutter(v) -> Optional[float]:
    return _as_float(v)


def shutter_display(v) -> Optional[str]:
    """'1/250s' for fractions, '2s' / '2.5s' for long exposures."""
    if v is None or v == "":
        return None
    if isinstance(v, str) and "/" in v:
        return f"{v.strip()}s"
    val = _as_float(v)
    if not val or val <= 0:
        return None
    if val >= 1:
        r = round(val, 1)
        return f"{int(r) if r.is_integer() else r}s"
    return f"1/{int(round(1 / val))}s"


def parse_focal_length(v) -> Optional[int]:
    f = _as_float(v)
    return int(round(f)) if f is not None else None


def parse_gps(raw: dict, axis: str) -> Optional[float]:
    """GPSLatitude/GPSLongitude in decimal degrees, signed by the Ref tag."""
    val = _as_float(raw.get(f"GPS{axis}"))
    if val is None:
        return None
    ref = str(raw.get(f"GPS{axis}Ref") or "").strip().upper()
    if ref.startswith(("S", "W")):
        val = -abs(val)
    return round(val, 8)


def camera_slug(make: Optional[str], model: Optional[str]) -> Optional[str]:
    make = _clean_str(make)
    model = _clean_str(model)
    if model and make and model.lower().startswith(make.lower()):
        make = None  # "Canon" + "Canon EOS R5" -> "canon-eos-r5"
    parts = " ".join(p for p in (make, model) if p)
    return slugify(parts) or None


def normalize_metadata(raw: dict) -> dict:
    """Map raw tags (exiftool or Pillow names) to the pipeline's fields. Nulls dropped."""
    raw = _ungroup(raw or {})
    out: dict[str, Any] = {
        "date_taken": resolve_date_taken(raw),
        "camera_make": _clean_str(raw.get("Make")),
        "camera_model": _clean_str(raw.get("Model")),
        "lens": _clean_str(raw.get("LensModel") or raw.get("Lens")),
        "f_stop": None,
        "shutter_speed": parse_shutter(raw.get("ExposureTime") or raw.get("ShutterSpeed")),
        "shutter_speed_display": shutter_display(raw.get("ExposureTime") or raw.get("ShutterSpeed")),
        "iso": _as_int(raw.get("ISO") or raw.get("ISOSpeedRatings") or raw.get("PhotographicSensitivity")),
        "focal_length": parse_focal_length(raw.get("FocalLength")),
        "gps_lat": parse_gps(raw, "Latitude"),
        "gps_lng": parse_gps(raw, "Longitude"),
        "width": _as_int(raw.get("ImageWidth") or raw.get("ExifImageWidth")),
        "height": _as_int(raw.get("ImageHeight") or raw.get("ExifImageHeight")),
        "file_type": _clean_str(raw.get("FileType")),
        "mime_type": _clean_str(raw.get("MIMEType")),
        "file_size": _as_int(raw.get("FileSize")),
        "orientation": _as_int(raw.get("Orientation")),
        "color_space": _clean_str(raw.get("ColorSpace")),
        "software": _clean_str(raw.get("Software")),
    }
    f = _as_float(raw.get("FNumber") or raw.get("Aperture"))
    out["f_stop"] = round(f, 2) if f is not None else None
    out["camera"] = camera_slug(out["camera_make"], out["camera_model"])
    return {k: v for k, v in out.items() if v is not None}


# -------------------- Pillow reader --------------------

def _gps_decimal(dms) -> Optional[float]:
    try:
        d, m, s = (float(x) for x in dms)
    except (TypeError, ValueError):
        return _as_float(dms)
    return d + m / 60.0 + s / 3600.0


def read_with_pillow(p: Path) -> dict:
    """IFD0 + Exif sub-IFD + GPS tags under exiftool-style names."""
    out: dict = {}
    with Image.open(p) as im:
        out["FileType"] = im.format
        out["MIMEType"] = Image.MIME.get(im.format or "")
        out["ImageWidth"], out["ImageHeight"] = im.size
        exif = im.getexif()
        for tag_id, val in exif.items():
            out[ExifTags.TAGS.get(tag_id, f"Tag{tag_id:#06x}")] = val
        for tag_id, val in exif.get_ifd(ExifTags.IFD.Exif).items():
            out[ExifTags.TAGS.get(tag_id, f"Tag{tag_id:#06x}")] = val
        gps = exif.get_ifd(ExifTags.IFD.GPSInfo)
        for tag_id, val in gps.items():
            name = ExifTags.GPSTAGS.get(tag_id, f"GPSTag{tag_id}")
            if name in ("GPSLatitude", "GPSLongitude"):
                val = _gps_decimal(val)
            out[name] = val
    # Pillow names differ from exiftool's for a few tags
    if "ISOSpeedRatings" in out and "ISO" not in out:
        out["ISO"] = out["ISOSpeedRatings"]
    if "DateTime" in out and "ModifyDate" not in out:
        out["ModifyDate"] = out["DateTime"]
    return _compact(out)


# -------------------- extraction chain --------------------

@dataclass
class ExtractionResult:
    status: str                                 # "success" | "failure"
    metadata: dict = field(default_factory=dict)
    metadata_raw: Optional[dict] = None
    method: Optional[str] = None
    order: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    tool_unavailable: bool = False
    attempts: list[Attempt] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "success"


class MetadataExtractor:
    """
    Never raises for a failed method. Raises SourceUnreadableError when the
    file itself is missing/unreadable.
    """

    def __init__(self, exiftool: ExifTool, config: IngestConfig,
                 observer: Optional[AttemptObserver] = None) -> None:
        self.exiftool = exiftool
        self.config = config
        self.observer = observer or AttemptObserver()

    def _via_exiftool(self, p: Path, speed_mode: str) -> Optional[MethodResult]:
        raw = self.exiftool.read_metadata(p, speed_mode=speed_mode)
        if not raw:
            return None
        return MethodResult(_compact(raw), {"tags": len(raw), "speed_mode": speed_mode})

    def _via_pillow(self, p: Path) -> Optional[MethodResult]:
        try:
            raw = read_with_pillow(p)
        except UnidentifiedImageError as e:
            raise MethodFailed(f"pillow cannot identify {p.name}") from e
        return MethodResult(raw, {"tags": len(raw)})

    def chain(self, p: Path, speed_mode: str) -> list:
        table = {
            "exiftool": lambda: self._via_exiftool(p, speed_mode),
            "pillow": lambda: self._via_pillow(p),
        }
        names = list(self.config.get("exiftool.metadata_methods", ["exiftool"]) or [])
        last = "pillow" if self.config.get("exiftool.fallback_to_pillow", True) else None
        return build_chain(names, table, always_last=last)

    def extract(self, path: Path, *, image_id: str = "-", session_id: Optional[str] = None,
                speed_mode: Optional[str] = None) -> ExtractionResult:
        p = check_source(path)
        speed_mode = speed_mode or str(self.config.get("exiftool.speed_mode", "fast"))
        outcome = run_chain(
            self.chain(p, speed_mode),
            observer=self.observer,
            image_id=image_id,
            session_id=session_id or new_session_id(),
            operation="metadata_extraction",
        )
        if not outcome.ok:
            return ExtractionResult(
                status="failure",
                metadata={"file_size": p.stat().st_size},
                error=outcome.error,
                error_kind=outcome.error_kind,
                tool_unavailable=outcome.tool_unavailable,
                attempts=outcome.attempts,
            )

        raw: dict = outcome.value
        metadata = normalize_metadata(raw)
        metadata.setdefault("file_size", p.stat().st_size)
        return ExtractionResult(
            status="success",
            metadata=metadata,
            metadata_raw=raw,
            method=outcome.method,
            order=outcome.order,
            tool_unavailable=outcome.tool_unavailable,
            attempts=outcome.attempts,
        )

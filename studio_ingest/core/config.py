# studio_ingest/core/config.py
# Loads ingest settings: compiled defaults + ingest.toml + database overrides.
# - Reads INGEST_CONFIG or walks up from CWD looking for ingest.toml
# - resolve_config(defaults, overrides) is the only merge point; callers get an
#   IngestConfig and pass it down explicitly
# - Normalizes extension lists (lowercase, ensure leading dot)

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

import tomli as tomllib  # py3.11+: tomllib in stdlib; using tomli for compatibility

from studio_ingest.core.errors import ConfigurationError, InvalidEditError


# -------------------- Defaults (used if TOML / settings omit keys) --------------------
DEFAULTS: Dict[str, Any] = {
    "paths": {
        "data_dir": "./data",
        "db_path": "db/ingest.sqlite3",     # relative to data_dir
        "logs_dir": "",                      # empty = console only
    },
    "storage": {
        "temp":  {"backend": "local", "root": "ingest-temp",  "url_prefix": "/ingest-files"},
        "final": {"backend": "local", "root": "ingest-final", "url_prefix": ""},
    },
    "schema": {
        "path": "shoots/{date:Y}/{date:m}/{camera}",
        "filename": "{sequence}-{original}",
        "fallback_path": "shoots/{date:Y}/{date:m}",
        "fallback_filename": "{sequence}-{original}",
        "sequence_start": 1,
        "sequence_padding": 3,
        "on_collision": "suffix",            # suffix | fail
    },
    "exiftool": {
        "binary": "exiftool",
        "path_prefix": "",                   # prepended to PATH for the subprocess
        "timeout": 30,
        "speed_mode": "fast",                # fast | fast2 | full
        "upload_speed_mode": "fast2",
        "include_groups": False,
        "default_options": ["-charset", "filename=UTF8", "-api", "QuickTimeUTC=1"],
        "preview_tags": ["PreviewImage", "JpgFromRaw", "ThumbnailImage"],
        "metadata_methods": ["exiftool"],
        "fallback_to_pillow": True,
        "max_preview_size": 8 * 1024 * 1024,
        "min_preview_dimension": 800,
    },
    "exif": {
        "denormalize_keys": {
            "DateTimeOriginal": "date_taken",
            "Make": "camera_make",
            "Model": "camera_model",
            "FNumber": "f_stop",
            "ISO": "iso",
            "ExposureTime": "shutter_speed",
            "FocalLength": "focal_length",
            "LensModel": "lens",
            "GPSLatitude": "gps_lat",
            "GPSLongitude": "gps_lng",
        },
        "thumbnail": {"width": 400, "height": 400, "quality": 80},
        "preview": {"enabled": True, "max_dimension": 2048, "quality": 85},
        "enhancement": {"factor": 1.25, "max_dimension": 4096, "quality": 92},
        "final": {"quality": 95},
    },
    "cleanup": {
        "staging_ttl_hours": 48,
        "stale_processing_minutes": 30,
    },
    "tracing": {
        "enabled": True,
        "sink": "sqlite",                    # sqlite | log | none
        "retention_days": 7,
    },
    "associations": {
        "types": [],
    },
    "ext": {
        "image": ["jpg", "jpeg", "png", "tif", "tiff", "gif", "webp", "heic", "heif", "avif"],
        "raw":   ["dng", "cr2", "cr3", "nef", "arw", "raf", "rw2", "orf", "srw", "pef"],
        "video": ["mp4", "mov", "m4v", "avi"],
        # formats Pillow renders directly; previews come from the source file
        "standard_image": ["jpg", "jpeg", "png", "gif", "webp", "heic", "heif", "tif", "tiff", "avif"],
    },
    "upload": {
        "max_bytes": 512 * 1024 * 1024,
    },
    "queue": {
        "workers": 2,
    },
    "db": {
        "busy_timeout_ms": 30000,
    },
    "logging": {
        "level": "INFO",
        "json": False,
    },
}

# Dict-valued defaults whose children are free-form (any key may be overridden).
_OPEN_SECTIONS = {"exif.denormalize_keys"}
# TOML tables that replace the default table instead of merging into it.
_REPLACED_WHOLE = {"denormalize_keys"}


# -------------------- Read TOML --------------------

def _find_config_path() -> Optional[Path]:
    """Find ingest.toml without user input.
    Priority:
      1) INGEST_CONFIG
      2) ./ingest.toml (CWD)
      3) ascend parents from CWD looking for ingest.toml
      4) ingest.toml next to this file
    """
    cfg_env = os.getenv("INGEST_CONFIG")
    if cfg_env:
        p = Path(cfg_env).expanduser()
        if p.exists():
            return p

    cur = Path.cwd()
    while True:
        candidate = cur / "ingest.toml"
        if candidate.exists():
            return candidate
        if cur.parent == cur:
            break  # reached filesystem root
        cur = cur.parent

    local = Path(__file__).with_name("ingest.toml")
    if local.exists():
        return local
    return None


def _load_config_toml(path: Optional[Path] = None) -> dict:
    """Load TOML from the given or best-match path, {} if none exists."""
    path = path or _find_config_path()
    if not path or not path.exists():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"invalid TOML in {path}: {e}") from e


def _deep_merge(base: dict, extra: Mapping) -> dict:
    out = copy.deepcopy(base)
    for k, v in (extra or {}).items():
        if isinstance(v, Mapping) and isinstance(out.get(k), dict) and k not in _REPLACED_WHOLE:
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out


def load_defaults(config_path: Optional[Path] = None) -> dict:
    """Compiled defaults with ingest.toml merged over them."""
    return _deep_merge(DEFAULTS, _load_config_toml(config_path))


def _norm_ext_list(exts: Iterable[str]) -> set[str]:
    """
    Normalize extension strings: ensure leading dot and lowercase.
    Accepts 'jpg' or '.jpg' and returns '.jpg'.
    """
    out: set[str] = set()
    for e in exts or []:
        e = (str(e) if e is not None else "").strip().lower()
        if not e:
            continue
        if not e.startswith("."):
            e = "." + e
        out.add(e)
    return out


# -------------------- Dotted keys --------------------

def _get_dotted(tree: Mapping, key: str, default: Any = None) -> Any:
    node: Any = tree
    for part in key.split("."):
        if not isinstance(node, Mapping) or part not in node:
            return default
        node = node[part]
    return node


def _set_dotted(tree: dict, key: str, value: Any) -> None:
    parts = key.split(".")
    node = tree
    for part in parts[:-1]:
        nxt = node.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            node[part] = nxt
        node = nxt
    node[parts[-1]] = value


def is_known_key(defaults: Mapping, key: str) -> bool:
    """True if `key` names a leaf in defaults, or a child of an open section."""
    if not key or key.startswith(".") or key.endswith("."):
        return False
    parent = key.rsplit(".", 1)[0] if "." in key else ""
    if parent in _OPEN_SECTIONS:
        return True
    sentinel = object()
    node = _get_dotted(defaults, key, sentinel)
    return node is not sentinel and not (isinstance(node, dict) and key not in _OPEN_SECTIONS)


# Read once when the service starts; an override would be ignored or would
# strand files already written under the old location.
_STARTUP_ONLY = ("paths.", "storage.temp.root", "storage.final.root", "queue.workers", "db.busy_timeout_ms")

_CHOICES = {
    "exiftool.speed_mode": ("fast", "fast2", "full"),
    "exiftool.upload_speed_mode": ("fast", "fast2", "full"),
    "schema.on_collision": ("suffix", "fail"),
    "tracing.sink": ("sqlite", "log", "none"),
}


def is_startup_only(key: str) -> bool:
    return any(key == k or (k.endswith(".") and key.startswith(k)) for k in _STARTUP_ONLY)


def _coerce_value(key: str, value: Any, default: Any) -> Any:
    """Bring an override to the type of its default leaf, or raise ValueError."""
    if value is None or default is None:
        return value
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ValueError("expected true/false")
        return value
    if isinstance(default, (int, float)):
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise ValueError(f"expected a {type(default).__name__}")
        if isinstance(default, float):
            return float(value)
        if isinstance(value, float) and not value.is_integer():
            raise ValueError("expected a whole number")
        return int(value)     # "30" from a form post is fine, "thirty" is not
    if isinstance(default, str):
        if not isinstance(value, str):
            raise ValueError("expected a string")
        choices = _CHOICES.get(key)
        if choices and value not in choices:
            raise ValueError(f"expected one of {', '.join(choices)}")
        return value
    if isinstance(default, list) and not isinstance(value, list):
        raise ValueError("expected a list")
    return value


def validate_overrides(defaults: Mapping, values: Mapping[str, Any]) -> dict[str, Any]:
    """
    Check runtime overrides before they are stored; returns them coerced to
    the type of the default they replace.
    """
    unknown = sorted(k for k in values if not is_known_key(defaults, k))
    if unknown:
        raise InvalidEditError(f"unknown setting key(s): {', '.join(unknown)}")
    fixed = sorted(k for k in values if is_startup_only(k))
    if fixed:
        raise InvalidEditError(f"setting(s) only apply at startup: {', '.join(fixed)}")

    out: dict[str, Any] = {}
    problems = []
    for key, value in values.items():
        parent = key.rsplit(".", 1)[0]
        default = "" if parent in _OPEN_SECTIONS else _get_dotted(defaults, key)
        try:
            out[key] = _coerce_value(key, value, default)
        except ValueError as e:
            problems.append(f"{key}: {e}")
    if problems:
        raise InvalidEditError("invalid setting value(s): " + "; ".join(sorted(problems)))
    return out


# -------------------- Effective config --------------------

class IngestConfig:
    """
    Effective configuration for one pipeline invocation.
    Built by resolve_config(); treat as read-only.
    """

    def __init__(self, tree: dict) -> None:
        self._tree = tree

        data_dir = Path(str(self.get("paths.data_dir", "./data"))).expanduser()
        self.data_dir: Path = data_dir.resolve()
        db = Path(str(self.get("paths.db_path", "db/ingest.sqlite3")))
        self.db_path: Path = (db if db.is_absolute() else self.data_dir / db).resolve()
        logs = str(self.get("paths.logs_dir") or "")
        self.logs_dir: Optional[Path] = None
        if logs:
            lp = Path(logs).expanduser()
            self.logs_dir = lp if lp.is_absolute() else self.data_dir / lp

        # Extension sets
        self.image_ext = _norm_ext_list(self.get("ext.image", []))
        self.raw_ext = _norm_ext_list(self.get("ext.raw", []))
        self.video_ext = _norm_ext_list(self.get("ext.video", []))
        self.standard_image_ext = _norm_ext_list(self.get("ext.standard_image", []))
        self.supported_ext = self.image_ext | self.raw_ext | self.video_ext

    def get(self, key: str, default: Any = None) -> Any:
        """Dotted-path lookup, e.g. cfg.get('exif.preview.quality')."""
        return _get_dotted(self._tree, key, default)

    def section(self, key: str) -> dict:
        val = self.get(key, {})
        return copy.deepcopy(val) if isinstance(val, dict) else {}

    def as_dict(self) -> dict:
        return copy.deepcopy(self._tree)

    def storage_root(self, area: str) -> Path:
        root = Path(str(self.get(f"storage.{area}.root", area))).expanduser()
        return (root if root.is_absolute() else self.data_dir / root).resolve()

    def __repr__(self) -> str:
        return f"IngestConfig(data_dir={self.data_dir}, db_path={self.db_path})"


def resolve_config(defaults: Mapping, overrides: Optional[Mapping[str, Any]] = None) -> IngestConfig:
    """
    Merge flat dotted-key overrides over nested defaults.
    Overrides win; an absent or None override means "use the default".
    """
    tree = copy.deepcopy(dict(defaults))
    for key, value in sorted((overrides or {}).items()):
        if value is None:
            continue
        _set_dotted(tree, key, copy.deepcopy(value))
    return IngestConfig(tree)


# -------------------- Optional: HEIC opener --------------------
try:
    import pillow_heif  # type: ignore
    pillow_heif.register_heif_opener()
except Exception:
    pass

# studio_ingest/utils/http.py
from pathlib import Path
from typing import Optional

from fastapi import Request


def safe_rel_under(base: Path, target: Path) -> Optional[Path]:
    """target relative to base, or None when it resolves outside base."""
    try:
        return target.resolve().relative_to(base.resolve())
    except ValueError:
        return None


def abs_url(request: Request, path: Optional[str]) -> Optional[str]:
    """'/ingest-files/x.jpg' -> 'http://host/ingest-files/x.jpg'; None stays None."""
    if not path:
        return None
    if path.startswith(("http://", "https://")):
        return path
    base = str(request.base_url).rstrip("/")
    return f"{base}/{path.lstrip('/')}"

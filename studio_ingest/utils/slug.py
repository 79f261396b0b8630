# studio_ingest/utils/slug.py
import re


def slugify(s: str, *, lowercase: bool = True) -> str:
    """URL-safe slug: word chars kept, whitespace/underscore/hyphen runs -> '-'."""
    s = (s or "").replace("\0", "").strip()
    if lowercase:
        s = s.lower()
    s = re.sub(r"[^\w\s-]", "", s)
    s = re.sub(r"[\s_-]+", "-", s)
    return s.strip("-")

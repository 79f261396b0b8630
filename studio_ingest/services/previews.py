# studio_ingest/services/previews.py
# Previews, thumbnails and enhanced previews for staged images.
#
# Preview chain (RAW/other):   PreviewImage -> JpgFromRaw -> ThumbnailImage -> rawpy -> pillow
# Preview chain (jpg/png/...): pillow  (the source already is a viewable image)
# Every artifact is written to temp storage as a bounded JPEG.

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from studio_ingest.core.config import IngestConfig
from studio_ingest.core.errors import IngestError
from studio_ingest.core.logging import get_logger, image_logger
from studio_ingest.services.exiftool import ExifTool, check_source
from studio_ingest.services.fallback import (
    TOO_SMALL,
    ChainOutcome,
    MethodFailed,
    MethodResult,
    build_chain,
    run_chain,
)
from studio_ingest.services.storage import LocalStorage
from studio_ingest.services.tracing import AttemptObserver
from studio_ingest.utils import thumbs

log = get_logger("previews")


class PreviewGenerationError(IngestError):
    code = "preview_failed"

    def __init__(self, message: str, outcome: Optional[ChainOutcome] = None) -> None:
        super().__init__(message)
        self.outcome = outcome


@dataclass
class PreviewResult:
    path: str                 # relative to temp storage
    width: int
    height: int
    method: str
    order: int


def preview_rel(image_id: str, width: Optional[int] = None) -> str:
    return f"previews/{image_id}-{width}.jpg" if width else f"previews/{image_id}.jpg"


def thumbnail_rel(image_id: str) -> str:
    return f"thumbnails/{image_id}.jpg"


class PreviewGenerator:
    def __init__(self, exiftool: ExifTool, config: IngestConfig, temp: LocalStorage,
                 observer: Optional[AttemptObserver] = None) -> None:
        self.exiftool = exiftool
        self.config = config
        self.temp = temp
        self.observer = observer or AttemptObserver()

    # ---- settings ----

    @property
    def max_dimension(self) -> int:
        return int(self.config.get("exif.preview.max_dimension", 2048))

    @property
    def quality(self) -> int:
        return int(self.config.get("exif.preview.quality", 85))

    def is_standard_image(self, source: Path) -> bool:
        return source.suffix.lower() in self.config.standard_image_ext

    def is_raw(self, source: Path) -> bool:
        return source.suffix.lower() in self.config.raw_ext

    # ---- strategies ----

    def _embedded(self, source: Path, tag: str) -> Optional[MethodResult]:
        data = self.exiftool.read_binary_tag(source, tag)
        if data is None:
            return None
        size = thumbs.image_size(data)
        if size is None:
            raise MethodFailed(f"{tag}: embedded data is not a decodable image")
        min_dim = int(self.config.get("exiftool.min_preview_dimension", 800))
        if max(size) < min_dim:
            raise MethodFailed(f"{tag}: {size[0]}x{size[1]} below {min_dim}px", TOO_SMALL)
        max_bytes = int(self.config.get("exiftool.max_preview_size", 8 * 1024 * 1024))
        if len(data) > max_bytes:
            log.warning("%s for %s is %d bytes (limit %d); downscaling", tag, source.name, len(data), max_bytes)
        # embedded previews carry the camera's orientation flag; apply it
        jpeg, (w, h) = thumbs.bounded_jpeg(data, self.max_dimension, self.quality)
        return MethodResult(jpeg, {"size": len(jpeg), "dimensions": f"{w}x{h}", "source_bytes": len(data)})

    def _rawpy(self, source: Path) -> Optional[MethodResult]:
        if not self.is_raw(source):
            return None
        jpeg, (w, h) = thumbs.render_raw(source, self.max_dimension, self.quality)
        return MethodResult(jpeg, {"size": len(jpeg), "dimensions": f"{w}x{h}"})

    def _pillow(self, source: Path) -> Optional[MethodResult]:
        jpeg, (w, h) = thumbs.bounded_jpeg(source, self.max_dimension, self.quality)
        return MethodResult(jpeg, {"size": len(jpeg), "dimensions": f"{w}x{h}"})

    def preview_chain(self, source: Path) -> list:
        table = {tag: (lambda t=tag: self._embedded(source, t))
                 for tag in self.config.get("exiftool.preview_tags", []) or []}
        table["rawpy"] = lambda: self._rawpy(source)
        table["pillow"] = lambda: self._pillow(source)

        last = "pillow" if self.config.get("exiftool.fallback_to_pillow", True) else None
        if self.is_standard_image(source):
            names: list[str] = []
        else:
            names = list(self.config.get("exiftool.preview_tags", []) or [])
            if self.is_raw(source):
                names.append("rawpy")
        if last is None and not names:
            names = ["pillow"]  # a standard image always has its own pixels
        return build_chain(names, table, always_last=last)

    # ---- operations ----

    def generate_preview(self, source: Path, image_id: str, session_id: str) -> PreviewResult:
        """Run the preview chain and write previews/{id}.jpg. Raises PreviewGenerationError."""
        source = check_source(source)
        outcome = run_chain(self.preview_chain(source), observer=self.observer,
                            image_id=image_id, session_id=session_id, operation="preview_extraction")
        if not outcome.ok:
            raise PreviewGenerationError(outcome.error or "no preview source available", outcome)

        rel = preview_rel(image_id)
        self.temp.write_bytes(rel, outcome.value)
        w, h = (int(x) for x in outcome.info["dimensions"].split("x"))
        image_logger(log, image_id, session_id).debug("preview via %s (#%d) %dx%d", outcome.method, outcome.order, w, h)
        return PreviewResult(path=rel, width=w, height=h, method=outcome.method, order=outcome.order)

    def _thumb_box(self) -> tuple[int, int, int]:
        return (int(self.config.get("exif.thumbnail.width", 400)),
                int(self.config.get("exif.thumbnail.height", 400)),
                int(self.config.get("exif.thumbnail.quality", 80)))

    def upload_thumbnail(self, source: Path, image_id: str, session_id: str) -> Optional[str]:
        """Best effort at upload time. Returns the thumbnail path or None."""
        width, height, quality = self._thumb_box()

        def from_source() -> Optional[MethodResult]:
            jpeg, (w, h) = thumbs.cover_thumbnail(source, width, height, quality)
            return MethodResult(jpeg, {"size": len(jpeg), "dimensions": f"{w}x{h}"})

        def from_embedded() -> Optional[MethodResult]:
            data = self.exiftool.read_binary_tag(source, "ThumbnailImage")
            if data is None:
                return None
            jpeg, (w, h) = thumbs.cover_thumbnail(data, width, height, quality)
            return MethodResult(jpeg, {"size": len(jpeg), "dimensions": f"{w}x{h}"})

        if self.is_standard_image(source):
            chain = [("pillow", from_source)]
        else:
            chain = [("ThumbnailImage", from_embedded)]
        try:
            outcome = run_chain(chain, observer=self.observer, image_id=image_id,
                                session_id=session_id, operation="thumbnail_generation")
            if not outcome.ok:
                return None
            rel = thumbnail_rel(image_id)
            self.temp.write_bytes(rel, outcome.value)
            return rel
        except IngestError as e:
            image_logger(log, image_id, session_id).warning("thumbnail skipped: %s", e)
            return None

    def thumbnail_from_preview(self, preview_path: str, image_id: str, session_id: str) -> Optional[str]:
        """Re-cut the thumbnail from a finished preview (already oriented)."""
        width, height, quality = self._thumb_box()
        src = self.temp.path(preview_path)

        def from_preview() -> Optional[MethodResult]:
            jpeg, (w, h) = thumbs.cover_thumbnail(src, width, height, quality, orient=False)
            return MethodResult(jpeg, {"size": len(jpeg), "dimensions": f"{w}x{h}"})

        outcome = run_chain([("preview", from_preview)], observer=self.observer, image_id=image_id,
                            session_id=session_id, operation="thumbnail_generation")
        if not outcome.ok:
            return None
        rel = thumbnail_rel(image_id)
        self.temp.write_bytes(rel, outcome.value)
        return rel

    def enhance(self, preview_path: str, image_id: str, session_id: str, target_width: int) -> PreviewResult:
        """Render a larger preview beside the current one. The current file is not touched."""
        src = self.temp.path(preview_path)
        quality = int(self.config.get("exif.enhancement.quality", 92))

        def scale() -> Optional[MethodResult]:
            jpeg, (w, h) = thumbs.scale_to_width(src, target_width, quality)
            return MethodResult(jpeg, {"size": len(jpeg), "dimensions": f"{w}x{h}"})

        outcome = run_chain([("pillow_resample", scale)], observer=self.observer, image_id=image_id,
                            session_id=session_id, operation="enhancement")
        if not outcome.ok:
            raise PreviewGenerationError(outcome.error or "enhancement failed", outcome)
        rel = preview_rel(image_id, target_width)
        self.temp.write_bytes(rel, outcome.value)
        w, h = (int(x) for x in outcome.info["dimensions"].split("x"))
        return PreviewResult(path=rel, width=w, height=h, method=outcome.method, order=outcome.order)

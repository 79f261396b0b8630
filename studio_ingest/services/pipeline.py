# studio_ingest/services/pipeline.py
# IngestService: the one object the API and scripts talk to.
#
# Every public operation starts by resolving the effective config
# (compiled defaults + ingest_settings overrides) and passes it down.
# Upload runs inline; previews and enhancements run on the task queue.

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any, BinaryIO, Callable, Iterable, Mapping, Optional

from studio_ingest.core.config import IngestConfig, resolve_config, validate_overrides
from studio_ingest.core.errors import (
    ConfigurationError,
    IngestError,
    InvalidUploadError,
    PreviewStateError,
    SourceUnreadableError,
)
from studio_ingest.core.logging import get_logger, image_logger
from studio_ingest.repositories.db import init_db
from studio_ingest.repositories.models import StagedImage, Tag
from studio_ingest.repositories.settings import SettingsStore
from studio_ingest.repositories.staging import StagingRegistry
from studio_ingest.services.exiftool import ExifTool
from studio_ingest.services.metadata import MetadataExtractor
from studio_ingest.services.previews import PreviewGenerator
from studio_ingest.services.promotion import AssociationRegistry, BatchLocks, BatchReport, Promoter
from studio_ingest.services.queue import TaskQueue
from studio_ingest.services.storage import LocalStorage, build_storage
from studio_ingest.services.tracing import (
    AttemptObserver,
    SessionEnded,
    SessionStarted,
    build_observer,
    new_session_id,
)

log = get_logger("pipeline")


class IngestService:
    def __init__(self, defaults: Mapping, *, queue: Optional[TaskQueue] = None,
                 observer: Optional[AttemptObserver] = None,
                 associations: Optional[AssociationRegistry] = None,
                 exiftool_factory: Optional[Callable[[IngestConfig], ExifTool]] = None) -> None:
        self.defaults = defaults
        base = resolve_config(defaults)
        self.db_path: Path = base.db_path
        busy = int(base.get("db.busy_timeout_ms", 30000))
        init_db(self.db_path)

        self.settings = SettingsStore(self.db_path, busy_timeout_ms=busy)
        self.registry = StagingRegistry(self.db_path, busy_timeout_ms=busy)
        self.queue = queue or TaskQueue(int(base.get("queue.workers", 2)))
        self.associations = associations or AssociationRegistry()
        self.locks = BatchLocks()
        self.exiftool_factory = exiftool_factory or ExifTool.from_config
        self._observer = observer

    # ---- per-invocation wiring ----

    def resolve(self) -> IngestConfig:
        """Effective config for one invocation: defaults + stored overrides."""
        return resolve_config(self.defaults, self.settings.get_all())

    def observer(self, cfg: IngestConfig) -> AttemptObserver:
        if self._observer is not None:
            return self._observer
        return build_observer(cfg, self.db_path)

    def temp_storage(self, cfg: Optional[IngestConfig] = None) -> LocalStorage:
        return build_storage(cfg or self.resolve(), "temp")

    def _previews(self, cfg: IngestConfig, observer: AttemptObserver) -> PreviewGenerator:
        return PreviewGenerator(self.exiftool_factory(cfg), cfg, build_storage(cfg, "temp"), observer)

    # ---- upload ----

    def upload(self, user_id: int, filename: str, stream: BinaryIO) -> StagedImage:
        """
        Save the upload, extract metadata, cut a best-effort thumbnail, create
        the staged row and queue the preview. Extraction/thumbnail failures are
        stored on the row; only an unreadable upload or a misconfigured
        extractor fails the call.
        """
        cfg = self.resolve()
        name = Path((filename or "").replace("\\", "/")).name
        ext = Path(name).suffix.lower()
        if not name or ext not in cfg.supported_ext:
            raise InvalidUploadError(f"unsupported file type: {name or '(no name)'}")

        image_id = str(uuid.uuid4())
        session_id = new_session_id()
        ilog = image_logger(log, image_id, session_id)
        temp = build_storage(cfg, "temp")
        rel = f"originals/{image_id}{ext}"
        size = temp.save_stream(rel, stream, max_bytes=int(cfg.get("upload.max_bytes", 0)) or None)
        if size == 0:
            temp.delete(rel)
            raise InvalidUploadError(f"empty upload: {name}")

        observer = self.observer(cfg)
        observer.session_started(SessionStarted(image_id, session_id, name))
        extractor = MetadataExtractor(self.exiftool_factory(cfg), cfg, observer)
        try:
            result = extractor.extract(temp.path(rel), image_id=image_id, session_id=session_id,
                                       speed_mode=str(cfg.get("exiftool.upload_speed_mode", "fast2")))
        except (SourceUnreadableError, ConfigurationError) as e:
            observer.session_ended(SessionEnded(image_id, session_id, False, str(e)))
            temp.delete(rel)
            raise

        metadata_error = None
        if not result.ok:
            metadata_error = f"{result.error_kind or 'failed'}: {result.error}"
            if result.tool_unavailable:
                ilog.warning("metadata tool unavailable, stored without metadata: %s", result.error)
            else:
                ilog.warning("metadata extraction failed: %s", result.error)

        thumbnail = self._previews(cfg, observer).upload_thumbnail(temp.path(rel), image_id, session_id)
        observer.session_ended(SessionEnded(image_id, session_id, result.ok, metadata_error))

        self.registry.create(
            image_id=image_id,
            user_id=user_id,
            original_filename=name,
            temp_path=rel,
            file_size=size,
            metadata=result.metadata,
            metadata_raw=result.metadata_raw,
            extraction_method=result.method,
            metadata_error=metadata_error,
            thumbnail_path=thumbnail,
        )
        ilog.info("staged %s (%d bytes, metadata via %s)", name, size, result.method or "none")

        if cfg.get("exif.preview.enabled", True):
            self.request_preview(image_id)
        return self.registry.get(image_id)

    # ---- previews ----

    def request_preview(self, image_id: str) -> bool:
        """Claim pending -> processing and enqueue. False if work is already in flight."""
        attempt = self.registry.claim_preview(image_id)
        if attempt is None:
            return False
        self.queue.submit(self.run_preview_task, image_id, attempt)
        return True

    def run_preview_task(self, image_id: str, attempt: Optional[int] = None) -> None:
        """Worker body. Never leaves the row in processing."""
        session_id = new_session_id()
        ilog = image_logger(log, image_id, session_id)
        img = self.registry.find(image_id)
        if img is None:
            ilog.info("preview skipped: image no longer staged")
            return

        observer: AttemptObserver = AttemptObserver()
        try:
            cfg = self.resolve()
            observer = self.observer(cfg)
            observer.session_started(SessionStarted(image_id, session_id, img.original_filename, "preview"))
            gen = self._previews(cfg, observer)
            result = gen.generate_preview(gen.temp.path(img.temp_path), image_id, session_id)
            try:
                thumb = gen.thumbnail_from_preview(result.path, image_id, session_id)
            except IngestError as e:
                ilog.warning("thumbnail refresh failed: %s", e)
                thumb = None
            if not self.registry.mark_preview_ready(image_id, result.path, result.width, thumb, attempt=attempt):
                if self.registry.find(image_id) is None:
                    reason = "image left staging"
                    ilog.warning("preview finished after the image left staging; discarding artifacts")
                    for rel in (result.path, thumb):
                        if rel:
                            gen.temp.delete(rel)
                else:
                    # a newer attempt owns the row and writes to the same paths
                    reason = "superseded"
                    ilog.warning("preview finished but attempt %s was superseded", attempt)
                observer.session_ended(SessionEnded(image_id, session_id, False, reason))
                return
            observer.session_ended(SessionEnded(image_id, session_id, True))
            ilog.info("preview ready via %s (#%d), %dpx", result.method, result.order, result.width)
        except Exception as e:
            message = str(e) or type(e).__name__
            if isinstance(e, IngestError):
                ilog.warning("preview failed: %s", message)
            else:
                ilog.exception("preview crashed")
            self.registry.mark_preview_failed(image_id, message, attempt=attempt)
            observer.session_ended(SessionEnded(image_id, session_id, False, message))

    def retry_preview(self, image_id: str, user_id: int) -> StagedImage:
        """
        Queue a preview for a failed row, or for a pending one that was
        staged while previews were switched off.
        """
        img = self.registry.get(image_id, user_id=user_id)
        if img.preview_status == "pending":
            self.request_preview(image_id)
        elif self.registry.reset_preview(image_id):
            self.request_preview(image_id)
        else:
            raise PreviewStateError(
                f"preview is {img.preview_status}; only failed or pending previews can be retried")
        return self.registry.get(image_id)

    def preview_status(self, image_ids: Iterable[str], user_id: int) -> list[dict]:
        return self.registry.preview_statuses(image_ids, user_id=user_id)

    # ---- enhancement ----

    def request_enhancement(self, image_ids: Iterable[str], user_id: int) -> list[dict]:
        """
        Per image: queued | already_max | busy | rejected | not_found.
        Only ready previews with no enhancement in flight are queued.
        """
        cfg = self.resolve()
        factor = float(cfg.get("exif.enhancement.factor", 1.25))
        max_dim = int(cfg.get("exif.enhancement.max_dimension", 4096))
        out: list[dict] = []
        for image_id in dict.fromkeys(image_ids):
            img = self.registry.find(image_id, user_id=user_id)
            if img is None:
                out.append({"id": image_id, "status": "not_found"})
                continue
            if img.preview_status != "ready" or not img.preview_width:
                out.append({"id": image_id, "status": "rejected",
                            "detail": f"preview is {img.preview_status}"})
                continue
            target = min(int(round(img.preview_width * factor)), max_dim)
            if target <= img.preview_width:
                out.append({"id": image_id, "status": "already_max", "width": img.preview_width})
                continue
            if not self.registry.request_enhancement(image_id, target):
                out.append({"id": image_id, "status": "busy"})
                continue
            self.queue.submit(self.run_enhancement_task, image_id)
            out.append({"id": image_id, "status": "queued", "target_width": target})
        return out

    def run_enhancement_task(self, image_id: str) -> None:
        """Worker body. The current preview stays served until the swap."""
        session_id = new_session_id()
        ilog = image_logger(log, image_id, session_id)
        if not self.registry.claim_enhancement(image_id):
            ilog.info("enhancement skipped: no longer requested")
            return

        observer: AttemptObserver = AttemptObserver()
        ok, error = False, None
        try:
            cfg = self.resolve()
            img = self.registry.get(image_id)
            observer = self.observer(cfg)
            observer.session_started(SessionStarted(image_id, session_id, img.original_filename, "enhancement"))
            gen = self._previews(cfg, observer)
            result = gen.enhance(img.preview_path, image_id, session_id, int(img.enhancement_width or 0))
            if self.registry.finish_enhancement(image_id, result.path, result.width):
                if img.preview_path != result.path:
                    gen.temp.delete(img.preview_path)
                ilog.info("enhanced preview %dpx -> %dpx", img.preview_width or 0, result.width)
                ok = True
            else:
                gen.temp.delete(result.path)
                error = "superseded"
        except Exception as e:
            error = str(e) or type(e).__name__
            if isinstance(e, IngestError):
                ilog.warning("enhancement failed: %s", error)
            else:
                ilog.exception("enhancement crashed")
            self.registry.fail_enhancement(image_id, error)
        finally:
            observer.session_ended(SessionEnded(image_id, session_id, ok, error))

    # ---- edits ----

    def list_images(self, user_id: int) -> list[StagedImage]:
        return self.registry.list_for_user(user_id)

    def get_image(self, image_id: str, user_id: int) -> StagedImage:
        return self.registry.get(image_id, user_id=user_id)

    def update(self, image_id: str, user_id: int, changes: Mapping[str, Any]) -> StagedImage:
        return self.registry.update(image_id, user_id, changes)

    def batch_update(self, image_ids: Iterable[str], user_id: int, changes: Mapping[str, Any],
                     tags: Optional[list[Mapping]] = None) -> list[StagedImage]:
        return self.registry.batch_update(image_ids, user_id, changes, tags)

    def reorder(self, user_id: int, ordered_ids: list[str]) -> list[StagedImage]:
        return self.registry.reorder(user_id, ordered_ids)

    def delete(self, image_id: str, user_id: int) -> StagedImage:
        img = self.registry.get(image_id, user_id=user_id)
        self.registry.delete(image_id, user_id=user_id)
        self.remove_files(img)
        return img

    def remove_files(self, img: StagedImage, temp: Optional[LocalStorage] = None) -> None:
        temp = temp or self.temp_storage()
        for rel in {img.temp_path, img.thumbnail_path, img.preview_path}:
            try:
                temp.delete(rel)
            except (OSError, IngestError) as e:
                image_logger(log, img.id).warning("could not remove %s: %s", rel, e)

    # ---- tags ----

    def search_tags(self, query: str = "", tag_type: Optional[str] = None, limit: int = 20) -> list[Tag]:
        return self.registry.tags.search(query, tag_type, limit)

    def create_tag(self, name: str, tag_type: str = "normal", color: Optional[str] = None) -> Tag:
        return self.registry.tags.find_or_create(name, tag_type, color)

    def assign_tags(self, image_id: str, user_id: int, specs: Iterable[Mapping]) -> list[Tag]:
        self.registry.get(image_id, user_id=user_id)
        return self.registry.tags.assign(image_id, specs)

    def add_tags(self, image_id: str, user_id: int, specs: Iterable[Mapping]) -> list[Tag]:
        self.registry.get(image_id, user_id=user_id)
        return self.registry.tags.add(image_id, specs)

    def remove_tag(self, image_id: str, user_id: int, tag_id: int) -> bool:
        self.registry.get(image_id, user_id=user_id)
        return self.registry.tags.remove(image_id, tag_id)

    # ---- promotion ----

    def promoter(self, cfg: Optional[IngestConfig] = None) -> Promoter:
        cfg = cfg or self.resolve()
        return Promoter(cfg, db_path=self.db_path, temp=build_storage(cfg, "temp"),
                        final=build_storage(cfg, "final"), associations=self.associations,
                        locks=self.locks)

    def promote(self, image_ids: Iterable[str], user_id: int,
                association: Optional[Mapping] = None) -> BatchReport:
        report = self.promoter().promote_many(image_ids, user_id=user_id, association=association)
        log.info("batch %s: %d promoted, %d failed, %d skipped", report.batch_id,
                 len(report.promoted), len(report.failed), len(report.skipped))
        return report

    # ---- settings ----

    def settings_view(self) -> dict:
        return {"effective": self.resolve().as_dict(), "overrides": self.settings.get_all()}

    def update_settings(self, values: Mapping[str, Any]) -> dict:
        self.settings.set_many(validate_overrides(self.defaults, values))
        return self.settings_view()

    def delete_setting(self, key: str) -> bool:
        return self.settings.delete(key)

    def reset_settings(self) -> int:
        return self.settings.reset_all()

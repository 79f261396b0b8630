# studio_ingest/services/cleanup.py
# Scheduled housekeeping: staging TTL, stuck work, trace retention.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from studio_ingest.core.logging import get_logger, image_logger
from studio_ingest.services.pipeline import IngestService
from studio_ingest.services.tracing import SqliteTraceObserver

log = get_logger("cleanup")


@dataclass
class SweepReport:
    expired: list[str] = field(default_factory=list)
    stale_failed: int = 0
    traces_deleted: int = 0
    dry_run: bool = False


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds")


def sweep(service: IngestService, *, now: Optional[datetime] = None, dry_run: bool = False) -> SweepReport:
    """
    1) delete staged rows (and files) older than cleanup.staging_ttl_hours,
       whatever their state
    2) fail preview/enhancement work stuck longer than stale_processing_minutes
    3) drop trace rows past tracing.retention_days
    """
    cfg = service.resolve()
    now = now or datetime.now(timezone.utc)
    report = SweepReport(dry_run=dry_run)
    temp = service.temp_storage(cfg)

    ttl = timedelta(hours=float(cfg.get("cleanup.staging_ttl_hours", 48)))
    for img in service.registry.older_than(_iso(now - ttl)):
        report.expired.append(img.id)
        if dry_run:
            image_logger(log, img.id).info("[dry-run] would expire %s (created %s)", img.original_filename, img.created_at)
            continue
        if service.registry.delete(img.id) is not None:
            service.remove_files(img, temp)
            image_logger(log, img.id).info("expired %s", img.original_filename)

    stale = timedelta(minutes=float(cfg.get("cleanup.stale_processing_minutes", 30)))
    if not dry_run:
        report.stale_failed = service.registry.fail_stale_processing(_iso(now - stale))
        if report.stale_failed:
            log.warning("marked %d stuck preview/enhancement jobs as failed", report.stale_failed)

    if not dry_run and cfg.get("tracing.enabled", True) and cfg.get("tracing.sink", "sqlite") == "sqlite":
        traces = SqliteTraceObserver(service.db_path, busy_timeout_ms=int(cfg.get("db.busy_timeout_ms", 30000)))
        report.traces_deleted = traces.cleanup(int(cfg.get("tracing.retention_days", 7)), now)

    log.info("sweep: %d expired, %d stale, %d traces removed%s", len(report.expired),
             report.stale_failed, report.traces_deleted, " (dry-run)" if dry_run else "")
    return report

#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Staging housekeeping, meant for cron:

- staged images older than [cleanup] staging_ttl_hours are deleted with
  their files, promoted or not
- previews/enhancements stuck in processing are failed (so they can be retried)
- trace rows older than [tracing] retention_days are dropped

Dry-run prints what would expire and changes nothing.
"""

import argparse
import sys
from pathlib import Path

from studio_ingest.core.config import load_defaults, resolve_config
from studio_ingest.core.errors import IngestError
from studio_ingest.core.logging import add_logging_args, logging_from_args
from studio_ingest.services.cleanup import sweep
from studio_ingest.services.pipeline import IngestService
from studio_ingest.services.queue import InlineQueue


def main() -> int:
    parser = argparse.ArgumentParser(description="Expire old staged images and fail stuck work.")
    parser.add_argument("--config", type=Path, default=None, help="Path to ingest.toml")
    parser.add_argument("--dry-run", action="store_true", help="Report only; delete nothing")
    add_logging_args(parser)
    args = parser.parse_args()

    try:
        defaults = load_defaults(args.config)
    except IngestError as e:
        sys.stderr.write(f"FATAL: {e.message}\n")
        return 2
    base = resolve_config(defaults)
    logging_from_args(args, str(base.get("logging.level", "INFO")), base.logs_dir,
                      bool(base.get("logging.json", False)))

    service = IngestService(defaults, queue=InlineQueue())
    sweep(service, dry_run=args.dry_run)
    return 0


if __name__ == "__main__":
    sys.exit(main())

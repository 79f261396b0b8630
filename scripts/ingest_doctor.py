#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
ExifTool doctor: tells "exiftool is missing / misconfigured" apart from
"this file is bad".

Uses the same effective config as the API (defaults + ingest.toml + stored
overrides), prints a report and exits 0 when exiftool runs, 1 otherwise.
"""

import argparse
import json
import sys
from pathlib import Path

from studio_ingest.core.config import load_defaults, resolve_config
from studio_ingest.core.errors import IngestError
from studio_ingest.core.logging import add_logging_args, logging_from_args
from studio_ingest.repositories.settings import SettingsStore
from studio_ingest.services.doctor import diagnose, render_report
from studio_ingest.services.exiftool import ExifTool


def main() -> int:
    parser = argparse.ArgumentParser(description="Diagnose ExifTool configuration and availability.")
    parser.add_argument("--config", type=Path, default=None, help="Path to ingest.toml")
    parser.add_argument("--no-overrides", action="store_true",
                        help="Ignore overrides stored in the database")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    add_logging_args(parser)
    args = parser.parse_args()

    try:
        defaults = load_defaults(args.config)
        cfg = resolve_config(defaults)
        if not args.no_overrides and cfg.db_path.exists():
            cfg = resolve_config(defaults, SettingsStore(cfg.db_path).get_all())
    except IngestError as e:
        sys.stderr.write(f"FATAL: {e.message}\n")
        return 2
    logging_from_args(args, "WARNING", cfg.logs_dir)

    report = diagnose(ExifTool.from_config(cfg))
    if args.json:
        print(json.dumps(report, indent=2))
    else:
        print(render_report(report))
    return 0 if report["status"] == "ok" else 1


if __name__ == "__main__":
    sys.exit(main())

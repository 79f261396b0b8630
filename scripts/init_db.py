#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Create or upgrade the ingest sqlite schema.

Safe to run repeatedly: tables are CREATE IF NOT EXISTS and newer columns are
added in place.
"""

import argparse
import sys
from pathlib import Path

from studio_ingest.core.config import load_defaults, resolve_config
from studio_ingest.core.errors import IngestError
from studio_ingest.core.logging import add_logging_args, get_logger, logging_from_args
from studio_ingest.repositories.db import init_db

log = get_logger("init_db")


def main() -> int:
    parser = argparse.ArgumentParser(description="Initialize the studio-ingest database.")
    parser.add_argument("--config", type=Path, default=None, help="Path to ingest.toml")
    parser.add_argument("--db", type=Path, default=None, help="Database file (overrides config)")
    add_logging_args(parser)
    args = parser.parse_args()

    try:
        cfg = resolve_config(load_defaults(args.config))
    except IngestError as e:
        sys.stderr.write(f"FATAL: {e.message}\n")
        return 2
    logging_from_args(args, str(cfg.get("logging.level", "INFO")), cfg.logs_dir)

    db_path = (args.db or cfg.db_path).resolve()
    existed = db_path.exists()
    init_db(db_path)
    log.info("%s database at %s", "Upgraded" if existed else "Created", db_path)
    return 0


if __name__ == "__main__":
    sys.exit(main())

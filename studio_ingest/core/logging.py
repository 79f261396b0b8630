# studio_ingest/core/logging.py
# Logger setup shared by the API and the scripts.
# Console always; rotating file only when a logs dir is configured.

from __future__ import annotations

import argparse
import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

LOGGER_NAME = "studio_ingest"


class ContextFilter(logging.Filter):
    """
    Fills the per-image fields the formatters reference and, when
    `max_level` is set, keeps only records at or below it.
    """

    FIELDS = ("image_id", "session_id")

    def __init__(self, max_level: Optional[int] = None) -> None:
        super().__init__()
        self.max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        for name in self.FIELDS:
            if not hasattr(record, name):
                setattr(record, name, "-")
        return self.max_level is None or record.levelno <= self.max_level


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "msg": record.getMessage(),
            "name": record.name,
            "image_id": getattr(record, "image_id", None),
            "session_id": getattr(record, "session_id", None),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def get_logger(name: str = "") -> logging.Logger:
    return logging.getLogger(f"{LOGGER_NAME}.{name}" if name else LOGGER_NAME)


def image_logger(logger: logging.Logger, image_id: str, session_id: Optional[str] = None) -> logging.LoggerAdapter:
    """Attach image_id + session_id to every log record for one image."""
    return logging.LoggerAdapter(logger, {"image_id": image_id, "session_id": session_id or "-"})


def setup_logging(level: str = "INFO", logs_dir: Optional[Path] = None, *,
                  json_logs: bool = False, quiet: bool = False) -> logging.Logger:
    """
    Console/File matrix:
      - console: up to INFO on stdout, WARNING+ on stderr
      - quiet: stdout handler dropped; WARNING+ still reaches stderr
      - level: floor for every handler
      - logs_dir: adds a midnight-rotating file handler (14 backups)
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    for h in list(logger.handlers): logger.removeHandler(h)

    lvl = getattr(logging, str(level).upper(), logging.INFO)
    console_fmt = logging.Formatter("%(levelname)s [%(image_id)s] %(message)s")

    if not quiet:
        out = logging.StreamHandler(sys.stdout)
        out.setLevel(lvl)
        out.addFilter(ContextFilter(max_level=logging.INFO))
        out.setFormatter(console_fmt)
        logger.addHandler(out)

    err = logging.StreamHandler(sys.stderr)
    err.setLevel(max(lvl, logging.WARNING))
    err.addFilter(ContextFilter())
    err.setFormatter(console_fmt)
    logger.addHandler(err)

    if logs_dir:
        logs_dir = Path(logs_dir)
        logs_dir.mkdir(parents=True, exist_ok=True)
        log_path = logs_dir / "studio-ingest.log"
        fh = logging.handlers.TimedRotatingFileHandler(
            log_path, when="midnight", backupCount=14, encoding="utf-8"
        )
        fh.setLevel(lvl)
        fh.addFilter(ContextFilter())
        if json_logs:
            fh.setFormatter(JsonFormatter())
        else:
            fh.setFormatter(logging.Formatter(
                "%(asctime)sZ [%(levelname)s] [%(image_id)s:%(session_id)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%dT%H:%M:%S"
            ))
        logger.addHandler(fh)
        logger.debug(f"Log file: {log_path}")

    return logger


# -------------------- CLI flags (scripts) --------------------

def add_logging_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--logs-dir", default=None,
                        help="Where to write log files (default: [paths] logs_dir)")
    parser.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        help="Force log level (overrides -v/-q)")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Increase console verbosity (repeatable)")
    parser.add_argument("-q", "--quiet", action="store_true",
                        help="Minimal console output")
    parser.add_argument("--json-logs", action="store_true",
                        help="Write JSON-formatted logs to the file handler")


def logging_from_args(args: argparse.Namespace, default_level: str = "INFO",
                      default_logs_dir: Optional[Path] = None, json_default: bool = False) -> logging.Logger:
    """
      --log-level=X wins; otherwise -vv = DEBUG, -v/none = default level,
      -q silences stdout; warnings and errors still go to stderr.
    """
    if args.log_level:
        level = args.log_level
    elif args.verbose >= 2:
        level = "DEBUG"
    else:
        level = default_level
    logs_dir = Path(args.logs_dir) if args.logs_dir else default_logs_dir
    return setup_logging(level, logs_dir, json_logs=args.json_logs or json_default, quiet=args.quiet)

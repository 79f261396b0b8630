# studio_ingest/services/exiftool.py
# Thin subprocess wrapper around the exiftool binary.
# One isolated process per call; no state shared between calls.

from __future__ import annotations

import json
import os
import shutil
import subprocess
from pathlib import Path
from typing import Optional, Sequence

from studio_ingest.core.config import IngestConfig
from studio_ingest.core.errors import (
    ConfigurationError,
    SourceUnreadableError,
    ToolExecutionError,
    ToolTimeoutError,
    ToolUnavailableError,
)
from studio_ingest.core.logging import get_logger

log = get_logger("exiftool")

SPEED_FLAGS = {
    "fast": ["-fast"],
    "fast2": ["-fast2"],
    "full": [],
}

# Anything shorter is exiftool printing nothing useful for a missing tag.
MIN_BINARY_BYTES = 100


def check_source(path: Path) -> Path:
    """Missing/unreadable input is a caller error, not a tool failure."""
    p = Path(path)
    if not p.is_file():
        raise SourceUnreadableError(f"source file not found: {p}")
    if not os.access(p, os.R_OK):
        raise SourceUnreadableError(f"source file not readable: {p}")
    return p


class ExifTool:
    def __init__(self, binary: str = "exiftool", *, timeout: float = 30, path_prefix: str = "",
                 default_options: Sequence[str] = (), include_groups: bool = False) -> None:
        self.binary = binary
        self.timeout = timeout
        self.path_prefix = path_prefix or ""
        self.default_options = list(default_options)
        self.include_groups = include_groups

    @classmethod
    def from_config(cls, config: IngestConfig) -> "ExifTool":
        return cls(
            binary=str(config.get("exiftool.binary", "exiftool")),
            timeout=float(config.get("exiftool.timeout", 30)),
            path_prefix=str(config.get("exiftool.path_prefix") or ""),
            default_options=config.get("exiftool.default_options", []) or [],
            include_groups=bool(config.get("exiftool.include_groups", False)),
        )

    # ---- process plumbing ----

    def environment(self) -> Optional[dict]:
        """Process env with path_prefix prepended to PATH (None = inherit)."""
        if not self.path_prefix:
            return None
        env = dict(os.environ)
        env["PATH"] = self.path_prefix + os.pathsep + env.get("PATH", "")
        return env

    def effective_path(self) -> str:
        env = self.environment()
        return (env or os.environ).get("PATH", "")

    def resolve_binary(self) -> Optional[str]:
        return shutil.which(self.binary, path=self.effective_path())

    def execute(self, args: Sequence[str], *, timeout: Optional[float] = None) -> bytes:
        """
        Run exiftool and return stdout bytes.
        Exit 1 with output is exiftool's "some files/tags had warnings": usable.
        """
        cmd = [self.binary, *args]
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                timeout=timeout or self.timeout,
                env=self.environment(),
                check=False,
            )
        except FileNotFoundError as e:
            raise ToolUnavailableError(f"exiftool binary not found: {self.binary}") from e
        except PermissionError as e:
            raise ToolUnavailableError(f"exiftool binary not executable: {self.binary}") from e
        except subprocess.TimeoutExpired as e:
            raise ToolTimeoutError(f"exiftool timed out after {timeout or self.timeout}s") from e

        if proc.returncode == 127:
            raise ToolUnavailableError(f"exiftool could not be launched (exit 127): {self.binary}")
        if proc.returncode != 0:
            if proc.returncode == 1 and proc.stdout:
                log.debug("exiftool exit 1 with output (warnings): %s",
                          proc.stderr.decode("utf-8", "replace").strip())
                return proc.stdout
            stderr = proc.stderr.decode("utf-8", "replace").strip()
            raise ToolExecutionError(stderr or f"exiftool rc={proc.returncode}",
                                     returncode=proc.returncode, stderr=stderr)
        return proc.stdout

    # ---- operations ----

    def metadata_args(self, speed_mode: str = "fast") -> list[str]:
        args = ["-j", "-n"]
        if speed_mode not in SPEED_FLAGS:
            raise ConfigurationError(f"unknown exiftool speed mode: {speed_mode!r}")
        args += SPEED_FLAGS[speed_mode]
        if self.include_groups:
            args.append("-G")
        args += self.default_options
        # previews are pulled separately with -b; keep blobs out of the JSON
        args += ["--PreviewImage", "--ThumbnailImage", "--JpgFromRaw"]
        return args

    def read_metadata(self, path: Path, speed_mode: str = "fast") -> dict:
        """Return raw exiftool tags as a flat dict (SourceFile dropped)."""
        p = check_source(path)
        out = self.execute([*self.metadata_args(speed_mode), str(p)])
        try:
            data = json.loads(out.decode("utf-8", "replace")) or [{}]
        except ValueError as e:
            raise ToolExecutionError(f"exiftool returned invalid JSON: {e}") from e
        row = dict(data[0]) if isinstance(data, list) and data else {}
        row.pop("SourceFile", None)
        return row

    def read_binary_tag(self, path: Path, tag: str) -> Optional[bytes]:
        """Extract an embedded binary tag (-b -TAG). None if the file has none."""
        p = check_source(path)
        out = self.execute(["-b", f"-{tag}", str(p)])
        if not out or len(out) < MIN_BINARY_BYTES:
            return None
        return out

    def version(self) -> Optional[str]:
        try:
            return self.execute(["-ver"], timeout=min(self.timeout, 10)).decode().strip() or None
        except (ToolUnavailableError, ToolTimeoutError, ToolExecutionError) as e:
            log.warning("exiftool version check failed: %s", e)
            return None

    def health_check(self) -> bool:
        return self.version() is not None

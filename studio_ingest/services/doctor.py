# studio_ingest/services/doctor.py
# ExifTool diagnostics: "is it missing, misconfigured, or is the file bad?"

from __future__ import annotations

import getpass
import os
import platform
from pathlib import Path
from typing import Optional

from studio_ingest.core.errors import ToolExecutionError, ToolTimeoutError, ToolUnavailableError
from studio_ingest.services.exiftool import ExifTool

STATUSES = ("ok", "binary_not_found", "execution_failed", "timeout")

RECOMMENDATIONS = [
    "Set an absolute binary path: [exiftool] binary = \"/usr/local/bin/exiftool\"",
    "Or prepend its directory to PATH: [exiftool] path_prefix = \"/usr/local/bin\"",
    "Overrides stored in ingest_settings win over ingest.toml; check GET /api/ingest/settings",
    "Restart the API and workers after changing the configuration",
    "Locate the installation with: which exiftool",
]


def _truncate(s: str, n: int = 200) -> str:
    return s if len(s) <= n else s[:n] + "... (truncated)"


def diagnose(exiftool: ExifTool) -> dict:
    """Collect environment + binary facts and run `exiftool -ver` once."""
    report: dict = {
        "environment": {
            "python": platform.python_version(),
            "user": getpass.getuser(),
            "uid": os.getuid() if hasattr(os, "getuid") else None,
        },
        "config": {
            "binary": exiftool.binary,
            "path_prefix": exiftool.path_prefix or None,
            "timeout": exiftool.timeout,
        },
        "path": {
            "current": os.environ.get("PATH", ""),
            "effective": exiftool.effective_path(),
        },
        "binary": {"resolved": exiftool.resolve_binary()},
        "execution": {"command": [exiftool.binary, "-ver"]},
    }

    if os.path.isabs(exiftool.binary):
        p = Path(exiftool.binary)
        report["binary"].update({
            "exists": p.exists(),
            "readable": os.access(p, os.R_OK),
            "executable": os.access(p, os.X_OK),
        })

    execution = report["execution"]
    try:
        out = exiftool.execute(["-ver"], timeout=min(float(exiftool.timeout), 10.0))
        execution.update({"exit_code": 0, "stdout": out.decode("utf-8", "replace").strip(), "stderr": ""})
        report["status"] = "ok"
        report["version"] = execution["stdout"] or None
    except ToolUnavailableError as e:
        execution.update({"exit_code": 127, "error": e.message})
        report["status"] = "binary_not_found"
    except ToolTimeoutError as e:
        execution.update({"exit_code": None, "error": e.message})
        report["status"] = "timeout"
    except ToolExecutionError as e:
        execution.update({"exit_code": e.returncode, "stderr": e.stderr, "error": e.message})
        report["status"] = "execution_failed"

    report["recommendations"] = [] if report["status"] == "ok" else list(RECOMMENDATIONS)
    return report


def _section(title: str) -> str:
    return f"┌─ {title} " + "─" * max(0, 60 - len(title))


def render_report(report: dict) -> str:
    """Plain-text rendering for the CLI."""
    env, cfg, path, binary, ex = (report[k] for k in ("environment", "config", "path", "binary", "execution"))
    lines = [
        _section("Environment"),
        f"  Python:        {env['python']}",
        f"  User:          {env['user']} (UID: {env['uid']})",
        "",
        _section("ExifTool configuration"),
        f"  Binary:        {cfg['binary']}",
        f"  Path prefix:   {cfg['path_prefix'] or '(not set)'}",
        f"  Timeout:       {cfg['timeout']}s",
        "",
        _section("PATH"),
        f"  Current:       {_truncate(path['current'])}",
    ]
    if cfg["path_prefix"]:
        lines.append(f"  Effective:     {_truncate(path['effective'])}")
    lines += [
        "",
        _section("Binary"),
        f"  Resolved:      {binary['resolved'] or 'not found on PATH'}",
    ]
    for key in ("exists", "readable", "executable"):
        if key in binary:
            lines.append(f"  {key.capitalize() + ':':<14} {'yes' if binary[key] else 'no'}")
    lines += [
        "",
        _section("Execution test"),
        f"  Command:       {' '.join(ex['command'])}",
        f"  Exit code:     {ex.get('exit_code')}",
    ]
    if ex.get("stdout"):
        lines.append(f"  Stdout:        {ex['stdout']}")
    if ex.get("stderr"):
        lines.append(f"  Stderr:        {ex['stderr']}")
    if ex.get("error"):
        lines.append(f"  Error:         {ex['error']}")
    lines.append("")

    status: Optional[str] = report.get("status")
    if status == "ok":
        lines.append(f"OK: exiftool {report.get('version') or ''} is working")
    else:
        lines.append(f"FAILED: {status}")
        lines.append("")
        lines.append("Recommendations:")
        lines += [f"  {i}. {r}" for i, r in enumerate(report["recommendations"], 1)]
    return "\n".join(lines)

# studio_ingest/repositories/settings.py
# Operator overrides: flat dotted key -> typed value.
# Absent key = compiled default. Values are cast back to their stored type.

from __future__ import annotations

import json
from typing import Any, Mapping

from studio_ingest.core.errors import InvalidEditError
from studio_ingest.repositories.db import Repository, utcnow


def detect_type(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "float"
    if isinstance(value, (dict, list, tuple)):
        return "json"
    return "string"


def _encode(value: Any, kind: str) -> str:
    if kind == "json":
        return json.dumps(value)
    if kind == "boolean":
        return "1" if value else "0"
    return str(value)


def _decode(raw: str, kind: str) -> Any:
    if raw is None:
        return None
    if kind == "integer":
        return int(raw)
    if kind == "float":
        return float(raw)
    if kind == "boolean":
        return raw in ("1", "true", "True")
    if kind == "json":
        return json.loads(raw)
    return raw


class SettingsStore(Repository):

    def get_all(self) -> dict[str, Any]:
        with self._read() as c:
            rows = c.execute("SELECT key, value, type FROM ingest_settings ORDER BY key").fetchall()
        return {r["key"]: _decode(r["value"], r["type"]) for r in rows}

    def get(self, key: str, default: Any = None) -> Any:
        with self._read() as c:
            row = c.execute("SELECT value, type FROM ingest_settings WHERE key = ?", (key,)).fetchone()
        return _decode(row["value"], row["type"]) if row else default

    def has(self, key: str) -> bool:
        with self._read() as c:
            return c.execute("SELECT 1 FROM ingest_settings WHERE key = ?", (key,)).fetchone() is not None

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, values: Mapping[str, Any]) -> None:
        now = utcnow()
        with self._write() as c:
            for key, value in values.items():
                if not key:
                    raise InvalidEditError("setting key must not be empty")
                if value is None:
                    # None means "back to the compiled default"
                    c.execute("DELETE FROM ingest_settings WHERE key = ?", (key,))
                    continue
                kind = detect_type(value)
                c.execute(
                    """INSERT INTO ingest_settings (key, value, type, updated_at) VALUES (?, ?, ?, ?)
                       ON CONFLICT(key) DO UPDATE SET value = excluded.value, type = excluded.type,
                                                      updated_at = excluded.updated_at""",
                    (key, _encode(value, kind), kind, now),
                )

    def delete(self, key: str) -> bool:
        with self._write() as c:
            return c.execute("DELETE FROM ingest_settings WHERE key = ?", (key,)).rowcount > 0

    def reset_all(self) -> int:
        with self._write() as c:
            return c.execute("DELETE FROM ingest_settings").rowcount

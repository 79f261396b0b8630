# studio_ingest/core/errors.py
# Typed failures surfaced by the ingest pipeline.
# Each error carries a stable `code`; the API maps codes to HTTP statuses.

from __future__ import annotations

from typing import Optional


class IngestError(Exception):
    code = "ingest_error"

    def __init__(self, message: str = "", *, code: Optional[str] = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code


class ConfigurationError(IngestError):
    code = "configuration_error"


# --- external tool ---

class ToolError(IngestError):
    code = "tool_error"


class ToolUnavailableError(ToolError):
    """Binary missing, not executable, or the shell reported 127."""
    code = "tool_unavailable"


class ToolTimeoutError(ToolError):
    code = "tool_timeout"


class ToolExecutionError(ToolError):
    code = "tool_failed"

    def __init__(self, message: str = "", *, returncode: Optional[int] = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


# --- input / state ---

class SourceUnreadableError(IngestError):
    code = "source_unreadable"


class InvalidUploadError(IngestError):
    code = "invalid_upload"


class ImageNotFoundError(IngestError):
    code = "image_not_found"


class InvalidEditError(IngestError):
    code = "invalid_edit"


class TagConflictError(IngestError):
    code = "tag_conflict"


class PreviewStateError(IngestError):
    code = "preview_state"


# --- promotion ---

class NamingError(IngestError):
    code = "naming_error"


class NamingCollisionError(NamingError):
    code = "naming_collision"


class StorageError(IngestError):
    code = "storage_error"


class StorageWriteError(StorageError):
    code = "storage_write_failed"


class AssociationError(IngestError):
    code = "invalid_association"


class PromotionError(IngestError):
    code = "promotion_failed"


HTTP_STATUS = {
    ImageNotFoundError: 404,
    PreviewStateError: 409,
    TagConflictError: 409,
    NamingCollisionError: 409,
    InvalidEditError: 422,
    InvalidUploadError: 422,
    AssociationError: 422,
    NamingError: 422,
    SourceUnreadableError: 422,
    PromotionError: 409,
    ToolUnavailableError: 503,
    ToolTimeoutError: 504,
    ToolExecutionError: 502,
    StorageError: 500,
    ConfigurationError: 500,
}


def http_status_for(exc: IngestError) -> int:
    """Most specific mapped status along the exception's MRO, else 500."""
    for cls in type(exc).__mro__:
        if cls in HTTP_STATUS:
            return HTTP_STATUS[cls]
    return 500

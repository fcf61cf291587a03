"""Exception types and failure reason codes used across the sync engine."""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    ENTITY_API_FAILURE = "ENTITY_API_FAILURE"
    UNEXPECTED_EXCEPTION = "UNEXPECTED_EXCEPTION"
    EXPORT_REQUEST_FAILED = "EXPORT_REQUEST_FAILED"
    INVALID_REQUEST = "INVALID_REQUEST"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class SyncError(Exception):
    """Raised when an export or import cannot be completed.

    ``parent`` keeps the underlying exception (HTTP error, content store
    failure) so the ledger can record its message next to the code.
    """

    def __init__(self, code: ErrorCode, message: str = "", *, parent: BaseException | None = None) -> None:
        super().__init__(message or code.value)
        self.code = code
        self.parent = parent

    @property
    def message(self) -> str:
        if self.parent is not None:
            return f"{self.args[0]}: {self.parent}"
        return str(self.args[0])


class InvalidPayloadError(SyncError):
    """Raised for import payloads that are missing mandatory data.

    This is the only failure that propagates past the intent boundary; the
    payload itself is broken so retrying it is pointless.
    """

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.INVALID_REQUEST, message)


class ContentStoreError(Exception):
    """Raised by the host content store when loading or saving an entity fails."""


class RemoteAuthError(Exception):
    """Raised when the remote endpoint rejects our credentials."""


class RemoteError(Exception):
    """Raised for non-retryable remote endpoint errors."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Ledger reason codes
# ---------------------------------------------------------------------------


class ExportFailure(StrEnum):
    # soft
    HANDLER_DENIED = "export_failed_handler_denied"
    UNCHANGED = "export_failed_unchanged"
    VERSION_MISMATCH = "export_failed_version_mismatch"
    NO_POOL = "export_failed_no_pool"
    # hard
    REQUEST_FAILED = "export_failed_request_failed"
    INVALID_STATUS_CODE = "export_failed_invalid_status_code"
    DEPENDENCY_EXPORT_FAILED = "export_failed_dependency_export_failed"
    INTERNAL_ERROR = "export_failed_internal_error"

    @property
    def is_soft(self) -> bool:
        return self in _SOFT_EXPORT


class ImportFailure(StrEnum):
    # soft
    HANDLER_DENIED = "import_failed_handler_denied"
    NO_FLOW = "import_failed_no_flow"
    UNKNOWN_POOL = "import_failed_unknown_pool"
    DIFFERENT_VERSION = "import_failed_different_version"
    # hard
    CONTENT_SYNC_ERROR = "import_failed_content_sync_error"
    INTERNAL_ERROR = "import_failed_internal_error"
    INVALID_REQUEST = "import_failed_invalid_request"

    @property
    def is_soft(self) -> bool:
        return self in _SOFT_IMPORT


_SOFT_EXPORT = frozenset(
    {
        ExportFailure.HANDLER_DENIED,
        ExportFailure.UNCHANGED,
        ExportFailure.VERSION_MISMATCH,
        ExportFailure.NO_POOL,
    }
)
_SOFT_IMPORT = frozenset(
    {
        ImportFailure.HANDLER_DENIED,
        ImportFailure.NO_FLOW,
        ImportFailure.UNKNOWN_POOL,
        ImportFailure.DIFFERENT_VERSION,
    }
)

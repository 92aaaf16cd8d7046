"""Exceptions raised by the document tracking domain."""

from __future__ import annotations

from .constants import remediation_for


class DocweaveError(RuntimeError):
    """Base error carrying a stable code and remediation hint."""

    default_code = "DOCWEAVE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        remediation: str | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.code = code or self.default_code
        self.remediation = remediation if remediation is not None else remediation_for(self.code)

    def to_dict(self) -> dict[str, str | None]:
        return {"code": self.code, "message": self.message, "remediation": self.remediation}


class ParseError(DocweaveError):
    """Raised when preservation sentinels are unbalanced."""

    default_code = "DOC_PARSE_UNBALANCED_MARKER"

    def __init__(self, reason: str, *, line: int | None = None) -> None:
        location = f" (line {line})" if line is not None else ""
        super().__init__(f"Malformed section markers{location}: {reason}")
        self.reason = reason
        self.line = line


class GenerationError(DocweaveError):
    """Raised by a content source that cannot produce a rendering."""

    default_code = "DOC_GENERATION_FAILED"


class AlreadyRegistered(DocweaveError):
    default_code = "DOC_ALREADY_REGISTERED"


class NotRegistered(DocweaveError):
    default_code = "DOC_NOT_REGISTERED"


class WriteNotConfirmedError(DocweaveError):
    """Raised when a written document does not read back with the expected hash."""

    default_code = "DOC_WRITE_UNCONFIRMED"


class RegistryCommitError(DocweaveError):
    default_code = "REGISTRY_COMMIT_FAILED"


class RegistryCorruptionError(DocweaveError):
    default_code = "REGISTRY_CORRUPTED"


class ChangeSetError(DocweaveError):
    """Raised when a change-set reference cannot be resolved."""

    default_code = "CHANGE_SET_UNRESOLVED"


class RequestTimeoutError(DocweaveError):
    default_code = "REQUEST_TIMEOUT"


def retryable_status(status_code: int) -> bool:
    """Rate limiting and server errors are worth another attempt."""

    return status_code == 429 or 500 <= status_code < 600

from __future__ import annotations


class DocumentControlError(Exception):
    """Base class for lifecycle and document operation failures."""

    code = "document_error"
    http_status = 400
    retryable = False

    def __init__(self, message: str, **details: object) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        out: dict = {"error": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class ValidationFailed(DocumentControlError):
    code = "validation_failed"
    http_status = 422

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors), errors=errors)
        self.errors = errors


class InvalidTransition(DocumentControlError):
    code = "invalid_transition"
    http_status = 409


class Unauthorized(DocumentControlError):
    code = "unauthorized"
    http_status = 403


class MissingFile(DocumentControlError):
    code = "missing_file"
    http_status = 422


class MissingComment(DocumentControlError):
    code = "missing_comment"
    http_status = 422


class StorageFailure(DocumentControlError):
    """File put/move/delete failed; the surrounding operation was rolled back."""

    code = "storage_error"
    http_status = 503
    retryable = True


class ConcurrentModification(DocumentControlError):
    """Another transition committed first; re-read the document and retry the user action."""

    code = "concurrent_modification"
    http_status = 409
    retryable = True

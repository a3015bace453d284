# models/errors.py
from typing import Any, Dict, Optional


class TransferError(Exception):
    """Base class for every failure raised by the transfer core.

    ``kind`` is the stable name the transport layer maps to a status code.
    ``limit`` carries the configured limit a policy check ran against.
    """
    kind = "TransferError"

    def __init__(self, message: str = "", limit: Optional[Any] = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.limit = limit

    def to_dict(self) -> Dict[str, Any]:
        data = {"error": self.kind, "detail": self.message}
        if self.limit is not None:
            data["limit"] = self.limit
        return data


class SessionNotFound(TransferError):
    kind = "NotFound"


class SessionExpired(TransferError):
    kind = "SessionExpired"


class SessionAlreadyCompleted(TransferError):
    kind = "SessionAlreadyCompleted"


class InvalidDuration(TransferError):
    kind = "InvalidDuration"


class InvalidSize(TransferError):
    kind = "InvalidSize"


class TooLarge(TransferError):
    kind = "TooLarge"


class QuotaExceeded(TransferError):
    kind = "QuotaExceeded"


class MimeTypeRejected(TransferError):
    kind = "Rejected"


class InvalidChunk(TransferError):
    kind = "InvalidChunk"


class UnknownUpload(TransferError):
    kind = "UnknownUpload"


class IncompleteUpload(TransferError):
    kind = "IncompleteUpload"


class StorageFailure(TransferError):
    kind = "StorageFailure"


class QRGenerationFailed(TransferError):
    kind = "QRGenerationFailed"


class Conflict(TransferError):
    kind = "Conflict"

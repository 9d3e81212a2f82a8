"""
Pipeline error taxonomy
=======================

Every error the ingestion pipeline surfaces derives from PipelineError and
carries an HTTP-like status code plus whatever context is known (category,
file, chunk). The API layer maps status_code straight onto the response.
"""

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None, **details: Any):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details: Dict[str, Any] = {k: v for k, v in details.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "status_code": self.status_code,
            **self.details,
        }

    def __str__(self) -> str:
        if not self.details:
            return self.message
        context = ", ".join(f"{k}={v}" for k, v in self.details.items())
        return f"{self.message} ({context})"


class ValidationError(PipelineError):
    """Malformed input or a write that would break a dataset invariant."""
    status_code = 400


class DatasetNotFound(PipelineError):
    status_code = 404


class DecodeFailure(PipelineError):
    """The tabular decoder could not turn the upload into records."""
    status_code = 400


class ChunkRejected(PipelineError):
    status_code = 400


class RepairFailure(PipelineError):
    """
    Raised inside the record repair parser when a literal cannot be parsed.
    Never escapes the parser; it only classifies failures for logging.
    """
    status_code = 422


class MergeConflict(PipelineError):
    """
    Incoming and existing series share an id but hold different value kinds.
    Resolved by appending; reported rather than raised.
    """
    status_code = 409


class SizeExceeded(PipelineError):
    status_code = 413


class StorageCorruption(PipelineError):
    """Persisted payload failed decompression, parsing or structural validation."""
    status_code = 500


class BlobIOError(PipelineError):
    status_code = 502


class BlobNotFound(BlobIOError):
    status_code = 404


class TransactionTimeout(PipelineError):
    status_code = 504

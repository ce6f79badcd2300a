"""Exception hierarchy for the gemstone media analysis pipeline."""

from __future__ import annotations

from typing import Any


class GemInsightError(Exception):
    """Base exception for all gem_insight errors."""


class NotFound(GemInsightError):
    """Raised when a gemstone or asset identifier is unknown."""

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


# Media normalization

class MediaError(GemInsightError):
    """Base exception for a single media file that could not be prepared."""

    reason = "normalization_failed"


class UnsupportedFormat(MediaError):
    """The media blob could not be decoded."""

    reason = "unsupported_format"


class NormalizationFailed(MediaError):
    """Decoding succeeded but the derivative could not be produced."""

    reason = "normalization_failed"


class SizeLimitExceeded(MediaError):
    """The normalized derivative is still larger than the storage ceiling."""

    reason = "size_limit_exceeded"


class TranscodeTimeout(MediaError):
    """An external transcoding tool did not finish in time."""

    reason = "transcode_timeout"


# Vision extraction

class ExtractionError(GemInsightError):
    """Base exception for a failed vision extraction task."""

    status = "failure"


class ExtractionTimeout(ExtractionError):
    """The vision capability did not answer within the task timeout."""

    status = "timeout"


class ExtractionParseError(ExtractionError):
    """The vision capability answered with malformed or non-conforming JSON."""


class ExtractionUnavailable(ExtractionError):
    """The vision capability could not be reached or refused the request."""


class TaskBudgetExceeded(GemInsightError, ValueError):
    """A task was dispatched with more images than its budget allows."""


# Storage

class StorageError(GemInsightError):
    """A media store or database operation failed."""


class PersistenceFailed(StorageError):
    """The analysis record could not be written.

    ``outcome`` holds the fully computed, unpersisted result so the caller can
    retry persistence without repeating extraction.
    """

    def __init__(self, message: str, outcome: Any | None = None) -> None:
        super().__init__(message)
        self.outcome = outcome


__all__ = [
    "GemInsightError",
    "NotFound",
    "MediaError",
    "UnsupportedFormat",
    "NormalizationFailed",
    "SizeLimitExceeded",
    "TranscodeTimeout",
    "ExtractionError",
    "ExtractionTimeout",
    "ExtractionParseError",
    "ExtractionUnavailable",
    "TaskBudgetExceeded",
    "StorageError",
    "PersistenceFailed",
]

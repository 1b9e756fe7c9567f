"""Typed job errors surfaced to submission callers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class JobErrorKind(str, Enum):
    """Discriminant for job submission and persistence failures."""

    ALREADY_QUEUED = "already_queued"
    STORE_ERROR = "store_error"
    VALIDATION_ERROR = "validation_error"
    DISPATCH_ERROR = "dispatch_error"


@dataclass
class JobError(Exception):
    """Job failure with a kind discriminant and the related job id, if known."""

    kind: JobErrorKind
    message: str
    job_id: str | None = None

    def __str__(self) -> str:
        return self.message

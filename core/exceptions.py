"""
Exception taxonomy for the detection and explanation workflow.
"""
from typing import Optional

from .models import ErrorKind


class HaejeokError(Exception):
    """Base class for all application errors."""


class ImageDecodeError(HaejeokError):
    """Raised when an uploaded image or page cannot be decoded."""


class RecognitionError(HaejeokError):
    """Raised when no problem text could be recognized in a region."""


class PromptNotFoundError(HaejeokError):
    """Raised when a prompt template is missing or empty."""

    def __init__(self, name: str, reason: str = "does not exist"):
        self.name = name
        super().__init__(f"Prompt '{name}' {reason}.")


class GenerationError(HaejeokError):
    """Raised by LLM clients when an external AI call fails."""

    def __init__(self, kind: ErrorKind, message: str, status_code: Optional[int] = None):
        self.kind = kind
        self.status_code = status_code
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        return self.kind.is_retryable


class QuotaExceededError(HaejeokError):
    """Raised when a batch requests more explanations than remain for the mode."""

    def __init__(self, mode: str, requested: int, remaining: int):
        self.mode = mode
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Quota exceeded for mode '{mode}': requested {requested}, remaining {remaining}."
        )


class QuotaAccountingError(HaejeokError):
    """Raised when a quota refund could not be applied."""


class BatchInProgressError(HaejeokError):
    """Raised when a user starts a batch while another one is running."""

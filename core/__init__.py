"""Core package - Domain models, constants, errors and cancellation."""

from .models import (
    ExplanationMode,
    ProblemType,
    BatchState,
    ErrorKind,
    Rect,
    Bbox,
    DetectedProblem,
    PageImage,
    UserSelection,
    PageAnalysis,
    GenerationResult,
    ExplanationRecord,
    ChargeResult,
    BatchResult,
)
from .constants import (
    TIER_LIMITS,
    EXPORT_LIMITS,
    DEFAULT_DETECTION_PARAMS,
    DEFAULT_RETRY_PARAMS,
    DEFAULT_PROMPTS,
    STATUS_MESSAGES,
)
from .exceptions import (
    HaejeokError,
    ImageDecodeError,
    RecognitionError,
    PromptNotFoundError,
    GenerationError,
    QuotaExceededError,
    QuotaAccountingError,
    BatchInProgressError,
)
from .cancellation import CancellationToken

__all__ = [
    # Models
    'ExplanationMode',
    'ProblemType',
    'BatchState',
    'ErrorKind',
    'Rect',
    'Bbox',
    'DetectedProblem',
    'PageImage',
    'UserSelection',
    'PageAnalysis',
    'GenerationResult',
    'ExplanationRecord',
    'ChargeResult',
    'BatchResult',

    # Constants
    'TIER_LIMITS',
    'EXPORT_LIMITS',
    'DEFAULT_DETECTION_PARAMS',
    'DEFAULT_RETRY_PARAMS',
    'DEFAULT_PROMPTS',
    'STATUS_MESSAGES',

    # Errors
    'HaejeokError',
    'ImageDecodeError',
    'RecognitionError',
    'PromptNotFoundError',
    'GenerationError',
    'QuotaExceededError',
    'QuotaAccountingError',
    'BatchInProgressError',

    'CancellationToken',
]

"""
Core domain models for the problem detection and explanation workflow.

These are pure data structures without business logic.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional


class ExplanationMode(str, Enum):
    """Explanation quality mode. Each mode has its own usage counter."""
    FAST = "fast"
    STANDARD = "standard"
    QUALITY = "quality"


class ProblemType(str, Enum):
    """Problem format as reported by recognition."""
    MULTIPLE_CHOICE = "multiple-choice"
    FREE_RESPONSE = "free-response"


class VariationLevel(str, Enum):
    """How far a variation problem departs from its base problem."""
    NUMERIC = "numeric"
    FORM = "form"
    CREATIVE = "creative"


class BatchState(str, Enum):
    """States of one batch generation operation."""
    IDLE = "idle"
    ANALYZING_REGIONS = "analyzing_regions"
    AWAITING_USER_SELECTION = "awaiting_user_selection"
    CHARGING = "charging"
    GENERATING = "generating"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchState.COMPLETED, BatchState.CANCELLED, BatchState.FAILED)


class ErrorKind(str, Enum):
    """Structured classification of a failed external AI call."""
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    QUOTA_EXCEEDED = "quota_exceeded"
    TIMEOUT = "timeout"
    OTHER = "other"

    @property
    def is_retryable(self) -> bool:
        return self in (ErrorKind.RATE_LIMITED, ErrorKind.UNAVAILABLE)


@dataclass(frozen=True)
class Rect:
    """Axis-aligned pixel rectangle."""
    x: int
    y: int
    width: int
    height: int

    @property
    def x2(self) -> int:
        return self.x + self.width

    @property
    def y2(self) -> int:
        return self.y + self.height

    @property
    def area(self) -> int:
        return self.width * self.height


@dataclass(frozen=True)
class Bbox:
    """Normalized rectangle with all coordinates in [0, 1]."""
    x_min: float
    y_min: float
    x_max: float
    y_max: float

    @property
    def width(self) -> float:
        return self.x_max - self.x_min

    @property
    def height(self) -> float:
        return self.y_max - self.y_min

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'x_min': self.x_min,
            'y_min': self.y_min,
            'x_max': self.x_max,
            'y_max': self.y_max
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Bbox":
        return cls(
            x_min=float(data['x_min']),
            y_min=float(data['y_min']),
            x_max=float(data['x_max']),
            y_max=float(data['y_max'])
        )


@dataclass(frozen=True)
class DetectedProblem:
    """A recognized problem inside one detected region."""
    bbox: Bbox
    problem_type: ProblemType
    problem_body: str
    choices: Optional[str] = None

    @property
    def full_text(self) -> str:
        """Problem body followed by its choices, if any."""
        if self.choices:
            return f"{self.problem_body}\n{self.choices}"
        return self.problem_body


@dataclass
class PageImage:
    """A rasterized page. `image` is a decoded BGR numpy array."""
    page_number: int
    image: Any
    source_name: str = ""

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])


@dataclass
class UserSelection:
    """A region confirmed for explanation generation."""
    page_number: int
    bbox: Bbox
    initial_text: Optional[str] = None
    id: Optional[str] = None


@dataclass
class PageAnalysis:
    """Detection and recognition output for one page."""
    page_number: int
    regions: List[Bbox] = field(default_factory=list)
    problems: List[DetectedProblem] = field(default_factory=list)

    def to_selections(self) -> List[UserSelection]:
        """Selections covering every recognized problem on the page."""
        return [
            UserSelection(
                page_number=self.page_number,
                bbox=problem.bbox,
                initial_text=problem.full_text or None
            )
            for problem in self.problems
        ]


@dataclass
class GenerationResult:
    """Structured output of one explanation generation call."""
    markdown: str
    core_concepts: List[str] = field(default_factory=list)
    difficulty: Optional[int] = None


@dataclass
class VariationProblem:
    """A new problem derived from a base problem, with its explanation."""
    problem: str
    explanation: str
    level: VariationLevel

    def to_dict(self) -> dict:
        return {
            'problem': self.problem,
            'explanation': self.explanation,
            'level': self.level.value
        }


@dataclass
class ExplanationRecord:
    """One explanation card, created as a loading placeholder."""
    id: int
    page_number: int
    problem_number: int
    mode: ExplanationMode
    markdown: str = ""
    is_loading: bool = True
    is_error: bool = False
    image: str = ""
    original_problem_text: str = ""
    bbox: Optional[Bbox] = None
    difficulty: Optional[int] = None
    core_concepts: List[str] = field(default_factory=list)
    persisted_id: Optional[str] = None
    is_satisfied: bool = False

    @property
    def is_success(self) -> bool:
        return not self.is_loading and not self.is_error

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'id': self.id,
            'persisted_id': self.persisted_id,
            'page_number': self.page_number,
            'problem_number': self.problem_number,
            'mode': self.mode.value,
            'markdown': self.markdown,
            'is_loading': self.is_loading,
            'is_error': self.is_error,
            'image': self.image,
            'original_problem_text': self.original_problem_text,
            'bbox': self.bbox.to_dict() if self.bbox else None,
            'difficulty': self.difficulty,
            'core_concepts': list(self.core_concepts),
            'is_satisfied': self.is_satisfied
        }


@dataclass
class ChargeResult:
    """Outcome of an atomic quota charge."""
    ok: bool
    remaining: Optional[int] = None


@dataclass
class BatchResult:
    """Final accounting of one batch operation."""
    state: BatchState
    mode: ExplanationMode
    records: List[ExplanationRecord] = field(default_factory=list)
    requested: int = 0
    charged: int = 0
    completed: int = 0
    refunded: int = 0
    error: Optional[str] = None
    accounting_error: Optional[str] = None

    @property
    def failed_count(self) -> int:
        return sum(1 for record in self.records if record.is_error)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'state': self.state.value,
            'mode': self.mode.value,
            'requested': self.requested,
            'charged': self.charged,
            'completed': self.completed,
            'refunded': self.refunded,
            'failed': self.failed_count,
            'error': self.error,
            'accounting_error': self.accounting_error,
            'records': [record.to_dict() for record in self.records]
        }

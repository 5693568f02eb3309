"""
Pydantic schemas for API request/response validation.
"""
from typing import List, Optional

from pydantic import BaseModel, Field

from core.models import Bbox, ExplanationMode, UserSelection, VariationLevel


class BboxSchema(BaseModel):
    """Normalized bounding box."""
    x_min: float = Field(ge=0.0, le=1.0)
    y_min: float = Field(ge=0.0, le=1.0)
    x_max: float = Field(ge=0.0, le=1.0)
    y_max: float = Field(ge=0.0, le=1.0)

    def to_bbox(self) -> Bbox:
        return Bbox(x_min=self.x_min, y_min=self.y_min, x_max=self.x_max, y_max=self.y_max)


class SelectionRequest(BaseModel):
    """A confirmed problem region."""
    page_number: int = Field(ge=1)
    bbox: BboxSchema
    initial_text: Optional[str] = None

    def to_selection(self) -> UserSelection:
        return UserSelection(
            page_number=self.page_number,
            bbox=self.bbox.to_bbox(),
            initial_text=self.initial_text or None
        )


class StartBatchRequest(BaseModel):
    """Request body for starting a batch."""
    upload_id: str
    mode: ExplanationMode = ExplanationMode.FAST
    selections: List[SelectionRequest]
    guidelines: str = ""


class RetryRequest(BaseModel):
    """Request body for retrying one record."""
    guidelines: str = ""


class QnaRequest(BaseModel):
    """Question about one line of an explanation."""
    problem_text: str
    full_explanation: str
    selected_line: str
    user_question: str


class QnaResponse(BaseModel):
    answer: str


class VariationRequest(BaseModel):
    """Generate a variation of a problem."""
    problem_text: str = Field(min_length=1)
    level: VariationLevel = VariationLevel.NUMERIC
    core_idea: Optional[str] = None
    guidelines: str = ""


class VariationResponse(BaseModel):
    problem: str
    explanation: str
    level: VariationLevel


class SaveSetRequest(BaseModel):
    """Save a finished batch as an explanation set."""
    batch_id: str
    title: str = Field(min_length=1)


class ExplanationSetResponse(BaseModel):
    """Response for explanation set metadata."""
    id: str
    user_id: str
    title: str
    explanation_count: int
    created_at: Optional[str] = None

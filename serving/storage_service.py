"""
Explanation Storage Service

Handles saving batches of explanations as sets, and reading or deleting them.
"""
import logging
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from core.models import ExplanationRecord
from data.db_models import ExplanationSet
from data.repositories import ExplanationSetRepository, UserRepository

logger = logging.getLogger(__name__)


class ExplanationStorageService:
    """Service for storing and retrieving explanation sets."""

    def __init__(self, session: Session):
        """
        Initialize storage service.

        Args:
            session: SQLAlchemy database session
        """
        self.session = session
        self.sets = ExplanationSetRepository(session)

    @staticmethod
    def record_to_columns(record: ExplanationRecord) -> Dict:
        """Column values for persisting one record."""
        bbox = record.bbox
        return {
            'page_number': record.page_number,
            'problem_number': record.problem_number,
            'mode': record.mode.value,
            'markdown': record.markdown,
            'original_problem_text': record.original_problem_text,
            'problem_image_base64': record.image or None,
            'difficulty': record.difficulty,
            'core_concepts': list(record.core_concepts),
            'is_satisfied': record.is_satisfied,
            'bbox_x_min': bbox.x_min if bbox else None,
            'bbox_y_min': bbox.y_min if bbox else None,
            'bbox_x_max': bbox.x_max if bbox else None,
            'bbox_y_max': bbox.y_max if bbox else None,
        }

    def save_set(
        self,
        user_id: str,
        title: str,
        records: List[ExplanationRecord]
    ) -> ExplanationSet:
        """
        Save the successful records of a batch as a new set.

        Loading and errored records are skipped. Saved records get their
        `persisted_id` filled in.

        Args:
            user_id: Owner
            title: Set title
            records: Records from a batch

        Returns:
            Created ExplanationSet

        Raises:
            ValueError: If no record is complete
        """
        completed = [record for record in records if record.is_success]
        if not completed:
            raise ValueError("There are no completed explanations to save.")

        UserRepository(self.session).get_or_create(user_id)
        explanation_set = self.sets.create(
            user_id=user_id,
            title=title,
            explanations=[self.record_to_columns(record) for record in completed]
        )

        saved = sorted(explanation_set.explanations, key=lambda e: e.problem_number)
        for record, row in zip(sorted(completed, key=lambda r: r.problem_number), saved):
            record.persisted_id = row.id

        logger.info(f"Saved set {explanation_set.id} with {len(completed)} explanations")
        return explanation_set

    def list_sets(self, user_id: str, limit: int = 50, offset: int = 0) -> List[ExplanationSet]:
        """List a user's sets, newest first."""
        return self.sets.list_for_user(user_id, limit=limit, offset=offset)

    def get_set(self, user_id: str, set_id: str) -> Optional[Dict]:
        """
        Load a set with its explanations.

        Returns:
            Set dictionary with an 'explanations' list, or None if the set does
            not exist or belongs to someone else
        """
        explanation_set = self.sets.get_by_id(set_id)
        if explanation_set is None or explanation_set.user_id != user_id:
            return None

        data = explanation_set.to_dict()
        data['explanations'] = [e.to_dict() for e in explanation_set.explanations]
        return data

    def delete_explanation(self, user_id: str, explanation_id: str) -> bool:
        """
        Delete one explanation owned by the user.

        Returns:
            True if it was deleted
        """
        explanation = self.sets.get_explanation(explanation_id)
        if explanation is None or explanation.explanation_set.user_id != user_id:
            return False
        return self.sets.delete_explanation(explanation_id)

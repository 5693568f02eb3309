"""
Repository pattern for data access.

Provides clean separation between data access and business logic.
"""
from typing import Callable, Dict, List, Optional, TypeVar

from sqlalchemy import update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from data.db_models import (
    User, DailyUsage, MonthlyExportUsage, Prompt, ExplanationSet, Explanation
)

T = TypeVar('T')


def insert_or_fetch(session: Session, row: T, lookup: Callable[[], Optional[T]]) -> T:
    """
    Insert a row keyed by a unique constraint, or return the row another
    session inserted first.
    """
    session.add(row)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        existing = lookup()
        if existing is None:
            raise
        return existing
    session.refresh(row)
    return row


class UserRepository:
    """Repository for User operations."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, user_id: str) -> Optional[User]:
        """Get user by ID."""
        return self.session.query(User).filter(User.id == user_id).first()

    def get_or_create(self, user_id: str, tier: str = 'basic') -> User:
        """Get a user, creating it with the given tier on first sight."""
        user = self.get_by_id(user_id)
        if user is None:
            user = insert_or_fetch(
                self.session,
                User(id=user_id, tier=tier, is_admin=False),
                lambda: self.get_by_id(user_id)
            )
        return user

    def set_tier(self, user_id: str, tier: str) -> Optional[User]:
        """Change a user's tier."""
        user = self.get_by_id(user_id)
        if user:
            user.tier = tier
            self.session.commit()
        return user


class UsageRepository:
    """
    Repository for usage counters.

    Increments and decrements are single UPDATE statements so that concurrent
    sessions never lose an update.
    """

    def __init__(self, session: Session):
        self.session = session

    def _daily_row(self, user_id: str, day: str) -> Optional[DailyUsage]:
        return self.session.query(DailyUsage).filter(
            DailyUsage.user_id == user_id,
            DailyUsage.day == day
        ).first()

    def _monthly_row(self, user_id: str, month: str) -> Optional[MonthlyExportUsage]:
        return self.session.query(MonthlyExportUsage).filter(
            MonthlyExportUsage.user_id == user_id,
            MonthlyExportUsage.month == month
        ).first()

    def ensure_daily(self, user_id: str, day: str) -> DailyUsage:
        """Get the day's counter row, creating a zeroed row if needed."""
        row = self._daily_row(user_id, day)
        if row is None:
            row = insert_or_fetch(
                self.session,
                DailyUsage(user_id=user_id, day=day, fast=0, standard=0, quality=0),
                lambda: self._daily_row(user_id, day)
            )
        return row

    def ensure_monthly(self, user_id: str, month: str) -> MonthlyExportUsage:
        """Get the month's export counter row, creating a zeroed row if needed."""
        row = self._monthly_row(user_id, month)
        if row is None:
            row = insert_or_fetch(
                self.session,
                MonthlyExportUsage(user_id=user_id, month=month, hwp=0, pdf=0),
                lambda: self._monthly_row(user_id, month)
            )
        return row

    def _increment(self, model, key_filters, column: str, count: int, limit: Optional[int]) -> bool:
        col = getattr(model, column)
        stmt = update(model).where(*key_filters)
        if limit is not None:
            stmt = stmt.where(col + count <= limit)
        result = self.session.execute(
            stmt.values({column: col + count}).execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount == 1

    def _decrement(self, model, key_filters, column: str, count: int) -> None:
        col = getattr(model, column)
        # Floor at zero; a refund never drives a counter negative
        new_value = func.max(col - count, 0) if self._is_sqlite() else func.greatest(col - count, 0)
        self.session.execute(
            update(model).where(*key_filters).values({column: new_value})
            .execution_options(synchronize_session=False)
        )
        self.session.commit()

    def _is_sqlite(self) -> bool:
        return self.session.get_bind().dialect.name == 'sqlite'

    def increment_daily(self, user_id: str, day: str, mode: str, count: int,
                        limit: Optional[int]) -> bool:
        """
        Atomically add `count` to the mode counter if the result stays within `limit`.

        Returns:
            True if the counter was incremented
        """
        self.ensure_daily(user_id, day)
        return self._increment(
            DailyUsage,
            (DailyUsage.user_id == user_id, DailyUsage.day == day),
            mode, count, limit
        )

    def decrement_daily(self, user_id: str, day: str, mode: str, count: int) -> None:
        """Atomically subtract `count` from the mode counter, flooring at zero."""
        self.ensure_daily(user_id, day)
        self._decrement(
            DailyUsage,
            (DailyUsage.user_id == user_id, DailyUsage.day == day),
            mode, count
        )

    def increment_monthly(self, user_id: str, month: str, kind: str, count: int,
                          limit: Optional[int]) -> bool:
        """Atomically add `count` to an export counter if it stays within `limit`."""
        self.ensure_monthly(user_id, month)
        return self._increment(
            MonthlyExportUsage,
            (MonthlyExportUsage.user_id == user_id, MonthlyExportUsage.month == month),
            kind, count, limit
        )

    def get_daily(self, user_id: str, day: str) -> Dict[str, int]:
        """Current counters for a day (zeros when no row exists)."""
        self.session.expire_all()
        row = self.session.query(DailyUsage).filter(
            DailyUsage.user_id == user_id,
            DailyUsage.day == day
        ).first()
        if row is None:
            return {'fast': 0, 'standard': 0, 'quality': 0}
        return row.to_dict()

    def get_monthly(self, user_id: str, month: str) -> Dict[str, int]:
        """Current export counters for a month (zeros when no row exists)."""
        self.session.expire_all()
        row = self.session.query(MonthlyExportUsage).filter(
            MonthlyExportUsage.user_id == user_id,
            MonthlyExportUsage.month == month
        ).first()
        if row is None:
            return {'hwp': 0, 'pdf': 0}
        return row.to_dict()


class PromptRepository:
    """Repository for Prompt operations."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, name: str) -> Optional[Prompt]:
        """Get prompt by name."""
        return self.session.query(Prompt).filter(Prompt.name == name).first()

    def upsert(self, name: str, content: str) -> Prompt:
        """Create or replace a prompt template."""
        prompt = self.get(name)
        if prompt is None:
            prompt = Prompt(name=name, content=content)
            self.session.add(prompt)
        else:
            prompt.content = content
        self.session.commit()
        return prompt

    def list_names(self) -> List[str]:
        """List stored prompt names."""
        return [row.name for row in self.session.query(Prompt.name).order_by(Prompt.name).all()]


class ExplanationSetRepository:
    """Repository for ExplanationSet and Explanation operations."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, user_id: str, title: str, explanations: List[dict]) -> ExplanationSet:
        """
        Create a set together with its explanations.

        Args:
            user_id: Owner
            title: Set title
            explanations: Column dictionaries for `Explanation` rows
        """
        explanation_set = ExplanationSet(
            user_id=user_id,
            title=title,
            explanation_count=len(explanations)
        )
        self.session.add(explanation_set)
        self.session.flush()

        for data in explanations:
            self.session.add(Explanation(set_id=explanation_set.id, **data))

        self.session.commit()
        self.session.refresh(explanation_set)
        return explanation_set

    def get_by_id(self, set_id: str) -> Optional[ExplanationSet]:
        """Get set by ID."""
        return self.session.query(ExplanationSet).filter(
            ExplanationSet.id == set_id
        ).first()

    def list_for_user(self, user_id: str, limit: int = 50, offset: int = 0) -> List[ExplanationSet]:
        """List a user's sets, newest first."""
        return self.session.query(ExplanationSet)\
            .filter(ExplanationSet.user_id == user_id)\
            .order_by(ExplanationSet.created_at.desc())\
            .limit(limit)\
            .offset(offset)\
            .all()

    def get_explanation(self, explanation_id: str) -> Optional[Explanation]:
        """Get a single explanation by ID."""
        return self.session.query(Explanation).filter(
            Explanation.id == explanation_id
        ).first()

    def delete_explanation(self, explanation_id: str) -> bool:
        """Delete an explanation and decrement its set's count."""
        explanation = self.get_explanation(explanation_id)
        if explanation is None:
            return False

        set_id = explanation.set_id
        self.session.delete(explanation)
        self.session.execute(
            update(ExplanationSet)
            .where(ExplanationSet.id == set_id, ExplanationSet.explanation_count > 0)
            .values(explanation_count=ExplanationSet.explanation_count - 1)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return True

    def set_satisfied(self, explanation_id: str, is_satisfied: bool) -> bool:
        """Mark an explanation as satisfactory or not."""
        explanation = self.get_explanation(explanation_id)
        if explanation is None:
            return False
        explanation.is_satisfied = is_satisfied
        self.session.commit()
        return True

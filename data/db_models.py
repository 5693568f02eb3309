"""
Database models for users, usage counters, prompts and saved explanations.
"""
import uuid
from datetime import datetime

from sqlalchemy import (
    Column, String, Integer, Float, Text, DateTime, Boolean, ForeignKey, JSON,
    UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def generate_uuid():
    """Generate UUID string for primary keys."""
    return str(uuid.uuid4())


class User(Base):
    """Application user with a usage tier."""

    __tablename__ = 'users'

    id = Column(String, primary_key=True, default=generate_uuid)
    tier = Column(String, nullable=False, default='basic')
    is_admin = Column(Boolean, nullable=False, default=False)
    guidelines = Column(Text, default='')
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    daily_usage = relationship("DailyUsage", back_populates="user", cascade="all, delete-orphan")
    export_usage = relationship("MonthlyExportUsage", back_populates="user", cascade="all, delete-orphan")
    explanation_sets = relationship("ExplanationSet", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<User(id={self.id}, tier={self.tier})>"


class DailyUsage(Base):
    """Per-user, per-day explanation counters, one column per mode."""

    __tablename__ = 'daily_usage'
    __table_args__ = (UniqueConstraint('user_id', 'day', name='uq_daily_usage_user_day'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey('users.id'), nullable=False)
    day = Column(String, nullable=False)  # YYYY-MM-DD
    fast = Column(Integer, nullable=False, default=0)
    standard = Column(Integer, nullable=False, default=0)
    quality = Column(Integer, nullable=False, default=0)

    user = relationship("User", back_populates="daily_usage")

    def to_dict(self):
        return {'fast': self.fast, 'standard': self.standard, 'quality': self.quality}

    def __repr__(self):
        return f"<DailyUsage(user={self.user_id}, day={self.day}, {self.to_dict()})>"


class MonthlyExportUsage(Base):
    """Per-user, per-month export counters."""

    __tablename__ = 'monthly_export_usage'
    __table_args__ = (UniqueConstraint('user_id', 'month', name='uq_export_usage_user_month'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey('users.id'), nullable=False)
    month = Column(String, nullable=False)  # YYYY-MM
    hwp = Column(Integer, nullable=False, default=0)
    pdf = Column(Integer, nullable=False, default=0)

    user = relationship("User", back_populates="export_usage")

    def to_dict(self):
        return {'hwp': self.hwp, 'pdf': self.pdf}


class Prompt(Base):
    """Named prompt template."""

    __tablename__ = 'prompts'

    name = Column(String, primary_key=True)
    content = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Prompt(name={self.name})>"


class ExplanationSet(Base):
    """A saved group of explanations (one upload session)."""

    __tablename__ = 'explanation_sets'

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey('users.id'), nullable=False)
    title = Column(String, nullable=False)
    explanation_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="explanation_sets")
    explanations = relationship(
        "Explanation",
        back_populates="explanation_set",
        cascade="all, delete-orphan",
        order_by="Explanation.problem_number"
    )

    def __repr__(self):
        return f"<ExplanationSet(id={self.id}, title={self.title}, count={self.explanation_count})>"

    def to_dict(self):
        """Convert to dictionary for API responses."""
        return {
            'id': self.id,
            'user_id': self.user_id,
            'title': self.title,
            'explanation_count': self.explanation_count,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class Explanation(Base):
    """A persisted explanation card."""

    __tablename__ = 'explanations'

    id = Column(String, primary_key=True, default=generate_uuid)
    set_id = Column(String, ForeignKey('explanation_sets.id'), nullable=False)

    page_number = Column(Integer, nullable=False)
    problem_number = Column(Integer, nullable=False)
    mode = Column(String, nullable=False)
    markdown = Column(Text, nullable=False)
    original_problem_text = Column(Text)
    problem_image_base64 = Column(Text)
    difficulty = Column(Integer)
    core_concepts = Column(JSON)
    is_satisfied = Column(Boolean, default=False)

    # Normalized region on the page
    bbox_x_min = Column(Float)
    bbox_y_min = Column(Float)
    bbox_x_max = Column(Float)
    bbox_y_max = Column(Float)

    created_at = Column(DateTime, default=datetime.utcnow)

    explanation_set = relationship("ExplanationSet", back_populates="explanations")

    def __repr__(self):
        return f"<Explanation(id={self.id}, set={self.set_id}, problem={self.problem_number})>"

    def to_dict(self):
        """Convert to dictionary for API responses."""
        bbox = None
        if self.bbox_x_min is not None:
            bbox = {
                'x_min': self.bbox_x_min,
                'y_min': self.bbox_y_min,
                'x_max': self.bbox_x_max,
                'y_max': self.bbox_y_max
            }
        return {
            'id': self.id,
            'set_id': self.set_id,
            'page_number': self.page_number,
            'problem_number': self.problem_number,
            'mode': self.mode,
            'markdown': self.markdown,
            'original_problem_text': self.original_problem_text,
            'image': self.problem_image_base64,
            'difficulty': self.difficulty,
            'core_concepts': self.core_concepts or [],
            'is_satisfied': bool(self.is_satisfied),
            'bbox': bbox
        }

"""Data access layer - Database models and connections."""

from .db_models import (
    Base,
    User,
    DailyUsage,
    MonthlyExportUsage,
    Prompt,
    ExplanationSet,
    Explanation
)
from .database import (
    DatabaseManager,
    get_db_manager,
    set_db_manager,
    session_scope,
    init_database,
    get_db
)

__all__ = [
    # Models
    'Base',
    'User',
    'DailyUsage',
    'MonthlyExportUsage',
    'Prompt',
    'ExplanationSet',
    'Explanation',

    # Database
    'DatabaseManager',
    'get_db_manager',
    'set_db_manager',
    'session_scope',
    'init_database',
    'get_db'
]

"""
Prompt template service.

Templates are stored in the `prompts` table and cached in memory after the
first read. Placeholders use `{{name}}` syntax.
"""
import logging
from typing import Callable, ContextManager, Dict, Optional

from sqlalchemy.orm import Session

from core.constants import DEFAULT_PROMPTS
from core.exceptions import PromptNotFoundError
from data.repositories import PromptRepository
from utils.text_utils import fill_template

logger = logging.getLogger(__name__)


class PromptService:
    """Loads, caches and renders prompt templates."""

    def __init__(self, session_factory: Callable[[], ContextManager[Session]]):
        """
        Args:
            session_factory: Callable returning a session context manager,
                e.g. `DatabaseManager.session`
        """
        self._session_factory = session_factory
        self._cache: Dict[str, str] = {}

    def get_prompt(self, name: str) -> str:
        """
        Get a template by name.

        Raises:
            PromptNotFoundError: If the template is missing or empty
        """
        if name in self._cache:
            return self._cache[name]

        with self._session_factory() as session:
            prompt = PromptRepository(session).get(name)
            content: Optional[str] = prompt.content if prompt else None

        if content is None:
            logger.error(f"Critical: prompt '{name}' does not exist")
            raise PromptNotFoundError(name)
        if not content.strip():
            logger.error(f"Critical: prompt '{name}' is empty")
            raise PromptNotFoundError(name, reason="is empty")

        self._cache[name] = content
        return content

    def render(self, name: str, **values: str) -> str:
        """Get a template and substitute its placeholders."""
        return fill_template(self.get_prompt(name), **values)

    def clear_cache(self) -> None:
        self._cache.clear()


def seed_default_prompts(
    session_factory: Callable[[], ContextManager[Session]],
    overwrite: bool = False
) -> int:
    """
    Store the default prompt templates.

    Args:
        session_factory: Callable returning a session context manager
        overwrite: Replace templates that already exist

    Returns:
        Number of templates written
    """
    written = 0
    with session_factory() as session:
        repo = PromptRepository(session)
        for name, content in DEFAULT_PROMPTS.items():
            if repo.get(name) is not None and not overwrite:
                continue
            repo.upsert(name, content)
            written += 1
    if written:
        logger.info(f"Seeded {written} prompt templates")
    return written

"""
API Dependencies - Dependency injection for FastAPI.

Provides reusable dependencies for database sessions, services, etc.
"""
from functools import lru_cache

from fastapi import Depends, Header, HTTPException

from config.settings import settings
from data.database import get_db_manager
from serving.session_manager import BatchSessionRegistry
from services.generation_service import ExplanationService
from services.llm import BaseLLMClient, LLMClientFactory
from services.prompt_service import PromptService
from services.quota_service import UserQuota


def get_user_id(x_user_id: str = Header(None)) -> str:
    """
    Dependency for the calling user.

    Raises:
        HTTPException: 401 if the X-User-Id header is missing
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


@lru_cache()
def get_registry() -> BatchSessionRegistry:
    """Process-wide upload and batch registry."""
    return BatchSessionRegistry()


@lru_cache()
def get_llm_client() -> BaseLLMClient:
    """
    Dependency for the LLM client.

    Returns:
        Client for the provider configured in settings
    """
    return LLMClientFactory.from_settings(settings)


@lru_cache()
def get_prompt_service() -> PromptService:
    """Dependency for the cached prompt service."""
    return PromptService(get_db_manager().session)


def get_explanation_service(
    client: BaseLLMClient = Depends(get_llm_client),
    prompts: PromptService = Depends(get_prompt_service)
) -> ExplanationService:
    """
    Dependency for recognition and generation.

    Returns:
        ExplanationService instance
    """
    return ExplanationService(client, prompts, settings)


def get_user_quota(user_id: str = Depends(get_user_id)) -> UserQuota:
    """Dependency for the calling user's quota ledger."""
    return UserQuota(get_db_manager().session, user_id)

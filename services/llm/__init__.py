"""
LLM Client abstraction layer.

This module provides a unified interface for different LLM providers
(OpenAI-compatible servers, Ollama) using the Strategy Pattern.
"""

from .llm_client_base import BaseLLMClient, classify_status_code
from .openai_client import OpenAIClient, classify_openai_error
from .ollama_client import OllamaClient
from .client_factory import LLMClientFactory

__all__ = [
    'BaseLLMClient',
    'classify_status_code',
    'OpenAIClient',
    'classify_openai_error',
    'OllamaClient',
    'LLMClientFactory',
]

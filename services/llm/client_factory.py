"""
Factory for creating LLM clients.

This provides a centralized way to instantiate the correct LLM client
based on the provider configuration.
"""

from .llm_client_base import BaseLLMClient
from .openai_client import OpenAIClient
from .ollama_client import OllamaClient


class LLMClientFactory:
    """
    Factory class for creating LLM clients.
    """

    @staticmethod
    def create_client(
        provider: str,
        model: str,
        **kwargs
    ) -> BaseLLMClient:
        """
        Create an LLM client based on the provider.

        Args:
            provider: Provider name ('openai' or 'ollama')
            model: Default model name/identifier
            **kwargs: Provider-specific configuration
                For OpenAI:
                    - api_key: Optional API key
                    - base_url: Optional OpenAI-compatible server URL
                For Ollama:
                    - ollama_base_url: Ollama server URL (default: http://localhost:11434)
                    - ollama_timeout: Request timeout in seconds (default: 300)

        Returns:
            Configured LLM client instance

        Raises:
            ValueError: If provider is not supported
        """
        provider = provider.lower().strip()

        if provider == 'openai':
            return OpenAIClient(
                model=model,
                api_key=kwargs.get('api_key'),
                base_url=kwargs.get('base_url')
            )
        elif provider == 'ollama':
            return OllamaClient(
                model=model,
                base_url=kwargs.get('ollama_base_url', 'http://localhost:11434'),
                timeout=kwargs.get('ollama_timeout', 300)
            )
        else:
            raise ValueError(
                f"Unsupported LLM provider: '{provider}'. "
                f"Supported providers: 'openai', 'ollama'"
            )

    @staticmethod
    def from_settings(settings) -> BaseLLMClient:
        """Create the client configured in application settings."""
        return LLMClientFactory.create_client(
            provider=settings.llm_provider,
            model=settings.model_standard,
            api_key=settings.llm_api_key,
            base_url=settings.llm_base_url,
            ollama_base_url=settings.ollama_base_url,
            ollama_timeout=settings.ollama_timeout
        )

    @staticmethod
    def get_supported_providers():
        """
        Get list of supported providers.

        Returns:
            List of provider names
        """
        return ['openai', 'ollama']

"""
Base abstract class for LLM clients.

This defines the interface that all LLM provider implementations must follow.
"""

from abc import ABC, abstractmethod
from typing import Optional, Tuple, Dict, Any, List

from core.constants import RATE_LIMIT_STATUS_CODES, UNAVAILABLE_STATUS_CODES
from core.models import ErrorKind
from utils.text_utils import extract_json


def classify_status_code(status_code: Optional[int]) -> ErrorKind:
    """Map an HTTP status code to an ErrorKind."""
    if status_code in RATE_LIMIT_STATUS_CODES:
        return ErrorKind.RATE_LIMITED
    if status_code in UNAVAILABLE_STATUS_CODES:
        return ErrorKind.UNAVAILABLE
    if status_code == 408:
        return ErrorKind.TIMEOUT
    return ErrorKind.OTHER


class BaseLLMClient(ABC):
    """
    Abstract base class for LLM clients.

    All LLM provider implementations (OpenAI-compatible, Ollama) must inherit
    from this class. Implementations raise `GenerationError` with a structured
    `ErrorKind` when a call fails.
    """

    def __init__(self, model: str, **kwargs):
        """
        Initialize the LLM client.

        Args:
            model: Default model name/identifier
            **kwargs: Additional provider-specific configuration
        """
        self.model = model
        self.config = kwargs

    @abstractmethod
    async def chat_completion_with_finish_reason(
        self,
        prompt: str,
        system: Optional[str] = None,
        images: Optional[List[str]] = None,
        chat_history: Optional[List[Dict[str, str]]] = None,
        model: Optional[str] = None,
        **kwargs
    ) -> Tuple[str, str]:
        """
        Perform a chat completion request and return the finish reason.

        Args:
            prompt: The user prompt/message
            system: Optional system instruction
            images: Optional base64 JPEG images attached to the prompt
            chat_history: Optional conversation history
            model: Model override for this call
            **kwargs: Additional parameters (temperature, max_tokens, etc.)

        Returns:
            Tuple of (response_text, finish_reason)
            finish_reason can be: 'finished', 'length', etc.

        Raises:
            GenerationError: If the API call fails
        """
        pass

    async def chat_completion(
        self,
        prompt: str,
        system: Optional[str] = None,
        images: Optional[List[str]] = None,
        chat_history: Optional[List[Dict[str, str]]] = None,
        model: Optional[str] = None,
        **kwargs
    ) -> str:
        """
        Perform a chat completion request.

        Returns:
            The model's response as a string
        """
        content, _ = await self.chat_completion_with_finish_reason(
            prompt,
            system=system,
            images=images,
            chat_history=chat_history,
            model=model,
            **kwargs
        )
        return content

    async def close(self) -> None:
        """Release transport resources."""

    def extract_json(self, content: str) -> Any:
        """
        Extract JSON from LLM response.

        Raises:
            json.JSONDecodeError: If no valid JSON found
        """
        return extract_json(content)

"""
OpenAI client implementation.

Wraps any OpenAI-compatible chat completions API and implements the
BaseLLMClient interface.
"""

import os
from typing import Optional, Tuple, Dict, List

import openai
from openai import AsyncOpenAI

from core.exceptions import GenerationError
from core.models import ErrorKind
from .llm_client_base import BaseLLMClient, classify_status_code


def classify_openai_error(error: openai.OpenAIError) -> GenerationError:
    """Translate an OpenAI SDK exception into a GenerationError."""
    if isinstance(error, openai.APITimeoutError):
        return GenerationError(ErrorKind.TIMEOUT, f"AI request timed out: {error}")
    if isinstance(error, openai.APIConnectionError):
        return GenerationError(ErrorKind.UNAVAILABLE, f"Could not reach AI server: {error}")
    if isinstance(error, openai.APIStatusError):
        # Exhausted account credit arrives as a 429 with a dedicated error code
        if getattr(error, 'code', None) == 'insufficient_quota':
            kind = ErrorKind.QUOTA_EXCEEDED
        else:
            kind = classify_status_code(error.status_code)
        return GenerationError(kind, f"AI server returned error {error.status_code}: {error.message}", error.status_code)
    return GenerationError(ErrorKind.OTHER, str(error))


class OpenAIClient(BaseLLMClient):
    """
    LLM client for the OpenAI API or an OpenAI-compatible server.
    """

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        **kwargs
    ):
        """
        Initialize OpenAI client.

        Args:
            model: Default model name (e.g., 'gpt-4o')
            api_key: API key (defaults to OPENAI_API_KEY env var)
            base_url: Optional OpenAI-compatible server URL
            client: Pre-built AsyncOpenAI instance
            **kwargs: Additional configuration
        """
        super().__init__(model, **kwargs)

        if client is not None:
            self.client = client
            return

        self.api_key = api_key or os.getenv('OPENAI_API_KEY')
        if not self.api_key:
            raise ValueError(
                "OpenAI API key not found. Please set LLM_API_KEY or OPENAI_API_KEY "
                "environment variable or pass api_key parameter."
            )

        self.client = AsyncOpenAI(api_key=self.api_key, base_url=base_url)

    @staticmethod
    def build_messages(
        prompt: str,
        system: Optional[str],
        images: Optional[List[str]],
        chat_history: Optional[List[Dict[str, str]]]
    ) -> List[Dict]:
        """Build the chat messages list."""
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        if chat_history:
            messages.extend(chat_history)

        if images:
            content = [{"type": "text", "text": prompt}]
            for img_b64 in images:
                content.append({
                    "type": "image_url",
                    "image_url": {"url": f"data:image/jpeg;base64,{img_b64}"}
                })
            messages.append({"role": "user", "content": content})
        else:
            messages.append({"role": "user", "content": prompt})
        return messages

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
        Call OpenAI API and return response with finish reason.

        Returns:
            Tuple of (response_text, finish_reason)
        """
        messages = self.build_messages(prompt, system, images, chat_history)

        try:
            response = await self.client.chat.completions.create(
                model=model or self.model,
                messages=messages,
                **kwargs
            )
        except openai.OpenAIError as e:
            raise classify_openai_error(e) from e

        if not response.choices:
            raise GenerationError(ErrorKind.OTHER, "AI returned no choices.")

        content = (response.choices[0].message.content or "").strip()
        finish_reason = response.choices[0].finish_reason

        # Map OpenAI finish reasons to our standard format
        if finish_reason == 'stop':
            finish_reason = 'finished'

        return content, finish_reason

    async def close(self) -> None:
        await self.client.close()

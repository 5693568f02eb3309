"""
Ollama client implementation.

This wraps the Ollama API and implements the BaseLLMClient interface.
"""

import json
from typing import Optional, Tuple, Dict, List

import httpx

from core.exceptions import GenerationError
from core.models import ErrorKind
from .llm_client_base import BaseLLMClient, classify_status_code


class OllamaClient(BaseLLMClient):
    """
    LLM client for Ollama (local LLM server).
    """

    def __init__(
        self,
        model: str,
        base_url: str = "http://localhost:11434",
        timeout: int = 300,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs
    ):
        """
        Initialize Ollama client.

        Args:
            model: Ollama model name (e.g., 'qwen2.5vl:7b')
            base_url: Ollama server URL (default: http://localhost:11434)
            timeout: Request timeout in seconds (default: 300)
            transport: Optional httpx transport (used by tests)
            **kwargs: Additional configuration
        """
        super().__init__(model, **kwargs)

        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport
        )

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
        Call Ollama chat API and return response with finish reason.

        Raises:
            GenerationError: On connection failure, HTTP error or bad JSON
        """
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        if chat_history:
            messages.extend(chat_history)

        user_message = {"role": "user", "content": prompt}
        if images:
            user_message["images"] = list(images)
        messages.append(user_message)

        payload = {
            "model": model or self.model,
            "messages": messages,
            "stream": False,
        }

        options = {}
        if 'temperature' in kwargs:
            options['temperature'] = kwargs['temperature']
        if 'max_tokens' in kwargs:
            options['num_predict'] = kwargs['max_tokens']
        if options:
            payload['options'] = options

        try:
            response = await self.client.post("/api/chat", json=payload)
            response.raise_for_status()
            result = response.json()
        except httpx.TimeoutException as e:
            raise GenerationError(ErrorKind.TIMEOUT, f"Ollama request timed out: {e}") from e
        except httpx.ConnectError as e:
            raise GenerationError(
                ErrorKind.UNAVAILABLE,
                f"Could not connect to Ollama server at {self.base_url}. "
                f"Please ensure Ollama is running and the model '{payload['model']}' is pulled. "
                f"Error: {e}"
            ) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise GenerationError(
                classify_status_code(status),
                f"Ollama server returned error: {status} - {e.response.text}",
                status
            ) from e
        except json.JSONDecodeError as e:
            raise GenerationError(ErrorKind.OTHER, f"Invalid JSON response from Ollama: {e}") from e

        content = result.get('message', {}).get('content', '').strip()
        done_reason = result.get('done_reason', 'stop')
        finish_reason = 'finished' if done_reason == 'stop' else done_reason

        return content, finish_reason

    async def close(self) -> None:
        await self.client.aclose()

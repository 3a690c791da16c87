"""
Cloud LLM clients for text enhancement.

Each client sends one prompt and returns the model's text, raising an
LLMError subclass on failure. Callers decide what to do with failures
(the enhancer falls back to local rules).

Usage:
    client = build_client("claude", api_key)
    text = client.complete(prompt, system_prompt=SYSTEM_PROMPT)
"""

from abc import ABC, abstractmethod
from typing import Optional

import requests

from .errors import LLMError, LLMTimeout, LLMRateLimited, LLMAPIError, LLMParseError


CLAUDE_URL = "https://api.anthropic.com/v1/messages"
CLAUDE_API_VERSION = "2023-06-01"
OPENAI_URL = "https://api.openai.com/v1/chat/completions"

DEFAULT_MODELS = {
    "claude": "claude-3-5-sonnet-20241022",
    "openai": "gpt-4o-mini",
    "groq": "openai/gpt-oss-120b",
}

MAX_TOKENS = 1024
TEMPERATURE = 0.3
DEFAULT_TIMEOUT = 30.0


class LLMClient(ABC):
    """
    Base class for enhancement providers.

    Subclasses must implement complete(); close() releases connections.
    """

    name: str = "base"

    def __init__(self, api_key: str, model: str = "", timeout: float = DEFAULT_TIMEOUT):
        self.api_key = api_key
        self.model = model or DEFAULT_MODELS.get(self.name, "")
        self.timeout = timeout

    @abstractmethod
    def complete(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        """
        Send a prompt and return the model's reply text.

        Raises:
            LLMTimeout, LLMRateLimited, LLMAPIError, LLMParseError, LLMError
        """
        pass

    def close(self) -> None:
        pass


class _HTTPClient(LLMClient):
    """Shared request/response handling for JSON-over-HTTP providers."""

    url: str = ""

    def __init__(self, api_key: str, model: str = "", timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None):
        super().__init__(api_key, model, timeout)
        # Persistent session for connection reuse
        self.session = session or requests.Session()

    def _headers(self) -> dict:
        raise NotImplementedError

    def _body(self, prompt: str, system_prompt: Optional[str]) -> dict:
        raise NotImplementedError

    def _parse(self, data: dict) -> str:
        raise NotImplementedError

    def complete(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        try:
            response = self.session.post(
                self.url,
                headers=self._headers(),
                json=self._body(prompt, system_prompt),
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise LLMTimeout(f"{self.name} timed out after {self.timeout:g}s") from e
        except requests.RequestException as e:
            raise LLMError(f"{self.name} network error: {e}") from e

        if response.status_code == 429:
            raise LLMRateLimited(f"{self.name} rate limit exceeded")
        if response.status_code != 200:
            raise LLMAPIError(response.status_code, f"{self.name} API error {response.status_code}: {response.text[:200]}")

        try:
            text = self._parse(response.json())
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise LLMParseError(f"{self.name} returned an unexpected response: {e}") from e

        if not isinstance(text, str):
            raise LLMParseError(f"{self.name} returned non-text content")
        return text.strip()

    def close(self) -> None:
        self.session.close()


class ClaudeClient(_HTTPClient):
    name = "claude"
    url = CLAUDE_URL

    def _headers(self) -> dict:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": CLAUDE_API_VERSION,
            "content-type": "application/json",
        }

    def _body(self, prompt: str, system_prompt: Optional[str]) -> dict:
        body = {
            "model": self.model,
            "max_tokens": MAX_TOKENS,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            body["system"] = system_prompt
        return body

    def _parse(self, data: dict) -> str:
        return data["content"][0]["text"]


class OpenAIClient(_HTTPClient):
    name = "openai"
    url = OPENAI_URL

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _body(self, prompt: str, system_prompt: Optional[str]) -> dict:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return {
            "model": self.model,
            "messages": messages,
            "temperature": TEMPERATURE,
            "max_tokens": MAX_TOKENS,
        }

    def _parse(self, data: dict) -> str:
        return data["choices"][0]["message"]["content"]


class GroqClient(LLMClient):
    """Groq chat completions through the groq SDK."""

    name = "groq"

    def __init__(self, api_key: str, model: str = "", timeout: float = DEFAULT_TIMEOUT, client=None):
        super().__init__(api_key, model, timeout)
        if client is None:
            from groq import Groq
            client = Groq(api_key=api_key, timeout=timeout, max_retries=0)
        self.client = client

    def complete(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        import groq

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=TEMPERATURE,
                max_completion_tokens=MAX_TOKENS,
            )
        except groq.APITimeoutError as e:
            raise LLMTimeout(f"groq timed out after {self.timeout:g}s") from e
        except groq.RateLimitError as e:
            raise LLMRateLimited("groq rate limit exceeded") from e
        except groq.APIStatusError as e:
            raise LLMAPIError(e.status_code, f"groq API error {e.status_code}") from e
        except groq.APIError as e:
            raise LLMError(f"groq error: {e}") from e

        try:
            return (completion.choices[0].message.content or "").strip()
        except (AttributeError, IndexError) as e:
            raise LLMParseError(f"groq returned an unexpected response: {e}") from e

    def close(self) -> None:
        self.client = None


CLIENTS = {
    "claude": ClaudeClient,
    "openai": OpenAIClient,
    "groq": GroqClient,
}


def build_client(provider: str, api_key: str, model: str = "", timeout: float = DEFAULT_TIMEOUT) -> LLMClient:
    """
    Raises:
        LLMError: unknown provider
    """
    try:
        cls = CLIENTS[provider]
    except KeyError:
        raise LLMError(f"Unknown LLM provider: {provider}") from None
    return cls(api_key, model=model, timeout=timeout)

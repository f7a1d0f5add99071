"""
LLM and embedding provider clients
Thin async wrappers over the OpenAI, Groq and Gemini SDKs. Every SDK error is
mapped onto the ProviderError hierarchy so callers can tell rate limits and
transient failures apart from permanent ones.
"""
from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import google.generativeai as genai
import groq
import openai
from google.api_core import exceptions as google_exceptions

from tradingjournal.config.analysis_config import DEFAULT_MODELS, EMBEDDING_CONFIG
from tradingjournal.database.models import ChatExchange
from tradingjournal.exceptions import (
    APIKeyValidationError,
    ProviderError,
    ProviderRateLimitError,
    ProviderTransientError,
)

logger = logging.getLogger(__name__)

_RETRY_HINT = re.compile(r"try again in\s+(\d+(?:\.\d+)?)\s*(ms|s)\b", re.IGNORECASE)


class ProviderKind(str, Enum):
    OPENAI = "openai"
    GROQ = "groq"

    @property
    def key_prefix(self) -> str:
        return "sk-" if self is ProviderKind.OPENAI else "gsk_"

    @property
    def env_key(self) -> str:
        return "OPENAI_API_KEY" if self is ProviderKind.OPENAI else "GROQ_API_KEY"

    @property
    def default_model(self) -> str:
        return DEFAULT_MODELS[self.value]


def parse_retry_after(error: Exception) -> Optional[float]:
    """Seconds to wait, from a retry-after header or a 'try again in Ns' message."""
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers is not None:
        value = headers.get("retry-after")
        if value is not None:
            try:
                return max(0.0, float(value))
            except (TypeError, ValueError):
                pass
    match = _RETRY_HINT.search(str(error))
    if match:
        amount = float(match.group(1))
        return amount / 1000 if match.group(2).lower() == "ms" else amount
    return None


def map_provider_error(error: Exception) -> ProviderError:
    """Translate an OpenAI/Groq/Gemini SDK exception into the ProviderError hierarchy."""
    if isinstance(error, ProviderError):
        return error
    message = str(error)
    if isinstance(error, (openai.RateLimitError, groq.RateLimitError)):
        return ProviderRateLimitError(message, retry_after=parse_retry_after(error))
    if isinstance(error, (openai.APIConnectionError, groq.APIConnectionError)):
        # Includes APITimeoutError
        return ProviderTransientError(message)
    if isinstance(error, (openai.APIStatusError, groq.APIStatusError)):
        status = getattr(error, "status_code", None)
        if status is not None and status >= 500:
            return ProviderTransientError(message, status_code=status)
        return ProviderError(message, status_code=status)
    if isinstance(error, google_exceptions.ResourceExhausted):
        return ProviderRateLimitError(message, retry_after=parse_retry_after(error))
    if isinstance(error, (google_exceptions.ServiceUnavailable, google_exceptions.InternalServerError,
                          google_exceptions.DeadlineExceeded)):
        return ProviderTransientError(message)
    if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        return ProviderTransientError(message)
    return ProviderError(message)


class BaseLLMClient(ABC):
    """Chat-completion provider bound to one API key"""

    kind: ProviderKind

    def __init__(self, api_key: Optional[str], model: Optional[str] = None):
        self.api_key = api_key
        self.model = model or self.kind.default_model
        self._client = None

    @abstractmethod
    def _create_client(self, api_key: str):
        """Build the SDK client for a key."""

    def initialize(self) -> bool:
        if not self.api_key:
            logger.warning("%s client has no API key", self.kind.value)
            return False
        try:
            self._client = self._create_client(self.api_key)
        except Exception as e:
            logger.error("Failed to create %s client: %s", self.kind.value, e, exc_info=True)
            self._client = None
            return False
        return True

    @property
    def is_ready(self) -> bool:
        return self._client is not None

    async def validate_api_key(self, api_key: str) -> bool:
        """Check a key against the provider; raises APIKeyValidationError with a user-facing reason."""
        if not api_key or not api_key.startswith(self.kind.key_prefix):
            raise APIKeyValidationError("Invalid API key")
        try:
            client = self._create_client(api_key)
            await client.models.list()
            return True
        except (openai.AuthenticationError, groq.AuthenticationError) as e:
            raise APIKeyValidationError("Invalid API key") from e
        except (openai.RateLimitError, groq.RateLimitError) as e:
            if getattr(e, "code", None) == "insufficient_quota" or "quota" in str(e).lower():
                raise APIKeyValidationError("API key has insufficient quota") from e
            raise APIKeyValidationError("Rate limit exceeded. Please try again in a few minutes.") from e
        except Exception as e:
            logger.warning("API key validation for %s failed: %s", self.kind.value, e)
            raise APIKeyValidationError("Failed to validate API key. Please try again.") from e

    def _build_messages(
        self,
        system_prompt: str,
        user_message: str,
        history: Optional[Sequence[ChatExchange]] = None,
    ) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": system_prompt}]
        for turn in history or []:
            messages.append({"role": "user", "content": turn.message})
            messages.append({"role": "assistant", "content": turn.response})
        messages.append({"role": "user", "content": user_message})
        return messages

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        history: Optional[Sequence[ChatExchange]] = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
        json_mode: bool = False,
    ) -> str:
        """One chat completion; raises a ProviderError subclass on failure."""
        if self._client is None:
            raise ProviderError(f"{self.kind.value} client is not initialized")
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": self._build_messages(system_prompt, user_message, history),
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except Exception as e:
            raise map_provider_error(e) from e
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""


class OpenAIClient(BaseLLMClient):
    kind = ProviderKind.OPENAI

    def _create_client(self, api_key: str):
        return openai.AsyncOpenAI(api_key=api_key)


class GroqClient(BaseLLMClient):
    kind = ProviderKind.GROQ

    def _create_client(self, api_key: str):
        return groq.AsyncGroq(api_key=api_key)


def create_llm_client(provider: str, api_key: Optional[str], model: Optional[str] = None) -> BaseLLMClient:
    kind = ProviderKind(provider)
    if kind is ProviderKind.GROQ:
        return GroqClient(api_key, model)
    return OpenAIClient(api_key, model)


# --------------------------------------------------------------------- #
# Embedders
# --------------------------------------------------------------------- #
class BaseEmbedder(ABC):
    """Turns text into a fixed-length vector"""

    dimensions: int = EMBEDDING_CONFIG["dimensions"]

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """Embed one text; raises a ProviderError subclass on failure."""


class OpenAIEmbedder(BaseEmbedder):
    def __init__(self, api_key: str, model: Optional[str] = None, dimensions: Optional[int] = None):
        self.model = model or EMBEDDING_CONFIG["openai_model"]
        self.dimensions = dimensions or EMBEDDING_CONFIG["dimensions"]
        self._client = openai.AsyncOpenAI(api_key=api_key)

    async def embed(self, text: str) -> List[float]:
        try:
            response = await self._client.embeddings.create(
                model=self.model,
                input=text,
                dimensions=self.dimensions,
                encoding_format="float",
            )
        except Exception as e:
            raise map_provider_error(e) from e
        return list(response.data[0].embedding)


class GeminiEmbedder(BaseEmbedder):
    """Gemini embeddings; the SDK is synchronous so calls run in a worker thread"""

    def __init__(self, api_key: str, model: Optional[str] = None):
        self.model = model or EMBEDDING_CONFIG["gemini_model"]
        genai.configure(api_key=api_key)

    async def embed(self, text: str) -> List[float]:
        try:
            result = await asyncio.to_thread(genai.embed_content, model=self.model, content=text)
        except Exception as e:
            raise map_provider_error(e) from e
        return list(result["embedding"])

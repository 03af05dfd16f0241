# src/services/llm_service.py
"""
LLM Service - transport to the language-model provider.

Talks to any OpenAI-compatible chat-completions endpoint (Gemini by default)
through the async OpenAI client and reduces every outcome to either the
reply text or a TransportError:

- non-success HTTP status -> TransportError(status, body)
- network failure / timeout -> TransportError(status=None)
- envelope without text -> EmptyResponseError
"""
import time
from dataclasses import dataclass
from typing import Optional, Dict, Any, List
import logging

import openai
from openai import AsyncOpenAI
from openai.types.chat import ChatCompletion

from src.core.config import settings, DEFAULT_BASE_URL
from src.core.exceptions import ConfigurationError, EmptyResponseError, TransportError
from src.core.prompt_composer import ProviderRequest
from src.core.service_base import BaseService, ServiceConfig

logger = logging.getLogger(__name__)

# Provider error bodies are cut to this length before they travel further
_MAX_BODY_LENGTH = 500


@dataclass
class LLMConfig(ServiceConfig):
    """Configuration for the LLM Service"""
    api_key: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    model: str = "gemini-2.5-flash"
    timeout: float = 60.0
    max_retries: int = 1

    @classmethod
    def from_settings(cls) -> "LLMConfig":
        return cls(
            api_key=settings.GEMINI_API_KEY,
            base_url=settings.base_url,
            model=settings.LLM_MODEL,
            timeout=settings.LLM_TIMEOUT,
            max_retries=settings.LLM_MAX_RETRIES
        )


class LLMService(BaseService[LLMConfig]):
    """Async provider client for chat completions"""

    def __init__(self, config: Optional[LLMConfig] = None):
        super().__init__(config or LLMConfig.from_settings(), logger)

    def _validate_config(self) -> None:
        super()._validate_config()

        if not self.config.api_key:
            raise ConfigurationError(
                component="GEMINI_API_KEY",
                message="Provider API key is not configured. Set GEMINI_API_KEY in the environment."
            )

    async def _initialize_client(self) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=self.config.api_key,
            base_url=self.config.base_url,
            timeout=self.config.timeout,
            max_retries=self.config.max_retries
        )

    async def _cleanup(self) -> None:
        await self._client.close()

    async def call_provider(self, request: ProviderRequest) -> str:
        """
        Send a request and return the raw reply text.

        Args:
            request: Messages and generation parameters

        Returns:
            The text of the first candidate, untouched

        Raises:
            ConfigurationError: If no API key is configured
            TransportError: On a non-success status or network failure
            EmptyResponseError: If the response carries no text
        """
        await self.ensure_initialized()

        params: Dict[str, Any] = {
            "model": self.config.model,
            "messages": request.messages,
            "temperature": request.temperature,
        }
        if request.max_tokens:
            params["max_tokens"] = request.max_tokens
        if request.json_mode:
            params["response_format"] = {"type": "json_object"}

        self.logger.info(f"Calling {self.config.model} for {request.kind.value} ({len(request.messages)} messages)")

        try:
            response: ChatCompletion = await self.client.chat.completions.create(**params)
        except openai.APIStatusError as e:
            body = _response_text(e)
            self.logger.error(f"Provider returned {e.status_code}: {body[:200]}")
            raise TransportError(
                message=f"Provider request failed with status {e.status_code}",
                status=e.status_code,
                body=body,
                operation="call_provider"
            ) from e
        except openai.APIConnectionError as e:
            self.logger.error(f"Provider unreachable: {e}")
            raise TransportError(
                message=f"Provider unreachable: {e}",
                operation="call_provider"
            ) from e

        return self._extract_text(response)

    def _extract_text(self, response: ChatCompletion) -> str:
        if not response.choices:
            self.logger.error("Provider response contained no choices")
            raise EmptyResponseError(message="No choices in provider response")

        choice = response.choices[0]
        content = choice.message.content if choice.message else None

        if choice.finish_reason == "length":
            self.logger.warning("Provider reply was cut off by the output-length cap")

        if not content:
            self.logger.error(f"Provider response had no text (finish_reason={choice.finish_reason})")
            raise EmptyResponseError(finish_reason=choice.finish_reason)

        if response.usage:
            self.logger.debug(
                f"Token usage: prompt={response.usage.prompt_tokens}, "
                f"completion={response.usage.completion_tokens}"
            )
        return content

    async def list_models(self) -> List[str]:
        """
        Ids of the models the key can access.

        Raises:
            ConfigurationError: If no API key is configured
            TransportError: On a non-success status or network failure
        """
        await self.ensure_initialized()

        try:
            page = await self.client.models.list()
        except openai.APIStatusError as e:
            raise TransportError(
                message=f"Listing models failed with status {e.status_code}",
                status=e.status_code,
                body=_response_text(e),
                operation="list_models"
            ) from e
        except openai.APIConnectionError as e:
            raise TransportError(message=f"Provider unreachable: {e}", operation="list_models") from e

        return [model.id for model in page.data]

    async def health_check(self) -> Dict[str, Any]:
        """Provider reachability via the model listing"""
        try:
            start_time = time.time()
            models = await self.list_models()
            response_time_ms = int((time.time() - start_time) * 1000)

            return {
                "healthy": True,
                "status": "connected",
                "details": {
                    "model": self.config.model,
                    "models_count": len(models),
                    "response_time_ms": response_time_ms,
                }
            }

        except (ConfigurationError, TransportError) as e:
            return {
                "healthy": False,
                "status": "error",
                "details": {
                    "error": e.message,
                    "status": getattr(e, "status", None),
                    "model": self.config.model
                }
            }

    def get_metrics(self) -> Dict[str, Any]:
        metrics = super().get_metrics()
        metrics.update({
            "model": self.config.model,
            "base_url": self.config.base_url,
            "timeout": self.config.timeout
        })
        return metrics


def _response_text(error: openai.APIStatusError) -> str:
    try:
        return error.response.text[:_MAX_BODY_LENGTH]
    except Exception:
        return str(error.body or error.message)[:_MAX_BODY_LENGTH]


async def create_llm_service(api_key: Optional[str] = None, **kwargs) -> LLMService:
    """
    Create and initialize an LLM service instance.

    Args:
        api_key: Provider API key (uses settings if not provided)
        **kwargs: Additional LLMConfig fields
    """
    config = LLMConfig.from_settings()
    if api_key:
        config.api_key = api_key
    for key, value in kwargs.items():
        setattr(config, key, value)

    service = LLMService(config)
    await service.initialize()
    return service

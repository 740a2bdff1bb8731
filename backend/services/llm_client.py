"""Inference providers: one implementation per LLM backend."""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx
from groq import Groq
from groq import RateLimitError, AuthenticationError, APIError, APITimeoutError, APIConnectionError

from config import ANTHROPIC_API_KEY, GROQ_API_KEY, OPENAI_API_KEY, ProviderSettings
from models.turn import TimingTrace

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


@dataclass
class LLMResponse:
    """Response from LLM generation."""
    text: str
    tokens_input: int
    tokens_output: int
    latency_ms: int
    model_used: str
    trace: Optional[TimingTrace] = None


@dataclass
class LLMError:
    """Structured error response from LLM operations."""
    code: str
    message: str
    details: Dict[str, Any]


class LLMClientError(Exception):
    """Custom exception for LLM client errors with structured error information."""

    def __init__(self, error: LLMError, trace: Optional[TimingTrace] = None):
        self.error = error
        self.trace = trace
        super().__init__(error.message)


class InferenceProvider(ABC):
    """Capability interface every inference backend implements."""

    name = "base"

    def __init__(self, model: str, timeout: float = 300.0):
        self.model = model
        self.timeout = timeout

    @abstractmethod
    def generate(self, prompt: str) -> LLMResponse:
        """
        Generate a completion for a fully assembled prompt.

        The call is bounded by ``self.timeout`` seconds.

        Raises:
            LLMClientError: Structured error with code, message, and details
        """

    @property
    def url(self) -> str:
        return ""

    def _trace(self, request_time: datetime, start_time: float, error: bool = False) -> TimingTrace:
        return TimingTrace(
            request_timestamp=request_time.isoformat(),
            response_timestamp=datetime.now(timezone.utc).isoformat(),
            duration_ms=int((time.time() - start_time) * 1000),
            method="POST",
            model=self.model,
            url=self.url,
            error=error,
        )

    def _failure(
        self,
        code: str,
        message: str,
        request_time: datetime,
        start_time: float,
        exc: Optional[Exception] = None,
        **details: Any
    ) -> LLMClientError:
        trace = self._trace(request_time, start_time, error=True)
        error = LLMError(
            code=code,
            message=message,
            details={
                "provider": self.name,
                "model": self.model,
                "latency_ms": trace.duration_ms,
                "original_error": str(exc) if exc else None,
                **details,
            }
        )
        logger.error(
            f"{self.name} error: code={code}, model={self.model}, latency={trace.duration_ms}ms, error={exc}",
            exc_info=exc is not None,
            extra={"error_code": code, "duration_ms": trace.duration_ms},
        )
        return LLMClientError(error, trace=trace)


class GroqProvider(InferenceProvider):
    """Client for interfacing with Groq API for text generation."""

    name = "groq"

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        timeout: float = 300.0,
        max_tokens: int = 1024,
        temperature: float = 0.7,
        json_mode: bool = True
    ):
        """
        Initialize the Groq provider.

        Args:
            model: Groq model name
            api_key: Groq API key
            timeout: Per-request deadline in seconds
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature
            json_mode: Ask the API for a JSON object response

        Raises:
            ValueError: If no API key is available
        """
        super().__init__(model, timeout)
        if not api_key:
            raise ValueError("GROQ_API_KEY must be provided or set in environment")

        self.max_tokens = max_tokens
        self.temperature = temperature
        self.json_mode = json_mode
        # One attempt per submission; the deadline covers the whole call
        self.client = Groq(api_key=api_key, timeout=timeout, max_retries=0)
        logger.info(f"GroqProvider initialized with model: {model}")

    @property
    def url(self) -> str:
        return "https://api.groq.com/openai/v1/chat/completions"

    def generate(self, prompt: str) -> LLMResponse:
        request_time = datetime.now(timezone.utc)
        start_time = time.time()

        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if self.json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            logger.debug(f"Generating response with model: {self.model}")
            response = self.client.chat.completions.create(**kwargs)
        except RateLimitError as e:
            raise self._failure(
                "RATE_LIMIT_ERROR", "Rate limit exceeded. Please try again in a few moments.",
                request_time, start_time, e, retry_after=60
            )
        except AuthenticationError as e:
            raise self._failure(
                "AUTHENTICATION_ERROR", "Authentication failed. Please check your API key.",
                request_time, start_time, e
            )
        except APITimeoutError as e:
            raise self._failure(
                "TIMEOUT_ERROR", "Request timed out. Please try again.",
                request_time, start_time, e
            )
        except APIConnectionError as e:
            raise self._failure(
                "CONNECTION_ERROR", "Could not reach the Groq API.",
                request_time, start_time, e
            )
        except APIError as e:
            raise self._failure(
                "API_ERROR", f"Groq API error: {str(e)}",
                request_time, start_time, e
            )
        except Exception as e:
            raise self._failure(
                "UNKNOWN_ERROR", f"Unexpected error during generation: {str(e)}",
                request_time, start_time, e, error_type=type(e).__name__
            )

        text = response.choices[0].message.content
        if not text:
            raise self._failure("EMPTY_RESPONSE", "Groq returned an empty response", request_time, start_time)

        trace = self._trace(request_time, start_time)
        logger.info(
            f"Generated response: model={self.model}, "
            f"input_tokens={response.usage.prompt_tokens}, output_tokens={response.usage.completion_tokens}, "
            f"latency={trace.duration_ms}ms",
            extra={"duration_ms": trace.duration_ms},
        )

        return LLMResponse(
            text=text,
            tokens_input=response.usage.prompt_tokens,
            tokens_output=response.usage.completion_tokens,
            latency_ms=trace.duration_ms,
            model_used=self.model,
            trace=trace,
        )


class _HTTPProvider(InferenceProvider):
    """Shared transport for providers spoken to over plain HTTP."""

    def __init__(self, model: str, base_url: str, endpoint: str, timeout: float = 300.0,
                 http_client: Optional[httpx.Client] = None):
        super().__init__(model, timeout)
        self.base_url = base_url.rstrip("/")
        self.endpoint = endpoint
        self.http_client = http_client or httpx.Client(timeout=timeout)

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.endpoint}"

    def _post(self, payload: Dict[str, Any], headers: Optional[Dict[str, str]],
              request_time: datetime, start_time: float) -> Dict[str, Any]:
        logger.info(f"[LLM CALL {self.model}] POST {self.url} | Timestamp: {request_time.isoformat()}")

        try:
            response = self.http_client.post(self.url, json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise self._failure("TIMEOUT_ERROR", "Request timed out. Please try again.",
                                request_time, start_time, e)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 429:
                code, message = "RATE_LIMIT_ERROR", "Rate limit exceeded. Please try again in a few moments."
            elif status in (401, 403):
                code, message = "AUTHENTICATION_ERROR", "Authentication failed. Please check your API key."
            else:
                code, message = "API_ERROR", f"{self.name} returned HTTP {status}"
            raise self._failure(code, message, request_time, start_time, e, status_code=status)
        except httpx.HTTPError as e:
            raise self._failure("CONNECTION_ERROR", f"Failed to communicate with {self.name}",
                                request_time, start_time, e)
        except ValueError as e:
            raise self._failure("API_ERROR", f"{self.name} returned a non-JSON body",
                                request_time, start_time, e)

        if not isinstance(data, dict):
            raise self._failure("API_ERROR", f"{self.name} returned a JSON {type(data).__name__} instead of an object",
                                request_time, start_time)
        return data


class OllamaProvider(_HTTPProvider):
    """Local Ollama server via /api/generate."""

    name = "ollama"

    def __init__(self, model: str, host: str = "http://localhost:11434", endpoint: str = "/api/generate",
                 timeout: float = 300.0, response_format: Optional[str] = "json",
                 http_client: Optional[httpx.Client] = None):
        super().__init__(model, host, endpoint, timeout, http_client)
        self.response_format = response_format
        logger.info(f"OllamaProvider initialized: {self.url}, model={model}")

    def generate(self, prompt: str) -> LLMResponse:
        request_time = datetime.now(timezone.utc)
        start_time = time.time()

        payload: Dict[str, Any] = {"model": self.model, "prompt": prompt, "stream": False}
        if self.response_format:
            payload["format"] = self.response_format

        data = self._post(payload, None, request_time, start_time)
        text = data.get("response")
        if not text:
            raise self._failure("EMPTY_RESPONSE", "Ollama returned an empty response", request_time, start_time)

        trace = self._trace(request_time, start_time)
        logger.info(f"LLM response received in {trace.duration_ms}ms", extra={"duration_ms": trace.duration_ms})

        return LLMResponse(
            text=text,
            tokens_input=data.get("prompt_eval_count", 0),
            tokens_output=data.get("eval_count", 0),
            latency_ms=trace.duration_ms,
            model_used=data.get("model", self.model),
            trace=trace,
        )


class OpenAIProvider(_HTTPProvider):
    """OpenAI chat completions API, or any server speaking the same protocol."""

    name = "openai"

    def __init__(self, model: str, api_key: Optional[str] = None,
                 base_url: str = "https://api.openai.com", endpoint: str = "/v1/chat/completions",
                 organization: Optional[str] = None, timeout: float = 300.0,
                 max_tokens: int = 4096, temperature: float = 0.7,
                 response_format: Optional[str] = "json",
                 http_client: Optional[httpx.Client] = None):
        super().__init__(model, base_url, endpoint, timeout, http_client)
        if not api_key:
            raise ValueError("OPENAI_API_KEY must be provided or set in environment")
        self.api_key = api_key
        self.organization = organization
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.response_format = response_format
        logger.info(f"OpenAIProvider initialized: {self.url}, model={model}")

    def generate(self, prompt: str) -> LLMResponse:
        request_time = datetime.now(timezone.utc)
        start_time = time.time()

        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if self.response_format == "json":
            payload["response_format"] = {"type": "json_object"}

        headers = {"Authorization": f"Bearer {self.api_key}"}
        if self.organization:
            headers["OpenAI-Organization"] = self.organization

        data = self._post(payload, headers, request_time, start_time)
        choices = data.get("choices") or [{}]
        text = (choices[0].get("message") or {}).get("content")
        if not text:
            raise self._failure("EMPTY_RESPONSE", "OpenAI returned an empty response", request_time, start_time)

        usage = data.get("usage") or {}
        trace = self._trace(request_time, start_time)
        logger.info(f"LLM response received in {trace.duration_ms}ms", extra={"duration_ms": trace.duration_ms})

        return LLMResponse(
            text=text,
            tokens_input=usage.get("prompt_tokens", 0),
            tokens_output=usage.get("completion_tokens", 0),
            latency_ms=trace.duration_ms,
            model_used=data.get("model", self.model),
            trace=trace,
        )


class AnthropicProvider(_HTTPProvider):
    """Anthropic Messages API."""

    name = "anthropic"

    def __init__(self, model: str, api_key: Optional[str] = None,
                 base_url: str = "https://api.anthropic.com", endpoint: str = "/v1/messages",
                 timeout: float = 300.0, max_tokens: int = 4096,
                 http_client: Optional[httpx.Client] = None):
        super().__init__(model, base_url, endpoint, timeout, http_client)
        if not api_key:
            raise ValueError("ANTHROPIC_API_KEY must be provided or set in environment")
        self.api_key = api_key
        self.max_tokens = max_tokens
        logger.info(f"AnthropicProvider initialized: {self.url}, model={model}")

    def generate(self, prompt: str) -> LLMResponse:
        request_time = datetime.now(timezone.utc)
        start_time = time.time()

        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

        data = self._post(payload, headers, request_time, start_time)
        blocks = [block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"]
        text = "".join(blocks)
        if not text:
            raise self._failure("EMPTY_RESPONSE", "Anthropic returned an empty response", request_time, start_time)

        usage = data.get("usage", {})
        trace = self._trace(request_time, start_time)
        logger.info(f"LLM response received in {trace.duration_ms}ms", extra={"duration_ms": trace.duration_ms})

        return LLMResponse(
            text=text,
            tokens_input=usage.get("input_tokens", 0),
            tokens_output=usage.get("output_tokens", 0),
            latency_ms=trace.duration_ms,
            model_used=data.get("model", self.model),
            trace=trace,
        )


def _groq_from_settings(settings: ProviderSettings) -> InferenceProvider:
    return GroqProvider(
        model=settings.model,
        api_key=settings.api_key or GROQ_API_KEY,
        timeout=settings.timeout,
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
        json_mode=settings.response_format == "json",
    )


def _ollama_from_settings(settings: ProviderSettings) -> InferenceProvider:
    return OllamaProvider(
        model=settings.model,
        host=settings.host or "http://localhost:11434",
        endpoint=settings.endpoint or "/api/generate",
        timeout=settings.timeout,
        response_format=settings.response_format,
    )


def _openai_from_settings(settings: ProviderSettings) -> InferenceProvider:
    return OpenAIProvider(
        model=settings.model,
        api_key=settings.api_key or OPENAI_API_KEY,
        base_url=settings.host or "https://api.openai.com",
        endpoint=settings.endpoint or "/v1/chat/completions",
        organization=settings.organization,
        timeout=settings.timeout,
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
        response_format=settings.response_format,
    )


def _anthropic_from_settings(settings: ProviderSettings) -> InferenceProvider:
    return AnthropicProvider(
        model=settings.model,
        api_key=settings.api_key or ANTHROPIC_API_KEY,
        base_url=settings.host or "https://api.anthropic.com",
        endpoint=settings.endpoint or "/v1/messages",
        timeout=settings.timeout,
        max_tokens=settings.max_tokens,
    )


PROVIDERS: Dict[str, Callable[[ProviderSettings], InferenceProvider]] = {
    "groq": _groq_from_settings,
    "ollama": _ollama_from_settings,
    "openai": _openai_from_settings,
    "anthropic": _anthropic_from_settings,
}


def create_provider(settings: ProviderSettings) -> InferenceProvider:
    """
    Build the inference provider selected by configuration.

    Raises:
        ValueError: If the provider name is not registered
    """
    factory = PROVIDERS.get(settings.name)
    if factory is None:
        raise ValueError(f"Unsupported LLM provider: {settings.name}")
    return factory(settings)

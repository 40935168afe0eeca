"""
Provider Adapters
=================
Thin wrappers that send an EnhancedPrompt to one vendor and hand back the
vendor's raw JSON. Every adapter:
- resolves its API key through the credential chain
- shares a per-provider sliding-window rate limiter
- retries 429/5xx and transport errors with bounded exponential backoff
- raises ProviderError (with a fallback recommendation) once retries are spent

Content extraction is not done here; see extractors.py.
"""

import asyncio
import inspect
import json
import logging
import random
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
import openai
from google import genai
from google.genai import errors as genai_errors
from openai import AsyncOpenAI

from .credentials import get_api_key
from .errors import ProviderError
from .models import ChunkCallback, EnhancedPrompt, PromptSchema, RequestOptions
from .validation import InputValidator

logger = logging.getLogger(__name__)


def format_http_error(exc: httpx.HTTPStatusError) -> str:
    """Format a readable message from an HTTP error response"""
    response = exc.response
    message = response.reason_phrase or str(exc)
    retry_after = response.headers.get("Retry-After")

    try:
        payload = response.json()
    except (ValueError, httpx.ResponseNotRead):
        payload = None

    if isinstance(payload, dict):
        error_info = payload.get("error")
        if isinstance(error_info, dict) and error_info.get("message"):
            message = error_info["message"]
        elif isinstance(error_info, str):
            message = error_info

    if retry_after:
        message = f"{message} Retry-After: {retry_after}."

    return f"HTTP {response.status_code}: {message}"


def is_retryable_status(status_code: int | None) -> bool:
    if status_code is None:
        return False
    return status_code == 429 or 500 <= status_code < 600


def suggest_fallback(platform: str, status_code: int | None, message: str) -> list[str]:
    """Recommend alternate platforms based on the error class"""
    if status_code == 429:
        # Rate limited: platforms with looser limits
        candidates = ["gemini", "deepseek"]
    elif "content policy" in message.lower():
        candidates = ["perplexity", "deepseek"]
    elif status_code is not None and status_code >= 500:
        candidates = ["perplexity", "gemini"]
    else:
        candidates = ["perplexity", "gemini", "deepseek"]
    return [c for c in candidates if c != platform]


@dataclass
class RateLimitState:
    """Sliding one-minute window for a single provider"""

    requests: deque[float] = field(default_factory=deque)
    tokens: deque[tuple[float, int]] = field(default_factory=deque)
    max_requests_per_minute: int = 60
    max_tokens_per_minute: int = 200000


class RateLimiter:
    """Per-provider request and token rate limiter"""

    def __init__(self, limits: dict[str, tuple[int, int]] | None = None) -> None:
        self._states: dict[str, RateLimitState] = {}
        self._limits = limits or {}
        self._lock = asyncio.Lock()

    def _get_state(self, provider: str) -> RateLimitState:
        if provider not in self._states:
            state = RateLimitState()
            if provider in self._limits:
                state.max_requests_per_minute, state.max_tokens_per_minute = self._limits[
                    provider
                ]
            self._states[provider] = state
        return self._states[provider]

    async def check_and_wait(self, provider: str, estimated_tokens: int = 1000) -> bool:
        """Wait until the provider has room for another request"""
        while True:
            async with self._lock:
                state = self._get_state(provider)
                now = time.time()
                window_start = now - 60

                while state.requests and state.requests[0] < window_start:
                    state.requests.popleft()
                while state.tokens and state.tokens[0][0] < window_start:
                    state.tokens.popleft()

                wait_time = 0.0
                if len(state.requests) >= state.max_requests_per_minute:
                    wait_time = state.requests[0] - window_start
                else:
                    current_tokens = sum(t[1] for t in state.tokens)
                    if (
                        state.tokens
                        and current_tokens + estimated_tokens > state.max_tokens_per_minute
                    ):
                        wait_time = state.tokens[0][0] - window_start

                if wait_time <= 0:
                    state.requests.append(now)
                    state.tokens.append((now, estimated_tokens))
                    return True

            logger.info(f"Rate limited on {provider}, waiting {wait_time:.1f}s")
            await asyncio.sleep(wait_time)


class RetryHandler:
    """Exponential backoff for retryable ProviderErrors"""

    @classmethod
    async def execute_with_retry(
        cls,
        func: Callable[[], Awaitable[Any]],
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ) -> Any:
        for attempt in range(max_retries + 1):
            try:
                return await func()
            except ProviderError as e:
                if attempt == max_retries or not e.retryable:
                    raise

                delay = min(base_delay * (2**attempt), max_delay)
                delay *= 0.5 + 0.5 * random.random()

                logger.warning(
                    f"Retrying {e.platform or 'provider'} after error "
                    f"(attempt {attempt + 1}/{max_retries}): "
                    f"{InputValidator.sanitize_for_logging(str(e))}"
                )
                await asyncio.sleep(delay)

        raise RuntimeError("Retry logic finished without returning or raising.")


async def emit_chunk(on_chunk: ChunkCallback | None, text: str, frame: Any) -> None:
    """Invoke a sync or async chunk callback"""
    if on_chunk is None:
        return
    result = on_chunk(text, frame)
    if inspect.isawaitable(result):
        await result


class BaseProvider(ABC):
    """Abstract base class for provider adapters"""

    requires_api_key = True

    def __init__(
        self,
        platform: str,
        rate_limiter: RateLimiter,
        *,
        model: str,
        base_url: str | None = None,
        api_key: str | None = None,
        max_retries: int = 3,
        timeout: float = 120.0,
    ):
        self.platform = platform
        self.rate_limiter = rate_limiter
        self.model = model
        self.base_url = base_url
        self.max_retries = max_retries
        self.timeout = timeout
        self._api_key = api_key
        self._client: Any | None = None

    @property
    def provider_name(self) -> str:
        return self.platform

    def _require_api_key(self) -> str | None:
        if self._api_key is None:
            self._api_key = get_api_key(self.platform)
        if not self._api_key and self.requires_api_key:
            raise ProviderError(
                f"{self.platform} API key not configured",
                platform=self.platform,
                status_code=401,
                retryable=False,
                fallback_recommendation=suggest_fallback(self.platform, 401, ""),
            )
        return self._api_key

    def _provider_error(
        self, message: str, status_code: int | None = None, retryable: bool | None = None
    ) -> ProviderError:
        if retryable is None:
            retryable = is_retryable_status(status_code)
        return ProviderError(
            message,
            platform=self.platform,
            status_code=status_code,
            retryable=retryable,
            fallback_recommendation=suggest_fallback(self.platform, status_code, message),
        )

    async def invoke(
        self, prompt: EnhancedPrompt, options: RequestOptions | None = None
    ) -> dict[str, Any]:
        """Send a prompt and return the vendor's raw response"""
        options = options or RequestOptions()
        await self.rate_limiter.check_and_wait(self.provider_name, options.max_tokens)
        return await RetryHandler.execute_with_retry(
            lambda: self._request(prompt, options), max_retries=self.max_retries
        )

    async def invoke_streaming(
        self,
        prompt: EnhancedPrompt,
        on_chunk: ChunkCallback | None,
        options: RequestOptions | None = None,
    ) -> dict[str, Any]:
        """
        Stream a prompt, calling on_chunk(text, raw_frame) per frame.

        Retries only happen before the first frame is delivered; once the
        caller has seen partial output a failure is surfaced immediately.
        """
        options = options or RequestOptions()
        await self.rate_limiter.check_and_wait(self.provider_name, options.max_tokens)
        delivered = False

        async def tracking_callback(text: str, frame: Any) -> None:
            nonlocal delivered
            delivered = True
            await emit_chunk(on_chunk, text, frame)

        async def attempt() -> dict[str, Any]:
            try:
                return await self._stream(prompt, tracking_callback, options)
            except ProviderError as e:
                if delivered:
                    e.retryable = False
                raise

        return await RetryHandler.execute_with_retry(attempt, max_retries=self.max_retries)

    @abstractmethod
    async def _request(self, prompt: EnhancedPrompt, options: RequestOptions) -> dict[str, Any]:
        pass

    @abstractmethod
    async def _stream(
        self,
        prompt: EnhancedPrompt,
        on_chunk: Callable[[str, Any], Awaitable[None]],
        options: RequestOptions,
    ) -> dict[str, Any]:
        pass

    async def aclose(self) -> None:
        client = self._client
        self._client = None
        if client is not None and hasattr(client, "aclose"):
            await client.aclose()
        elif client is not None and hasattr(client, "close"):
            result = client.close()
            if inspect.isawaitable(result):
                await result


class OpenAICompatibleProvider(BaseProvider):
    """Any vendor exposing an OpenAI-style /chat/completions endpoint over httpx"""

    def __init__(
        self,
        platform: str,
        rate_limiter: RateLimiter,
        *,
        model: str,
        base_url: str,
        api_key: str | None = None,
        max_retries: int = 3,
        timeout: float = 120.0,
        requires_api_key: bool = True,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(
            platform,
            rate_limiter,
            model=model,
            base_url=base_url,
            api_key=api_key,
            max_retries=max_retries,
            timeout=timeout,
        )
        self.requires_api_key = requires_api_key
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        api_key = self._require_api_key()
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if api_key:
                headers["Authorization"] = f"Bearer {api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url or "", headers=headers, timeout=self.timeout
            )
        return self._client

    def _build_body(
        self, prompt: EnhancedPrompt, options: RequestOptions, stream: bool
    ) -> dict[str, Any]:
        body = dict(prompt.extras)
        body.update(
            {
                "model": self.model,
                "messages": prompt.to_messages(),
                "temperature": options.temperature,
                "max_tokens": options.max_tokens,
                "stream": stream,
            }
        )
        return body

    def _wrap_transport_error(self, exc: Exception) -> ProviderError:
        if isinstance(exc, httpx.HTTPStatusError):
            return self._provider_error(format_http_error(exc), exc.response.status_code)
        if isinstance(exc, httpx.TimeoutException):
            return self._provider_error(f"Request timed out: {exc}", retryable=True)
        if isinstance(exc, httpx.TransportError):
            return self._provider_error(f"Connection error: {exc}", retryable=True)
        return self._provider_error(f"Invalid response: {exc}", retryable=False)

    async def _request(self, prompt: EnhancedPrompt, options: RequestOptions) -> dict[str, Any]:
        client = self._get_client()
        try:
            response = await client.post(
                "/chat/completions", json=self._build_body(prompt, options, stream=False)
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise self._wrap_transport_error(e) from e

        if not isinstance(data, dict):
            raise self._provider_error("Invalid response: expected a JSON object")
        return data

    async def _stream(
        self,
        prompt: EnhancedPrompt,
        on_chunk: Callable[[str, Any], Awaitable[None]],
        options: RequestOptions,
    ) -> dict[str, Any]:
        client = self._get_client()
        parts: list[str] = []
        finish_reason = None
        try:
            async with client.stream(
                "POST",
                "/chat/completions",
                json=self._build_body(prompt, options, stream=True),
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                response.raise_for_status()
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:") :].strip()
                    if not data or data == "[DONE]":
                        continue
                    frame = json.loads(data)
                    if isinstance(frame, dict) and frame.get("error"):
                        raise self._provider_error(f"Stream error: {frame['error']}")
                    choices = frame.get("choices") or [{}]
                    delta = choices[0].get("delta") or {}
                    finish_reason = choices[0].get("finish_reason") or finish_reason
                    text = delta.get("content")
                    if text:
                        parts.append(text)
                        await on_chunk(text, frame)
        except (httpx.HTTPError, ValueError) as e:
            raise self._wrap_transport_error(e) from e

        return {
            "choices": [
                {
                    "message": {"role": "assistant", "content": "".join(parts)},
                    "finish_reason": finish_reason,
                }
            ],
            "usage": None,
            "streamed": True,
        }


class PerplexityProvider(OpenAICompatibleProvider):
    """Perplexity search-grounded chat; responses carry a citations list"""

    def _build_body(
        self, prompt: EnhancedPrompt, options: RequestOptions, stream: bool
    ) -> dict[str, Any]:
        body = super()._build_body(prompt, options, stream)
        body.pop("search", None)
        if body.pop("include_citations", False):
            body["return_citations"] = True
        return body


class ChatGPTProvider(BaseProvider):
    """OpenAI chat completions through the official SDK"""

    def _get_client(self) -> AsyncOpenAI:
        api_key = self._require_api_key()
        if self._client is None:
            # Retries are ours, not the SDK's
            self._client = AsyncOpenAI(
                api_key=api_key, base_url=self.base_url, max_retries=0, timeout=self.timeout
            )
        return self._client

    def _wrap_sdk_error(self, exc: openai.OpenAIError) -> ProviderError:
        if isinstance(exc, openai.APIStatusError):
            return self._provider_error(str(exc), exc.status_code)
        if isinstance(exc, openai.APIConnectionError):
            return self._provider_error(f"Connection error: {exc}", retryable=True)
        return self._provider_error(str(exc), retryable=False)

    async def _request(self, prompt: EnhancedPrompt, options: RequestOptions) -> dict[str, Any]:
        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=prompt.to_messages(),
                temperature=options.temperature,
                max_tokens=options.max_tokens,
            )
        except openai.OpenAIError as e:
            raise self._wrap_sdk_error(e) from e
        return response.model_dump()

    async def _stream(
        self,
        prompt: EnhancedPrompt,
        on_chunk: Callable[[str, Any], Awaitable[None]],
        options: RequestOptions,
    ) -> dict[str, Any]:
        client = self._get_client()
        parts: list[str] = []
        try:
            stream = await client.chat.completions.create(
                model=self.model,
                messages=prompt.to_messages(),
                temperature=options.temperature,
                max_tokens=options.max_tokens,
                stream=True,
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                text = chunk.choices[0].delta.content
                if text:
                    parts.append(text)
                    await on_chunk(text, chunk.model_dump())
        except openai.OpenAIError as e:
            raise self._wrap_sdk_error(e) from e

        return {
            "choices": [{"message": {"role": "assistant", "content": "".join(parts)}}],
            "usage": None,
            "streamed": True,
        }


class GeminiProvider(BaseProvider):
    """Google Gemini through the google-genai SDK"""

    def _get_client(self) -> genai.Client:
        api_key = self._require_api_key()
        if self._client is None:
            self._client = genai.Client(api_key=api_key)
        return self._client

    @staticmethod
    def _split_contents(prompt: EnhancedPrompt) -> tuple[str, list[dict[str, Any]]]:
        """Gemini takes system text separately from the user/model turns"""
        if prompt.schema is PromptSchema.MESSAGES:
            turns = [
                {
                    "role": m["role"],
                    "parts": [{"text": m["content"]}],
                }
                for m in prompt.to_messages()
            ]
        else:
            turns = [dict(t) for t in prompt.turns]

        system_parts: list[str] = []
        contents: list[dict[str, Any]] = []
        for turn in turns:
            role = turn.get("role", "user")
            text = "".join(str(p.get("text", "")) for p in turn.get("parts", []))
            if role == "system":
                system_parts.append(text)
            else:
                contents.append(
                    {"role": "model" if role in ("model", "assistant") else "user",
                     "parts": [{"text": text}]}
                )
        return "\n\n".join(system_parts), contents

    def _generation_config(self, system: str, options: RequestOptions) -> dict[str, Any]:
        config: dict[str, Any] = {
            "temperature": options.temperature,
            "max_output_tokens": options.max_tokens,
        }
        if system:
            config["system_instruction"] = system
        return config

    def _wrap_sdk_error(self, exc: genai_errors.APIError) -> ProviderError:
        return self._provider_error(str(exc), getattr(exc, "code", None))

    async def _request(self, prompt: EnhancedPrompt, options: RequestOptions) -> dict[str, Any]:
        client = self._get_client()
        system, contents = self._split_contents(prompt)
        try:
            response = await client.aio.models.generate_content(
                model=self.model,
                contents=contents,
                config=self._generation_config(system, options),
            )
        except genai_errors.APIError as e:
            raise self._wrap_sdk_error(e) from e
        except httpx.TransportError as e:
            raise self._provider_error(f"Connection error: {e}", retryable=True) from e
        return response.model_dump(mode="json", exclude_none=True)

    async def _stream(
        self,
        prompt: EnhancedPrompt,
        on_chunk: Callable[[str, Any], Awaitable[None]],
        options: RequestOptions,
    ) -> dict[str, Any]:
        client = self._get_client()
        system, contents = self._split_contents(prompt)
        parts: list[str] = []
        try:
            stream = await client.aio.models.generate_content_stream(
                model=self.model,
                contents=contents,
                config=self._generation_config(system, options),
            )
            async for chunk in stream:
                text = chunk.text
                if text:
                    parts.append(text)
                    await on_chunk(text, chunk.model_dump(mode="json", exclude_none=True))
        except genai_errors.APIError as e:
            raise self._wrap_sdk_error(e) from e
        except httpx.TransportError as e:
            raise self._provider_error(f"Connection error: {e}", retryable=True) from e

        return {
            "candidates": [{"content": {"role": "model", "parts": [{"text": "".join(parts)}]}}],
            "streamed": True,
        }

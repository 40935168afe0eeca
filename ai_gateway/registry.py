"""
Platform Registry
=================

Capability records for every provider the gateway can route to, resolved
once at startup. Everything that used to vary per vendor (adapter, content
extractor, prompt schema, persona, context window, extra payload fields)
hangs off a PlatformRecord so the rest of the gateway never branches on a
platform name.
"""

import copy
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from . import extractors
from .config import GatewayConfig
from .errors import UnknownPlatformError
from .models import ConversationTurn, EnhancedPrompt, PromptSchema
from .providers import (
    BaseProvider,
    ChatGPTProvider,
    GeminiProvider,
    OpenAICompatibleProvider,
    PerplexityProvider,
    RateLimiter,
)

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_WINDOW = 32000

CONTEXT_WINDOWS = {
    "chatgpt": 128000,
    "perplexity": 32000,
    "gemini": 1000000,
    "copilot": 64000,
    "deepseek": 128000,
    "grok3": 128000,
    "vertix": 32000,
    "local": 32000,
}

DEFAULT_MODELS = {
    "chatgpt": "gpt-4o",
    "perplexity": "sonar",
    "gemini": "gemini-1.5-pro",
    "copilot": "gpt-4o",
    "deepseek": "deepseek-chat",
    "grok3": "grok-3",
    "vertix": "vertix-expert",
    "local": "deepseek-r1-distill-qwen-7b",
}

DEFAULT_ENDPOINTS = {
    "perplexity": "https://api.perplexity.ai",
    "copilot": "https://api.github.com/copilot/v1",
    "deepseek": "https://api.deepseek.com/v1",
    "grok3": "https://api.x.ai/v1",
    "vertix": "https://api.vertix.ai/v1",
    "local": "http://localhost:8000/v1",
}

SYSTEM_PROMPTS = {
    "chatgpt": (
        "You are an advanced AI assistant that combines the capabilities of "
        "multiple AI systems. Give detailed reasoning and show your thinking "
        "step by step when solving complex problems."
    ),
    "perplexity": (
        "You are an AI research assistant. Give comprehensive answers with "
        "citations and sources when available."
    ),
    "gemini": (
        "You are an AI assistant with strong reasoning skills. Show your "
        "thinking step by step."
    ),
    "copilot": (
        "You are an AI coding assistant. Explain code in detail and give "
        "step-by-step solutions to programming problems."
    ),
    "deepseek": (
        "You are an AI assistant with strong mathematical and reasoning skills. "
        "Show your step-by-step thinking when solving problems."
    ),
    "grok3": (
        "You are an AI assistant with real-time data analysis capabilities. "
        "Give insightful analysis and up-to-date information."
    ),
    "vertix": (
        "You are an AI assistant with specialized domain expertise. Give "
        "industry-specific insights and domain knowledge."
    ),
    "local": "You are a helpful AI assistant. Give accurate, helpful answers.",
}


@dataclass(frozen=True)
class PlatformRecord:
    """Everything the gateway knows about one provider"""

    name: str
    display_name: str
    adapter: BaseProvider
    extractor: Callable[[Any], str]
    prompt_schema: PromptSchema = PromptSchema.MESSAGES
    system_prompt: str = ""
    context_window: int = DEFAULT_CONTEXT_WINDOW
    extras: dict[str, Any] = field(default_factory=dict)
    is_local: bool = False

    @property
    def attribution(self) -> str:
        return f"*Response powered by {self.display_name}*"


class PlatformRegistry:
    """Provider id -> PlatformRecord"""

    def __init__(self, records: Sequence[PlatformRecord] = ()):
        self._records: dict[str, PlatformRecord] = {}
        for record in records:
            self.register(record)

    def register(self, record: PlatformRecord) -> None:
        if record.name in self._records:
            logger.warning(f"Replacing registered platform: {record.name}")
        self._records[record.name] = record

    def get(self, platform: str) -> PlatformRecord:
        record = self._records.get(platform)
        if record is None:
            raise UnknownPlatformError(platform)
        return record

    def is_registered(self, platform: str | None) -> bool:
        return platform is not None and platform in self._records

    def names(self) -> list[str]:
        return list(self._records)

    def records(self) -> list[PlatformRecord]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, platform: object) -> bool:
        return platform in self._records

    def context_window(self, platform: str) -> int:
        record = self._records.get(platform)
        return record.context_window if record else DEFAULT_CONTEXT_WINDOW

    def display_name(self, platform: str) -> str:
        record = self._records.get(platform)
        if record:
            return record.display_name
        return platform.capitalize() if platform else "Unknown"

    def build_base_prompt(
        self,
        context: Sequence[ConversationTurn],
        platform: str,
        user_input: str | None = None,
    ) -> EnhancedPrompt:
        """
        Reshape stored turns into the platform's wire format: persona system
        turn, then the history, then the current user message if given.
        """
        record = self.get(platform)

        messages: list[tuple[str, str]] = []
        if record.system_prompt:
            messages.append(("system", record.system_prompt))
        for turn in context:
            if turn.is_system_message:
                messages.append(("system", turn.ai_response))
                continue
            messages.append(("user", turn.user_input))
            if turn.ai_response:
                messages.append(("assistant", turn.ai_response))
        if user_input:
            messages.append(("user", user_input))

        if record.prompt_schema is PromptSchema.CONTENTS:
            turns = tuple(
                {"role": "model" if role == "assistant" else role, "parts": [{"text": text}]}
                for role, text in messages
            )
        else:
            turns = tuple({"role": role, "content": text} for role, text in messages)

        return EnhancedPrompt(
            schema=record.prompt_schema, turns=turns, extras=copy.deepcopy(record.extras)
        )

    async def aclose(self) -> None:
        for record in self._records.values():
            await record.adapter.aclose()


def default_registry(
    config: GatewayConfig, rate_limiter: RateLimiter | None = None
) -> PlatformRegistry:
    """Build the registry for the eight built-in platforms"""
    limiter = rate_limiter or RateLimiter()

    def window(name: str) -> int:
        return int(config.context_windows.get(name, CONTEXT_WINDOWS[name]))

    def model(name: str) -> str:
        return config.models.get(name, DEFAULT_MODELS[name])

    def endpoint(name: str) -> str | None:
        return config.endpoints.get(name, DEFAULT_ENDPOINTS.get(name))

    common = {"max_retries": config.max_retries, "timeout": config.stream_timeout}

    def compatible(name: str, **kwargs: Any) -> OpenAICompatibleProvider:
        return OpenAICompatibleProvider(
            name, limiter, model=model(name), base_url=endpoint(name), **common, **kwargs
        )

    return PlatformRegistry(
        [
            PlatformRecord(
                name="chatgpt",
                display_name="ChatGPT",
                adapter=ChatGPTProvider(
                    "chatgpt", limiter, model=model("chatgpt"), base_url=endpoint("chatgpt"), **common
                ),
                extractor=extractors.extract_chat_completion,
                system_prompt=SYSTEM_PROMPTS["chatgpt"],
                context_window=window("chatgpt"),
            ),
            PlatformRecord(
                name="perplexity",
                display_name="Perplexity",
                adapter=PerplexityProvider(
                    "perplexity",
                    limiter,
                    model=model("perplexity"),
                    base_url=endpoint("perplexity"),
                    **common,
                ),
                extractor=extractors.extract_perplexity,
                system_prompt=SYSTEM_PROMPTS["perplexity"],
                context_window=window("perplexity"),
                extras={"search": True, "include_citations": True},
            ),
            PlatformRecord(
                name="gemini",
                display_name="Gemini",
                adapter=GeminiProvider("gemini", limiter, model=model("gemini"), **common),
                extractor=extractors.extract_gemini,
                prompt_schema=PromptSchema.CONTENTS,
                system_prompt=SYSTEM_PROMPTS["gemini"],
                context_window=window("gemini"),
            ),
            PlatformRecord(
                name="copilot",
                display_name="GitHub Copilot",
                adapter=compatible("copilot"),
                extractor=extractors.extract_chat_completion,
                system_prompt=SYSTEM_PROMPTS["copilot"],
                context_window=window("copilot"),
                extras={"editor_context": {"language": "plaintext", "editor_content": ""}},
            ),
            PlatformRecord(
                name="deepseek",
                display_name="DeepSeek",
                adapter=compatible("deepseek"),
                extractor=extractors.extract_chat_completion,
                system_prompt=SYSTEM_PROMPTS["deepseek"],
                context_window=window("deepseek"),
            ),
            PlatformRecord(
                name="grok3",
                display_name="Grok3",
                adapter=compatible("grok3"),
                extractor=extractors.extract_grok3,
                system_prompt=SYSTEM_PROMPTS["grok3"],
                context_window=window("grok3"),
                extras={"use_realtime_data": True},
            ),
            PlatformRecord(
                name="vertix",
                display_name="Vertix",
                adapter=compatible("vertix"),
                extractor=extractors.extract_vertix,
                system_prompt=SYSTEM_PROMPTS["vertix"],
                context_window=window("vertix"),
            ),
            PlatformRecord(
                name="local",
                display_name="Local Model",
                adapter=compatible("local", requires_api_key=False),
                extractor=extractors.extract_local,
                system_prompt=SYSTEM_PROMPTS["local"],
                context_window=window("local"),
                is_local=True,
            ),
        ]
    )

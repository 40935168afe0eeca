"""
Gateway Data Model
==================

Plain dataclasses shared by every component. Conversation turns and prompts
are frozen; per-request records are rebuilt rather than mutated.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now_iso() -> str:
    """ISO-8601 timestamp in UTC"""
    return datetime.now(timezone.utc).isoformat()


class TaskType(Enum):
    """Closed set of task labels the classifier can produce"""

    GENERAL = "general"
    RESEARCH = "research"
    CODE = "code"
    REASONING = "reasoning"
    CREATIVE = "creative"
    DATA_ANALYSIS = "data_analysis"
    DOMAIN_EXPERTISE = "domain_expertise"

    @classmethod
    def parse(cls, value: TaskType | str | None) -> TaskType:
        """Coerce a label into a TaskType, defaulting to GENERAL"""
        if isinstance(value, TaskType):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                return cls.GENERAL
        return cls.GENERAL


class ReasoningStep(Enum):
    """Reasoning-phase vocabulary injected by the thinking prompt builder"""

    PROBLEM_UNDERSTANDING = "problem_understanding"
    INFORMATION_GATHERING = "information_gathering"
    APPROACH_SELECTION = "approach_selection"
    STEP_BY_STEP_REASONING = "step_by_step_reasoning"
    VERIFICATION = "verification"
    CONCLUSION = "conclusion"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()


class ResponseFormat(Enum):
    TEXT = "text"
    MARKDOWN = "markdown"
    HTML = "html"
    JSON = "json"

    @classmethod
    def parse(cls, value: ResponseFormat | str | None) -> ResponseFormat:
        if isinstance(value, ResponseFormat):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.MARKDOWN


class MergeStrategy(Enum):
    SEQUENTIAL = "sequential"
    BEST_FIRST = "best_first"
    TASK_SPECIFIC = "task_specific"


class RequestState(Enum):
    """Lifecycle states of a single orchestrated request"""

    ROUTING = "routing"
    CONTEXT_FETCH = "context_fetch"
    PROMPT_BUILD = "prompt_build"
    PROVIDER_CALL = "provider_call"
    RESPONSE_SYNTH = "response_synth"
    CONTEXT_SAVE = "context_save"
    DONE = "done"
    ERROR = "error"
    FALLBACK_ROUTING = "fallback_routing"
    FAILED = "failed"


class PromptSchema(Enum):
    """Wire shape of a provider's conversation payload"""

    MESSAGES = "messages"  # [{"role", "content"}]
    CONTENTS = "contents"  # [{"role", "parts": [{"text"}]}]


@dataclass(frozen=True)
class ConversationTurn:
    """One stored exchange. Append-only; never mutated once saved."""

    user_id: str
    user_input: str
    ai_response: str
    platform: str = "unknown"
    task_type: str = TaskType.GENERAL.value
    timestamp: str = field(default_factory=utc_now_iso)
    is_system_message: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationTurn:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class ClassificationResult:
    task_type: TaskType
    confidence: float
    source: str = "rules"  # "learned" | "rules" | "default"
    domain: str = "default"


@dataclass(frozen=True)
class PlatformSelection:
    platform: str
    secondary: str | None = None
    fallback: str | None = None
    is_user_preferred: bool = False
    is_cost_optimized: bool = False


@dataclass
class RoutingDecision:
    """Per-request routing outcome. Never persisted."""

    user_id: str
    user_input: str
    task_type: TaskType
    platform: str
    secondary: str | None
    fallback: str | None
    timestamp: str = field(default_factory=utc_now_iso)
    domain: str = "default"
    confidence: float = 0.0
    is_error_fallback: bool = False
    is_user_preferred: bool = False
    is_cost_optimized: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["task_type"] = self.task_type.value
        return data


@dataclass(frozen=True)
class ThinkingSpec:
    """Task-specific reasoning instructions attached to an outgoing prompt"""

    task_type: TaskType
    system_prompt: str
    reasoning_steps: tuple[ReasoningStep, ...]
    templates: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class EnhancedPrompt:
    """
    Provider-shaped prompt. The turns are private copies: building a new
    prompt from an existing one never touches the original.
    """

    schema: PromptSchema
    turns: tuple[dict[str, Any], ...]
    extras: dict[str, Any] = field(default_factory=dict)

    def to_messages(self) -> list[dict[str, str]]:
        """Flatten to role/content messages regardless of schema"""
        if self.schema is PromptSchema.MESSAGES:
            return [
                {"role": str(t.get("role", "user")), "content": str(t.get("content", ""))}
                for t in self.turns
            ]
        messages = []
        for turn in self.turns:
            text = "".join(str(p.get("text", "")) for p in turn.get("parts", []))
            role = turn.get("role", "user")
            messages.append(
                {"role": "assistant" if role == "model" else str(role), "content": text}
            )
        return messages


@dataclass
class ProcessedResponse:
    """Normalized response returned to callers and persisted as a turn"""

    content: str
    platform: str
    task_type: str
    timestamp: str
    user_id: str
    format: str = ResponseFormat.MARKDOWN.value
    formatted_response: str = ""
    thinking_process: list[dict[str, str]] | None = None
    error: str | None = None
    usage: dict[str, Any] | str = "unknown"
    sources: list[dict[str, str]] = field(default_factory=list)
    processing_time_ms: float | None = None
    routing: dict[str, Any] | None = None
    fallback_from: str | None = None
    attempted_platforms: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


ChunkCallback = Callable[[str, Any], Any]


# Accepted camelCase aliases for RequestOptions, mirroring the JSON payloads
# the HTTP surface receives.
_OPTION_ALIASES = {
    "platform": "platform",
    "overridePlatform": "platform",
    "optimizeCost": "optimize_cost",
    "isPremiumUser": "is_premium_user",
    "enableFallback": "enable_fallback",
    "extendedFallback": "extended_fallback",
    "enableSemanticSearch": "enable_semantic_search",
    "maxRelevantItems": "max_relevant_items",
    "responseFormat": "response_format",
    "includeThinking": "include_thinking",
    "includeAttribution": "include_attribution",
    "thinkingPosition": "thinking_position",
    "mergeStrategy": "merge_strategy",
    "includeSectionHeaders": "include_section_headers",
    "taskType": "task_type",
    "maxTokens": "max_tokens",
    "temperature": "temperature",
    "stream": "stream",
    "timeout": "timeout",
}


@dataclass(frozen=True)
class RequestOptions:
    """
    Per-request options. Frozen so fallback hops derive a new copy with
    dataclasses.replace instead of sharing state across requests.
    """

    platform: str | None = None
    task_type: str | None = None
    optimize_cost: bool = False
    is_premium_user: bool = False
    enable_fallback: bool = True
    # Continue past the task triple into the domain priority list
    extended_fallback: bool = False
    is_fallback: bool = False
    attempted_platforms: tuple[str, ...] = ()
    fallback_from: str | None = None
    enable_semantic_search: bool = False
    max_relevant_items: int = 3
    response_format: str = ResponseFormat.MARKDOWN.value
    include_thinking: bool = True
    include_attribution: bool = True
    thinking_position: str = "after"
    extract_thinking: bool = True
    stream: bool = False
    merge_strategy: str = MergeStrategy.TASK_SPECIFIC.value
    include_section_headers: bool = True
    save_context: bool = True
    timeout: float | None = None
    temperature: float = 0.7
    max_tokens: int = 2000

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RequestOptions:
        """Build options from a snake_case or camelCase mapping"""
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key == "userPreferences" and isinstance(value, dict):
                preferred = value.get("preferredPlatform")
                if preferred:
                    kwargs["platform"] = preferred
                continue
            name = _OPTION_ALIASES.get(key, key)
            if name in known and name != "attempted_platforms":
                kwargs[name] = value
        return cls(**kwargs)

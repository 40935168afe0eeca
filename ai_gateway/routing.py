"""
Platform Selection
==================

Maps a classified task to a {primary, secondary, fallback} provider triple
and a routing domain to an ordered provider list. The fallback chain is the
triple, filtered by availability; extended fallback goes on through the
domain list.

Both tables are read-only after construction; config overrides are applied
once in __init__.
"""

import logging
from collections.abc import Iterable, Sequence

from .classifier import TaskClassifier
from .config import FeatureFlags
from .errors import NoAvailableProvider, UnknownPlatformError
from .models import (
    ConversationTurn,
    PlatformSelection,
    RequestOptions,
    RoutingDecision,
    TaskType,
)
from .registry import PlatformRegistry
from .validation import InputValidator

logger = logging.getLogger(__name__)

PLATFORM_PRIORITY_TABLE: dict[TaskType, dict[str, str]] = {
    TaskType.RESEARCH: {"primary": "perplexity", "secondary": "gemini", "fallback": "local"},
    TaskType.REASONING: {"primary": "deepseek", "secondary": "gemini", "fallback": "local"},
    TaskType.CODE: {"primary": "copilot", "secondary": "deepseek", "fallback": "local"},
    TaskType.CREATIVE: {"primary": "chatgpt", "secondary": "gemini", "fallback": "local"},
    TaskType.DATA_ANALYSIS: {"primary": "grok3", "secondary": "gemini", "fallback": "local"},
    TaskType.DOMAIN_EXPERTISE: {"primary": "vertix", "secondary": "chatgpt", "fallback": "local"},
    TaskType.GENERAL: {"primary": "chatgpt", "secondary": "deepseek", "fallback": "local"},
}

DOMAIN_PRIORITIES: dict[str, list[str]] = {
    "default": ["chatgpt", "perplexity", "gemini", "deepseek", "grok3", "vertix", "copilot", "local"],
    "code": ["copilot", "deepseek", "chatgpt", "perplexity", "gemini", "grok3", "vertix", "local"],
    "research": ["perplexity", "gemini", "chatgpt", "grok3", "deepseek", "vertix", "copilot", "local"],
    "math": ["deepseek", "gemini", "chatgpt", "perplexity", "grok3", "vertix", "copilot", "local"],
    "creative": ["chatgpt", "gemini", "perplexity", "grok3", "deepseek", "vertix", "copilot", "local"],
    "visual": ["gemini", "grok3", "chatgpt", "perplexity", "deepseek", "vertix", "copilot", "local"],
    "arabic": ["chatgpt", "gemini", "perplexity", "deepseek", "grok3", "vertix", "copilot", "local"],
}

# Used when routing itself blows up
ERROR_FALLBACK_SELECTION = PlatformSelection("chatgpt", "deepseek", "local")


def _unique(items: Iterable[str | None]) -> list[str]:
    seen: set[str] = set()
    ordered = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            ordered.append(item)
    return ordered


class PlatformSelector:
    """Chooses the provider for a task and orders the fallback chain"""

    def __init__(
        self,
        registry: PlatformRegistry,
        classifier: TaskClassifier | None = None,
        features: FeatureFlags | None = None,
        task_routing: dict[str, dict[str, str]] | None = None,
        domain_priorities: dict[str, list[str]] | None = None,
    ):
        self.registry = registry
        self.classifier = classifier or TaskClassifier()
        self.features = features or FeatureFlags()

        table = {task: dict(triple) for task, triple in PLATFORM_PRIORITY_TABLE.items()}
        for label, override in (task_routing or {}).items():
            task_type = TaskType.parse(label)
            if task_type.value != label:
                logger.warning(f"Ignoring taskRouting override for unknown task: {label}")
                continue
            table[task_type].update(
                {k: v for k, v in override.items() if k in ("primary", "secondary", "fallback")}
            )
        self.priority_table = table

        domains = {name: list(order) for name, order in DOMAIN_PRIORITIES.items()}
        for name, order in (domain_priorities or {}).items():
            domains[name] = list(order)
        self.domain_priorities = domains

    def triple(self, task_type: TaskType) -> dict[str, str]:
        return self.priority_table.get(task_type, self.priority_table[TaskType.GENERAL])

    def is_available(self, platform: str | None, attempted: Iterable[str] = ()) -> bool:
        if not self.registry.is_registered(platform):
            return False
        if platform in set(attempted):
            return False
        if self.registry.get(platform).is_local and not self.features.enable_local_models:
            return False
        return True

    def select(self, task_type: TaskType, options: RequestOptions | None = None) -> PlatformSelection:
        """Pick {platform, secondary, fallback} for a task type"""
        options = options or RequestOptions()
        triple = self.triple(task_type)

        if options.platform:
            if not self.registry.is_registered(options.platform):
                raise UnknownPlatformError(options.platform)
            return PlatformSelection(
                platform=options.platform,
                secondary=triple["secondary"],
                fallback=triple["fallback"],
                is_user_preferred=not options.is_fallback,
            )

        if options.optimize_cost and not options.is_premium_user:
            return PlatformSelection(
                platform=triple["fallback"],
                secondary=triple["secondary"],
                fallback=triple["fallback"],
                is_cost_optimized=True,
            )

        return PlatformSelection(
            platform=triple["primary"],
            secondary=triple["secondary"],
            fallback=triple["fallback"],
        )

    def candidates(
        self,
        task_type: TaskType,
        domain: str = "default",
        attempted: Iterable[str] = (),
        recommended: Sequence[str] = (),
        extended: bool = False,
    ) -> list[str]:
        """
        Availability-filtered fallback chain: the task triple in order, so a
        failed primary hands over to the secondary and then the fallback.
        With `extended`, the domain list follows, led by any recommended
        platforms it contains. Recommendations never jump ahead of the triple.
        """
        attempted = set(attempted)
        triple = self.triple(task_type)
        chain = [triple["primary"], triple["secondary"], triple["fallback"]]
        if extended:
            domain_list = self.domain_priorities.get(domain, self.domain_priorities["default"])
            chain += [p for p in recommended if p in domain_list]
            chain += domain_list

        ordered = [p for p in _unique(chain) if self.is_available(p, attempted)]
        if not ordered:
            raise NoAvailableProvider(domain=domain, attempted=sorted(attempted))
        return ordered

    async def route(
        self,
        user_input: str,
        user_id: str,
        context: Sequence[ConversationTurn] = (),
        options: RequestOptions | None = None,
    ) -> RoutingDecision:
        """Classify and select in one step"""
        options = options or RequestOptions()
        try:
            classification = await self.classifier.classify(user_input, context, options)
            selection = self.select(classification.task_type, options)

            platform = selection.platform
            if not selection.is_user_preferred and not self.is_available(
                platform, options.attempted_platforms
            ):
                platform = self.candidates(
                    classification.task_type,
                    classification.domain,
                    options.attempted_platforms,
                    extended=options.extended_fallback,
                )[0]

            decision = RoutingDecision(
                user_id=user_id,
                user_input=user_input,
                task_type=classification.task_type,
                platform=platform,
                secondary=selection.secondary,
                fallback=selection.fallback,
                domain=classification.domain,
                confidence=classification.confidence,
                is_user_preferred=selection.is_user_preferred,
                is_cost_optimized=selection.is_cost_optimized,
            )
            logger.info(
                f"Routed '{InputValidator.sanitize_for_logging(user_input, 50)}' "
                f"as {decision.task_type.value} -> {decision.platform}"
            )
            return decision
        except (UnknownPlatformError, NoAvailableProvider):
            raise
        except Exception as e:
            logger.error(f"Routing failed, using error fallback: {e}")
            return RoutingDecision(
                user_id=user_id,
                user_input=user_input,
                task_type=TaskType.GENERAL,
                platform=ERROR_FALLBACK_SELECTION.platform,
                secondary=ERROR_FALLBACK_SELECTION.secondary,
                fallback=ERROR_FALLBACK_SELECTION.fallback,
                is_error_fallback=True,
            )

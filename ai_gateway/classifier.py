"""
Task Classification
===================

Two stages:
1. An optional learned classifier, trusted only above a confidence threshold
2. Ordered keyword/regex rules (first match wins, default GENERAL)

classify() never raises. Learned-classifier failures and timeouts are logged
and the rules decide instead.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from .errors import ClassificationError
from .models import ClassificationResult, ConversationTurn, RequestOptions, TaskType
from .validation import InputValidator

logger = logging.getLogger(__name__)

ARABIC_SCRIPT = re.compile("[\u0600-\u06ff]")
VISUAL_HINTS = re.compile(r"\b(image|picture|diagram|chart|visual)\b", re.IGNORECASE)

# Routing domain per task type; keys into the domain priority lists
TASK_DOMAINS = {
    TaskType.CODE: "code",
    TaskType.RESEARCH: "research",
    TaskType.REASONING: "math",
    TaskType.CREATIVE: "creative",
    TaskType.DATA_ANALYSIS: "default",
    TaskType.DOMAIN_EXPERTISE: "default",
    TaskType.GENERAL: "default",
}


@dataclass(frozen=True)
class ClassificationRule:
    """Substring keywords and regex patterns that select one task type"""

    task_type: TaskType
    keywords: tuple[str, ...] = ()
    patterns: tuple[str, ...] = ()

    def matches(self, lowered: str) -> bool:
        if any(keyword in lowered for keyword in self.keywords):
            return True
        return any(re.search(pattern, lowered) for pattern in self.patterns)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClassificationRule":
        label = data.get("taskType", data.get("task_type"))
        task_type = TaskType.parse(label)
        if task_type is TaskType.GENERAL and label != TaskType.GENERAL.value:
            raise ValueError(f"Unknown task type in classification rule: {label!r}")
        patterns = tuple(data.get("patterns", ()))
        for pattern in patterns:
            re.compile(pattern)
        return cls(
            task_type=task_type,
            keywords=tuple(str(k).lower() for k in data.get("keywords", ())),
            patterns=patterns,
        )


DEFAULT_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        TaskType.CODE,
        keywords=("code", "function", "programming", "debug", "algorithm"),
        patterns=(r"```[a-z]*\n",),
    ),
    ClassificationRule(
        TaskType.RESEARCH,
        keywords=(
            "research",
            "find information",
            "search for",
            "look up",
            "what is",
            "tell me about",
        ),
    ),
    ClassificationRule(
        TaskType.REASONING,
        keywords=("solve", "calculate", "math", "logic", "prove", "explain why"),
    ),
    ClassificationRule(
        TaskType.CREATIVE,
        keywords=("write a", "create a", "generate a", "design", "story", "poem"),
    ),
    ClassificationRule(
        TaskType.DATA_ANALYSIS,
        keywords=("analyze", "data", "trends", "statistics", "graph", "chart"),
    ),
    ClassificationRule(
        TaskType.DOMAIN_EXPERTISE,
        keywords=("industry", "sector", "specialized", "expert", "professional"),
    ),
)


def rules_from_config(raw_rules: Sequence[dict[str, Any]]) -> tuple[ClassificationRule, ...]:
    """Parse configured rules, keeping the defaults if any entry is invalid"""
    if not raw_rules:
        return DEFAULT_RULES
    try:
        return tuple(ClassificationRule.from_dict(r) for r in raw_rules)
    except (ValueError, TypeError, re.error) as e:
        logger.error(f"Invalid classificationRules in config, using defaults: {e}")
        return DEFAULT_RULES


class LearnedClassifier(ABC):
    """Capability interface for a model-backed task classifier"""

    @property
    @abstractmethod
    def is_initialized(self) -> bool:
        pass

    async def initialize(self) -> None:
        return None

    @abstractmethod
    async def classify(
        self, user_input: str, context: Sequence[ConversationTurn]
    ) -> ClassificationResult:
        pass


def detect_domain(user_input: str, task_type: TaskType) -> str:
    if ARABIC_SCRIPT.search(user_input):
        return "arabic"
    if task_type in (TaskType.GENERAL, TaskType.DATA_ANALYSIS) and VISUAL_HINTS.search(
        user_input
    ):
        return "visual"
    return TASK_DOMAINS.get(task_type, "default")


class TaskClassifier:
    """Learned-then-rules task classifier"""

    def __init__(
        self,
        rules: Sequence[ClassificationRule] | None = None,
        learned: LearnedClassifier | None = None,
        confidence_threshold: float = 0.7,
        timeout: float = 5.0,
    ):
        self.rules = tuple(rules) if rules else DEFAULT_RULES
        self.learned = learned
        self.confidence_threshold = confidence_threshold
        self.timeout = timeout

    async def initialize(self) -> None:
        """Initialize the learned stage; failures leave rules-only mode"""
        if self.learned is None:
            return
        try:
            await self.learned.initialize()
            logger.info("Learned task classifier initialized")
        except Exception as e:
            logger.error(f"Failed to initialize learned classifier: {e}")

    def classify_by_rules(self, user_input: str) -> TaskType:
        lowered = user_input.lower()
        for rule in self.rules:
            if rule.matches(lowered):
                return rule.task_type
        return TaskType.GENERAL

    async def _classify_learned(
        self, user_input: str, context: Sequence[ConversationTurn]
    ) -> ClassificationResult | None:
        if self.learned is None or not self.learned.is_initialized:
            return None
        try:
            result = await asyncio.wait_for(
                self.learned.classify(user_input, context), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            error = ClassificationError(f"Learned classifier timed out after {self.timeout}s")
            logger.warning(f"{type(error).__name__}: {error}")
            return None
        except Exception as e:
            error = ClassificationError(f"Learned classifier failed: {e}")
            logger.warning(f"{type(error).__name__}: {error}")
            return None

        logger.debug(
            f"Learned classification: {TaskType.parse(result.task_type).value} "
            f"({result.confidence:.2f})"
        )
        if result.confidence > self.confidence_threshold:
            return result
        return None

    async def classify(
        self,
        user_input: str,
        context: Sequence[ConversationTurn] = (),
        options: RequestOptions | None = None,
    ) -> ClassificationResult:
        try:
            if options is not None and options.task_type:
                task_type = TaskType.parse(options.task_type)
                return ClassificationResult(
                    task_type, 1.0, "explicit", detect_domain(user_input, task_type)
                )

            learned = await self._classify_learned(user_input, context)
            if learned is not None:
                task_type = TaskType.parse(learned.task_type)
                return ClassificationResult(
                    task_type,
                    learned.confidence,
                    "learned",
                    detect_domain(user_input, task_type),
                )

            task_type = self.classify_by_rules(user_input)
            source = "default" if task_type is TaskType.GENERAL else "rules"
            confidence = 0.5 if task_type is TaskType.GENERAL else 0.8
            return ClassificationResult(
                task_type, confidence, source, detect_domain(user_input, task_type)
            )
        except Exception as e:
            logger.error(
                f"Classification failed for "
                f"'{InputValidator.sanitize_for_logging(user_input)}': {e}"
            )
            return ClassificationResult(TaskType.GENERAL, 0.0, "default", "default")

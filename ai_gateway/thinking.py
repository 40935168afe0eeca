"""
Thinking Prompt Builder
=======================

Adds task-specific chain-of-thought instructions to a provider prompt and
recovers the reasoning phases from the answer afterwards.

enhance() never mutates its input and is idempotent: applying the same
ThinkingSpec twice yields the same prompt as applying it once.
"""

import copy
import html
import logging
import re
from typing import Any

from .models import (
    EnhancedPrompt,
    PromptSchema,
    ReasoningStep,
    RequestOptions,
    ResponseFormat,
    TaskType,
    ThinkingSpec,
)

logger = logging.getLogger(__name__)

REASONING_TEMPLATES = {
    ReasoningStep.PROBLEM_UNDERSTANDING: "Let me understand the problem: {problem}",
    ReasoningStep.INFORMATION_GATHERING: "Relevant information I need to consider: {information}",
    ReasoningStep.APPROACH_SELECTION: "I'll approach this by: {approach}",
    ReasoningStep.STEP_BY_STEP_REASONING: "Step {step_number}: {step_content}",
    ReasoningStep.VERIFICATION: "Let me verify my solution: {verification}",
    ReasoningStep.CONCLUSION: "Therefore, the answer is: {conclusion}",
}

_PU = ReasoningStep.PROBLEM_UNDERSTANDING
_IG = ReasoningStep.INFORMATION_GATHERING
_AS = ReasoningStep.APPROACH_SELECTION
_SSR = ReasoningStep.STEP_BY_STEP_REASONING
_V = ReasoningStep.VERIFICATION
_C = ReasoningStep.CONCLUSION

TASK_REASONING_STEPS: dict[TaskType, tuple[ReasoningStep, ...]] = {
    TaskType.RESEARCH: (_PU, _IG, _AS, _SSR, _C),
    TaskType.REASONING: (_PU, _AS, _SSR, _V, _C),
    TaskType.CODE: (_PU, _AS, _SSR, _V, _C),
    TaskType.CREATIVE: (_PU, _AS, _SSR, _C),
    TaskType.DATA_ANALYSIS: (_PU, _IG, _AS, _SSR, _V, _C),
    TaskType.DOMAIN_EXPERTISE: (_PU, _IG, _AS, _SSR, _C),
    TaskType.GENERAL: (_PU, _AS, _SSR, _C),
}

BASE_SYSTEM_PROMPT = (
    "You are an advanced AI assistant that shows explicit reasoning and thinking processes."
)

TASK_SYSTEM_PROMPTS = {
    TaskType.RESEARCH: (
        "For this research task, show your information gathering process, evaluate "
        "sources, and synthesize findings. Cite sources when available."
    ),
    TaskType.REASONING: (
        "For this reasoning task, break down the problem, show each logical step, "
        "verify your work, and explain your conclusion."
    ),
    TaskType.CODE: (
        "For this coding task, analyze the requirements, plan your approach, "
        "implement the solution step by step, and test your code."
    ),
    TaskType.CREATIVE: (
        "For this creative task, explain your inspiration, outline your approach, "
        "and show how you developed the creative elements."
    ),
    TaskType.DATA_ANALYSIS: (
        "For this data analysis task, describe your methodology, show your analysis "
        "process, verify your findings, and present conclusions."
    ),
    TaskType.DOMAIN_EXPERTISE: (
        "For this domain-specific task, apply specialized knowledge, explain "
        "industry-specific concepts, and provide expert insights."
    ),
    TaskType.GENERAL: (
        "Break down your thinking process into clear steps, showing how you arrive "
        "at your answer."
    ),
}

THINKING_STYLE_PROMPT = (
    "Always make your reasoning explicit using a step-by-step approach: understand "
    "the problem, gather relevant information, select an approach, work through the "
    "solution methodically, verify your answer when appropriate, and give a clear "
    "conclusion."
)

INSTRUCTIONS_HEADER = "Show your thinking using these steps, each under its bold heading:"

_PLACEHOLDER = re.compile(r"\{[a-z_]+\}")


def step_marker(step: ReasoningStep) -> str:
    return f"**{step.label}:**"


class ThinkingPromptBuilder:
    """Builds and applies reasoning instructions per task type"""

    def build_prompt(
        self,
        task_type: TaskType | str,
        user_input: str = "",
        options: RequestOptions | None = None,
    ) -> ThinkingSpec:
        task_type = TaskType.parse(task_type)
        steps = TASK_REASONING_STEPS.get(task_type, TASK_REASONING_STEPS[TaskType.GENERAL])
        system_prompt = (
            f"{BASE_SYSTEM_PROMPT} {TASK_SYSTEM_PROMPTS[task_type]} {THINKING_STYLE_PROMPT}"
        )
        return ThinkingSpec(
            task_type=task_type,
            system_prompt=system_prompt,
            reasoning_steps=steps,
            templates={step.value: REASONING_TEMPLATES[step] for step in steps},
        )

    def generate_thinking_instructions(self, spec: ThinkingSpec) -> str:
        lines = [INSTRUCTIONS_HEADER]
        for number, step in enumerate(spec.reasoning_steps, start=1):
            template = spec.templates.get(step.value, REASONING_TEMPLATES[step])
            lines.append(f"{number}. {step_marker(step)} {_PLACEHOLDER.sub('...', template)}")
        return "\n".join(lines)

    @staticmethod
    def _get_text(turn: dict[str, Any], schema: PromptSchema) -> str:
        if schema is PromptSchema.CONTENTS:
            parts = turn.get("parts") or []
            return str(parts[0].get("text", "")) if parts else ""
        return str(turn.get("content", ""))

    @staticmethod
    def _set_text(turn: dict[str, Any], schema: PromptSchema, text: str) -> None:
        if schema is PromptSchema.CONTENTS:
            parts = turn.setdefault("parts", [])
            if parts:
                parts[0]["text"] = text
            else:
                parts.append({"text": text})
        else:
            turn["content"] = text

    @staticmethod
    def _new_turn(role: str, schema: PromptSchema, text: str) -> dict[str, Any]:
        if schema is PromptSchema.CONTENTS:
            return {"role": role, "parts": [{"text": text}]}
        return {"role": role, "content": text}

    def enhance(
        self, base_prompt: EnhancedPrompt, spec: ThinkingSpec, platform: str | None = None
    ) -> EnhancedPrompt:
        """Return a new prompt carrying the spec's system and phase instructions"""
        schema = base_prompt.schema
        turns = copy.deepcopy(list(base_prompt.turns))

        system_index = next(
            (i for i, turn in enumerate(turns) if turn.get("role") == "system"), None
        )
        if system_index is None:
            turns.insert(0, self._new_turn("system", schema, spec.system_prompt))
        else:
            existing = self._get_text(turns[system_index], schema)
            if not existing.startswith(spec.system_prompt):
                combined = f"{spec.system_prompt} {existing}" if existing else spec.system_prompt
                self._set_text(turns[system_index], schema, combined)

        instructions = self.generate_thinking_instructions(spec)
        user_index = next(
            (i for i in range(len(turns) - 1, -1, -1) if turns[i].get("role") == "user"), None
        )
        if user_index is None:
            turns.append(self._new_turn("user", schema, instructions))
        else:
            existing = self._get_text(turns[user_index], schema)
            if not existing.endswith(instructions):
                combined = f"{existing}\n\n{instructions}" if existing else instructions
                self._set_text(turns[user_index], schema, combined)

        if platform:
            logger.debug(f"Enhanced {platform} prompt for {spec.task_type.value}")
        return EnhancedPrompt(
            schema=schema, turns=tuple(turns), extras=copy.deepcopy(base_prompt.extras)
        )

    def extract_thinking_process(
        self, text: str, spec: ThinkingSpec | None = None
    ) -> list[dict[str, str]]:
        """Split a response into its reasoning phases, in order of appearance"""
        if not text:
            return []
        steps = spec.reasoning_steps if spec else tuple(ReasoningStep)

        found: list[tuple[int, int, ReasoningStep]] = []
        for step in steps:
            match = re.search(re.escape(step_marker(step)), text)
            if match:
                found.append((match.start(), match.end(), step))
        found.sort(key=lambda item: item[0])

        process = []
        for index, (_, end, step) in enumerate(found):
            stop = found[index + 1][0] if index + 1 < len(found) else len(text)
            content = text[end:stop].strip()
            # Drop trailing list numbering left behind by "2. **Next:**"
            content = re.sub(r"\n?\s*\d+\.\s*$", "", content).strip()
            process.append({"step": step.value, "content": content})
        return process

    def format_thinking_process(
        self, process: list[dict[str, str]] | None, fmt: ResponseFormat | str = "markdown"
    ) -> str:
        if not process:
            return ""
        fmt = ResponseFormat.parse(fmt)
        labels = []
        for item in process:
            try:
                label = ReasoningStep(item["step"]).label
            except ValueError:
                label = str(item["step"]).replace("_", " ").title()
            labels.append((label, item.get("content", "")))

        if fmt is ResponseFormat.HTML:
            body = "".join(
                f"<p><strong>{html.escape(label)}:</strong> {html.escape(content)}</p>"
                for label, content in labels
            )
            return f'<div class="thinking-process"><h3>Thinking Process</h3>{body}</div>'

        if fmt is ResponseFormat.TEXT:
            return "Thinking Process:\n" + "\n".join(
                f"{label}: {content}" for label, content in labels
            )

        return "### Thinking Process\n\n" + "\n\n".join(
            f"**{label}:** {content}" for label, content in labels
        )

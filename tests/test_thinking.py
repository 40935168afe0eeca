"""
Tests for the Thinking Prompt Builder
=====================================

Run with: pytest tests/ -v
"""

import copy
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from ai_gateway.models import EnhancedPrompt, PromptSchema, ReasoningStep, TaskType
from ai_gateway.thinking import INSTRUCTIONS_HEADER, ThinkingPromptBuilder


@pytest.fixture
def builder():
    return ThinkingPromptBuilder()


def messages_prompt(*turns):
    return EnhancedPrompt(
        schema=PromptSchema.MESSAGES,
        turns=tuple({"role": role, "content": text} for role, text in turns),
    )


class TestBuildPrompt:
    """Test per-task thinking specs"""

    def test_code_includes_verification(self, builder):
        """Code tasks verify their solution"""
        spec = builder.build_prompt(TaskType.CODE)
        assert ReasoningStep.VERIFICATION in spec.reasoning_steps
        assert spec.reasoning_steps[0] is ReasoningStep.PROBLEM_UNDERSTANDING
        assert spec.reasoning_steps[-1] is ReasoningStep.CONCLUSION

    def test_creative_skips_verification(self, builder):
        """Creative tasks have no verification phase"""
        spec = builder.build_prompt("creative")
        assert ReasoningStep.VERIFICATION not in spec.reasoning_steps

    def test_research_gathers_information(self, builder):
        """Research tasks gather information and ask for citations"""
        spec = builder.build_prompt(TaskType.RESEARCH)
        assert ReasoningStep.INFORMATION_GATHERING in spec.reasoning_steps
        assert "Cite sources" in spec.system_prompt

    def test_unknown_task_is_general(self, builder):
        """Unknown labels get the general spec"""
        assert builder.build_prompt("nonsense").task_type is TaskType.GENERAL

    def test_instructions_list_every_step(self, builder):
        """Generated instructions name each phase in order"""
        spec = builder.build_prompt(TaskType.CODE)
        instructions = builder.generate_thinking_instructions(spec)

        assert instructions.startswith(INSTRUCTIONS_HEADER)
        positions = [instructions.index(f"**{step.label}:**") for step in spec.reasoning_steps]
        assert positions == sorted(positions)
        assert "{" not in instructions


class TestEnhance:
    """Test prompt enhancement"""

    def test_prefixes_existing_system_turn(self, builder):
        """The thinking system prompt is prepended to the persona"""
        spec = builder.build_prompt(TaskType.CODE)
        prompt = messages_prompt(("system", "You are a coder."), ("user", "Sort a list"))

        enhanced = builder.enhance(prompt, spec, "copilot")

        assert enhanced.turns[0]["content"] == f"{spec.system_prompt} You are a coder."
        assert enhanced.turns[-1]["content"].startswith("Sort a list\n\n")
        assert INSTRUCTIONS_HEADER in enhanced.turns[-1]["content"]

    def test_adds_missing_system_turn(self, builder):
        """A prompt without a system turn gets one at the front"""
        spec = builder.build_prompt(TaskType.GENERAL)

        enhanced = builder.enhance(messages_prompt(("user", "hi")), spec)

        assert enhanced.turns[0] == {"role": "system", "content": spec.system_prompt}

    def test_adds_missing_user_turn(self, builder):
        """A prompt without a user turn gets the instructions as one"""
        spec = builder.build_prompt(TaskType.GENERAL)

        enhanced = builder.enhance(messages_prompt(("system", "persona")), spec)

        assert enhanced.turns[-1]["role"] == "user"
        assert enhanced.turns[-1]["content"] == builder.generate_thinking_instructions(spec)

    def test_only_last_user_turn_changed(self, builder):
        """Earlier user turns in the history are untouched"""
        spec = builder.build_prompt(TaskType.CODE)
        prompt = messages_prompt(("user", "first"), ("assistant", "reply"), ("user", "second"))

        enhanced = builder.enhance(prompt, spec)

        assert enhanced.turns[1]["content"] == "first"
        assert enhanced.turns[-1]["content"].startswith("second")

    def test_does_not_mutate_input(self, builder):
        """The base prompt is left exactly as it was"""
        spec = builder.build_prompt(TaskType.CODE)
        prompt = messages_prompt(("system", "persona"), ("user", "question"))
        snapshot = copy.deepcopy(prompt.turns)

        builder.enhance(prompt, spec)

        assert prompt.turns == snapshot

    @pytest.mark.parametrize("task_type", list(TaskType))
    def test_idempotent(self, builder, task_type):
        """Enhancing twice equals enhancing once"""
        spec = builder.build_prompt(task_type)
        prompt = messages_prompt(("system", "persona"), ("user", "question"))

        once = builder.enhance(prompt, spec)
        twice = builder.enhance(once, spec)

        assert twice == once

    def test_contents_schema(self, builder):
        """Gemini-style prompts are enhanced in their own shape"""
        spec = builder.build_prompt(TaskType.REASONING)
        prompt = EnhancedPrompt(
            schema=PromptSchema.CONTENTS,
            turns=(
                {"role": "user", "parts": [{"text": "earlier"}]},
                {"role": "model", "parts": [{"text": "reply"}]},
                {"role": "user", "parts": [{"text": "prove it"}]},
            ),
        )

        enhanced = builder.enhance(prompt, spec)

        assert enhanced.schema is PromptSchema.CONTENTS
        assert enhanced.turns[0] == {"role": "system", "parts": [{"text": spec.system_prompt}]}
        assert enhanced.turns[-1]["parts"][0]["text"].startswith("prove it\n\n")
        assert builder.enhance(enhanced, spec) == enhanced

    def test_extras_preserved(self, builder):
        """Platform extras are carried over as a copy"""
        spec = builder.build_prompt(TaskType.RESEARCH)
        prompt = EnhancedPrompt(
            schema=PromptSchema.MESSAGES,
            turns=({"role": "user", "content": "q"},),
            extras={"search": True},
        )

        enhanced = builder.enhance(prompt, spec)

        assert enhanced.extras == {"search": True}
        assert enhanced.extras is not prompt.extras


class TestExtractThinking:
    """Test recovering reasoning phases from responses"""

    def test_extracts_steps_in_order(self, builder):
        """Phases come back in order of appearance"""
        text = (
            "1. **Problem Understanding:** Need to sort numbers.\n"
            "2. **Approach Selection:** Use merge sort.\n"
            "3. **Conclusion:** Sorted output."
        )

        process = builder.extract_thinking_process(text, builder.build_prompt(TaskType.CODE))

        assert process == [
            {"step": "problem_understanding", "content": "Need to sort numbers."},
            {"step": "approach_selection", "content": "Use merge sort."},
            {"step": "conclusion", "content": "Sorted output."},
        ]

    def test_no_markers(self, builder):
        """Plain answers have no thinking process"""
        assert builder.extract_thinking_process("Just an answer.") == []
        assert builder.extract_thinking_process("") == []


class TestFormatThinking:
    """Test rendering extracted phases"""

    PROCESS = [
        {"step": "problem_understanding", "content": "x < y"},
        {"step": "conclusion", "content": "done"},
    ]

    def test_markdown(self, builder):
        """Markdown uses a heading and bold labels"""
        rendered = builder.format_thinking_process(self.PROCESS, "markdown")
        assert rendered.startswith("### Thinking Process")
        assert "**Problem Understanding:** x < y" in rendered

    def test_html_escapes_content(self, builder):
        """HTML output escapes phase content"""
        rendered = builder.format_thinking_process(self.PROCESS, "html")
        assert '<div class="thinking-process">' in rendered
        assert "x &lt; y" in rendered

    def test_text(self, builder):
        """Plain text lists label: content lines"""
        rendered = builder.format_thinking_process(self.PROCESS, "text")
        assert rendered == "Thinking Process:\nProblem Understanding: x < y\nConclusion: done"

    def test_empty(self, builder):
        """Nothing to render yields an empty string"""
        assert builder.format_thinking_process([], "markdown") == ""

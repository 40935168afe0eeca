"""
Tests for the Response Synthesizer
==================================

Run with: pytest tests/ -v
"""

import json
import os
import sys
from dataclasses import replace

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from ai_gateway import extractors
from ai_gateway.config import GatewayConfig
from ai_gateway.errors import SynthesisError
from ai_gateway.models import ProcessedResponse, RequestOptions, TaskType
from ai_gateway.registry import default_registry
from ai_gateway.synthesizer import (
    MERGE_ERROR_MESSAGE,
    MERGED_PLATFORM,
    RequestInfo,
    ResponseSynthesizer,
)
from ai_gateway.thinking import ThinkingPromptBuilder
from tests.fakes import make_registry


@pytest.fixture
def synthesizer():
    return ResponseSynthesizer(default_registry(GatewayConfig()))


def chat(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def response(content, platform="chatgpt", task_type="general", error=None):
    return ProcessedResponse(
        content=content,
        platform=platform,
        task_type=task_type,
        timestamp="2026-01-01T00:00:00+00:00",
        user_id="user-1",
        error=error,
    )


class TestExtractors:
    """Test per-vendor content extraction"""

    def test_chat_completion(self):
        """OpenAI-style payloads yield the first choice's content"""
        assert extractors.extract_chat_completion(chat("hello")) == "hello"

    def test_chat_completion_mismatch(self):
        """Unexpected shapes raise SynthesisError"""
        with pytest.raises(SynthesisError):
            extractors.extract_chat_completion({"unexpected": True})
        with pytest.raises(SynthesisError):
            extractors.extract_chat_completion({"choices": [{"message": {"content": None}}]})

    def test_perplexity_answer_with_citations(self):
        """Perplexity answers get a numbered source list"""
        raw = {
            "answer": {
                "text": "Paris.",
                "citations": [{"title": "Wiki", "url": "https://en.wikipedia.org/wiki/Paris"}],
            }
        }
        assert extractors.extract_perplexity(raw) == (
            "Paris.\n\n**Sources:**\n1. [Wiki](https://en.wikipedia.org/wiki/Paris)"
        )

    def test_perplexity_chat_shape_with_url_citations(self):
        """Chat-completion shaped Perplexity payloads keep their citation URLs"""
        raw = chat("Paris.")
        raw["citations"] = ["https://example.com/a"]
        assert extractors.extract_perplexity(raw).endswith("1. https://example.com/a")

    def test_perplexity_citations_must_be_a_list(self):
        """Non-list citations are a shape mismatch"""
        with pytest.raises(SynthesisError):
            extractors.extract_perplexity({"answer": {"text": "x", "citations": 5}})

    def test_gemini_parts_joined(self):
        """Gemini text parts are concatenated"""
        raw = {"candidates": [{"content": {"parts": [{"text": "Hel"}, {"text": "lo"}]}}]}
        assert extractors.extract_gemini(raw) == "Hello"

    def test_grok3_output(self):
        """Grok3 output.content is preferred"""
        assert extractors.extract_grok3({"output": {"content": "insight"}}) == "insight"
        assert extractors.extract_grok3(chat("fallback")) == "fallback"

    def test_vertix_and_local(self):
        """Vertix uses content, local uses output"""
        assert extractors.extract_vertix({"content": "expert"}) == "expert"
        assert extractors.extract_local({"output": "local answer"}) == "local answer"


class TestProcess:
    """Test turning raw payloads into ProcessedResponses"""

    def test_mismatched_payload_becomes_raw_json(self, synthesizer):
        """Unparseable payloads degrade to their JSON text without failing"""
        raw = {"weird": ["shape"]}

        result = synthesizer.process(raw, RequestInfo("gemini", "general", "user-1"))

        assert result.success is True
        assert json.loads(result.content) == raw

    def test_unknown_platform_does_not_raise(self, synthesizer):
        """Unregistered platforms also degrade to raw text"""
        result = synthesizer.process(chat("x"), RequestInfo("nonexistent", "general", "user-1"))
        assert result.success is True

    def test_malformed_citations_degrade_to_raw_json(self, synthesizer):
        """A bad citations field keeps the payload instead of failing"""
        raw = {"answer": {"text": "x", "citations": 5}}

        assert json.loads(synthesizer.extract(raw, "perplexity")) == raw

        result = synthesizer.process(raw, RequestInfo("perplexity", "research", "user-1"))
        assert result.success is True
        assert json.loads(result.content) == raw

    def test_extractor_type_error_degrades_to_raw_json(self):
        """Any structural error inside an extractor falls back to the raw payload"""

        def broken(raw):
            return len(raw["answer"])

        registry = make_registry()
        registry.register(replace(registry.get("vertix"), extractor=broken))
        synthesizer = ResponseSynthesizer(registry)

        assert json.loads(synthesizer.extract({"answer": None}, "vertix")) == {"answer": None}

    def test_usage_reported(self, synthesizer):
        """Usage is copied when present and 'unknown' otherwise"""
        raw = chat("hi")
        raw["usage"] = {"total_tokens": 5}

        with_usage = synthesizer.process(raw, RequestInfo("chatgpt", "general", "user-1"))
        without_usage = synthesizer.process(chat("hi"), RequestInfo("chatgpt", "general", "user-1"))

        assert with_usage.usage == {"total_tokens": 5}
        assert without_usage.usage == "unknown"

    def test_thinking_process_extracted(self, synthesizer):
        """Reasoning phases are pulled out when a spec was used"""
        spec = ThinkingPromptBuilder().build_prompt(TaskType.CODE)
        raw = chat("**Problem Understanding:** reverse it\n**Conclusion:** s[::-1]")

        result = synthesizer.process(raw, RequestInfo("copilot", "code", "user-1", spec))

        assert [p["step"] for p in result.thinking_process] == [
            "problem_understanding",
            "conclusion",
        ]
        assert "### Thinking Process" in result.formatted_response

    def test_thinking_extraction_disabled(self, synthesizer):
        """extract_thinking=False skips phase extraction"""
        spec = ThinkingPromptBuilder().build_prompt(TaskType.CODE)
        raw = chat("**Conclusion:** done")

        result = synthesizer.process(
            raw,
            RequestInfo("copilot", "code", "user-1", spec),
            RequestOptions(extract_thinking=False),
        )

        assert result.thinking_process is None


class TestFormatResponse:
    """Test output formats"""

    def test_markdown_attribution(self, synthesizer):
        """Markdown appends the platform attribution"""
        rendered = synthesizer.format_response("Answer", None, "markdown", platform="gemini")
        assert rendered == "Answer\n\n*Response powered by Gemini*"

    def test_attribution_disabled(self, synthesizer):
        """includeAttribution=false leaves the content alone"""
        rendered = synthesizer.format_response(
            "Answer", None, "markdown", RequestOptions(include_attribution=False), "gemini"
        )
        assert rendered == "Answer"

    def test_thinking_before_content(self, synthesizer):
        """thinkingPosition=before puts the trace first"""
        process = [{"step": "conclusion", "content": "yes"}]
        rendered = synthesizer.format_response(
            "Answer",
            process,
            "markdown",
            RequestOptions(thinking_position="before", include_attribution=False),
        )
        assert rendered.index("### Thinking Process") < rendered.index("Answer")

    def test_json_format(self, synthesizer):
        """JSON output parses and carries content and timestamp"""
        rendered = synthesizer.format_response("Answer", None, "json", platform="chatgpt")

        payload = json.loads(rendered)
        assert payload["content"] == "Answer"
        assert "timestamp" in payload
        assert payload["platform"] == "chatgpt"

    def test_text_format(self, synthesizer):
        """Text output is content plus attribution"""
        rendered = synthesizer.format_response("Answer", None, "text", platform="copilot")
        assert rendered == "Answer\n\n*Response powered by GitHub Copilot*"

    def test_html_escapes_raw_markup(self, synthesizer):
        """Raw HTML in answers is escaped"""
        rendered = synthesizer.format_response(
            "<script>alert(1)</script>", None, "html", platform="chatgpt"
        )
        assert "<script>" not in rendered
        assert "&lt;script&gt;" in rendered
        assert rendered.startswith('<div class="gateway-response">')
        assert '<div class="attribution">' in rendered

    def test_markdown_to_html(self, synthesizer):
        """Headers, emphasis, lists, code and links are rendered"""
        markdown = (
            "# Title\n\n"
            "Some **bold** and *italic* and `code`.\n\n"
            "- one\n- two\n\n"
            "```python\nprint('<hi>')\n```\n\n"
            "[docs](https://example.com)"
        )

        rendered = synthesizer.markdown_to_html(markdown)

        assert "<h1>Title</h1>" in rendered
        assert "<strong>bold</strong>" in rendered
        assert "<em>italic</em>" in rendered
        assert "<code>code</code>" in rendered
        assert "<ul><li>one</li><li>two</li></ul>" in rendered
        assert '<pre><code class="language-python">print(&#x27;&lt;hi&gt;&#x27;)\n</code></pre>' in rendered
        assert '<a href="https://example.com">docs</a>' in rendered

    def test_unsafe_links_not_rendered(self, synthesizer):
        """javascript: links lose their href"""
        rendered = synthesizer.markdown_to_html("[click](javascript:alert(1))")
        assert "href" not in rendered


class TestMerge:
    """Test multi-platform merging"""

    def test_single_response_identity(self, synthesizer):
        """Merging one response returns it unchanged"""
        only = response("solo")
        assert synthesizer.merge([only]) is only

    def test_empty_returns_error(self, synthesizer):
        """Nothing to merge yields the canned merge error"""
        merged = synthesizer.merge([])
        assert merged.success is False
        assert merged.content == MERGE_ERROR_MESSAGE

    def test_sequential_keeps_order(self, synthesizer):
        """Sequential merge labels each platform in input order"""
        responses = [
            response("first", "chatgpt"),
            response("second", "gemini"),
            response("third", "deepseek"),
        ]

        merged = synthesizer.merge(responses, RequestOptions(merge_strategy="sequential"))

        labels = ["### ChatGPT", "### Gemini", "### DeepSeek"]
        positions = [merged.content.index(label) for label in labels]
        assert positions == sorted(positions)
        assert merged.platform == MERGED_PLATFORM
        assert [s["platform"] for s in merged.sources] == ["chatgpt", "gemini", "deepseek"]
        assert "*Response combined from ChatGPT, Gemini, DeepSeek*" in merged.formatted_response

    def test_sequential_without_headers(self, synthesizer):
        """Without section headers answers are separated by rules"""
        merged = synthesizer.merge(
            [response("a"), response("b", "gemini")],
            RequestOptions(merge_strategy="sequential", include_section_headers=False),
        )
        assert merged.content == "a\n\n---\n\nb"

    def test_best_first_orders_by_length(self, synthesizer):
        """Longer answers lead in best-first merges"""
        merged = synthesizer.merge(
            [response("short", "chatgpt"), response("a much longer answer", "gemini")],
            RequestOptions(merge_strategy="best_first"),
        )
        assert merged.content.index("### Gemini") < merged.content.index("### ChatGPT")

    def test_task_specific_groups(self, synthesizer):
        """Task-specific merges group answers under task headings"""
        merged = synthesizer.merge(
            [
                response("code answer", "copilot", "code"),
                response("research answer", "perplexity", "research"),
            ]
        )
        assert "## Code" in merged.content
        assert "## Research" in merged.content

    def test_unknown_strategy_is_sequential(self, synthesizer):
        """Unrecognized strategies degrade to sequential"""
        responses = [response("a"), response("b", "gemini")]

        unknown = synthesizer.merge(responses, RequestOptions(merge_strategy="random"))
        sequential = synthesizer.merge(responses, RequestOptions(merge_strategy="sequential"))

        assert unknown.content == sequential.content

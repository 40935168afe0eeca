"""
Response Synthesizer
====================

Turns raw provider payloads into ProcessedResponses:
- content extraction through the platform registry's extractors
- optional reasoning-trace extraction
- rendering to text, markdown, html or json
- merging answers from several platforms into one
"""

import html
import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from .errors import SynthesisError, UnknownPlatformError
from .extractors import stringify
from .models import (
    MergeStrategy,
    ProcessedResponse,
    RequestOptions,
    ResponseFormat,
    TaskType,
    ThinkingSpec,
    utc_now_iso,
)
from .registry import PlatformRegistry
from .thinking import ThinkingPromptBuilder

logger = logging.getLogger(__name__)

PROCESSING_ERROR_MESSAGE = "I encountered an issue processing the response. Please try again."
MERGE_ERROR_MESSAGE = "I encountered an issue merging the responses. Please try again."

MERGED_PLATFORM = "merged"

_SAFE_URL = re.compile(r"^(https?://|mailto:|/|#)", re.IGNORECASE)


@dataclass(frozen=True)
class RequestInfo:
    """What the synthesizer needs to know about the request that produced a payload"""

    platform: str
    task_type: str
    user_id: str
    thinking_spec: ThinkingSpec | None = None


class ResponseSynthesizer:
    """Extraction, formatting and merging of provider responses"""

    def __init__(
        self,
        registry: PlatformRegistry | None = None,
        thinking: ThinkingPromptBuilder | None = None,
    ):
        self.registry = registry or PlatformRegistry()
        self.thinking = thinking or ThinkingPromptBuilder()

    # Extraction

    def extract(self, raw: Any, platform: str) -> str:
        """Assistant text from a raw payload; never raises"""
        if isinstance(raw, str):
            return raw
        try:
            return self.registry.get(platform).extractor(raw)
        except (
            SynthesisError,
            UnknownPlatformError,
            TypeError,
            KeyError,
            AttributeError,
            ValueError,
        ) as e:
            logger.warning(f"Could not extract {platform} content, returning raw payload: {e}")
            return stringify(raw)

    @staticmethod
    def extract_usage(raw: Any) -> dict[str, Any] | str:
        if isinstance(raw, dict):
            usage = raw.get("usage") or raw.get("usage_metadata")
            if isinstance(usage, dict) and usage:
                return usage
        return "unknown"

    def process(
        self,
        raw: Any,
        request_info: RequestInfo,
        options: RequestOptions | None = None,
    ) -> ProcessedResponse:
        options = options or RequestOptions()
        fmt = ResponseFormat.parse(options.response_format)
        try:
            content = self.extract(raw, request_info.platform)
            thinking_process = None
            if options.extract_thinking and request_info.thinking_spec is not None:
                thinking_process = (
                    self.thinking.extract_thinking_process(content, request_info.thinking_spec)
                    or None
                )
            return ProcessedResponse(
                content=content,
                platform=request_info.platform,
                task_type=request_info.task_type,
                timestamp=utc_now_iso(),
                user_id=request_info.user_id,
                format=fmt.value,
                formatted_response=self.format_response(
                    content, thinking_process, fmt, options, platform=request_info.platform
                ),
                thinking_process=thinking_process,
                usage=self.extract_usage(raw),
            )
        except Exception as e:
            logger.error(f"Error processing {request_info.platform} response: {e}")
            return ProcessedResponse(
                content=PROCESSING_ERROR_MESSAGE,
                platform=request_info.platform,
                task_type=request_info.task_type,
                timestamp=utc_now_iso(),
                user_id=request_info.user_id,
                format=fmt.value,
                formatted_response=PROCESSING_ERROR_MESSAGE,
                error=str(e),
            )

    # Formatting

    def attribution(self, platform: str | None, sources: list[dict[str, str]] | None = None) -> str:
        if platform == MERGED_PLATFORM and sources:
            names = ", ".join(self.registry.display_name(s["platform"]) for s in sources)
            return f"*Response combined from {names}*"
        if platform and self.registry.is_registered(platform):
            return self.registry.get(platform).attribution
        return ""

    def format_response(
        self,
        content: str,
        thinking_process: list[dict[str, str]] | None,
        fmt: ResponseFormat | str,
        options: RequestOptions | None = None,
        platform: str | None = None,
        sources: list[dict[str, str]] | None = None,
    ) -> str:
        options = options or RequestOptions()
        fmt = ResponseFormat.parse(fmt)
        attribution = self.attribution(platform, sources) if options.include_attribution else ""
        thinking = ""
        if thinking_process and options.include_thinking:
            thinking = self.thinking.format_thinking_process(thinking_process, fmt)
        before = options.thinking_position == "before"

        if fmt is ResponseFormat.MARKDOWN:
            sections = [thinking if before else "", content, "" if before else thinking, attribution]
            return "\n\n".join(s for s in sections if s)

        if fmt is ResponseFormat.HTML:
            parts = ['<div class="gateway-response">']
            if thinking and before:
                parts.append(thinking)
            parts.append(f'<div class="response-content">{self.markdown_to_html(content)}</div>')
            if thinking and not before:
                parts.append(thinking)
            if attribution:
                parts.append(
                    f'<div class="attribution">{self._inline(html.escape(attribution))}</div>'
                )
            parts.append("</div>")
            return "".join(parts)

        if fmt is ResponseFormat.JSON:
            payload: dict[str, Any] = {"content": content, "timestamp": utc_now_iso()}
            if thinking_process:
                payload["thinking_process"] = thinking_process
            if options.include_attribution and platform:
                payload["platform"] = platform
            return json.dumps(payload, indent=2, ensure_ascii=False)

        return content + (f"\n\n{attribution}" if attribution else "")

    @staticmethod
    def _link(match: re.Match) -> str:
        label, url = match.group(1), match.group(2)
        if not _SAFE_URL.match(html.unescape(url)):
            return label
        return f'<a href="{url}">{label}</a>'

    @classmethod
    def _inline(cls, text: str) -> str:
        """Bold, italic and links on already-escaped text"""
        text = re.sub(r"\*\*(.+?)\*\*", r"<strong>\1</strong>", text)
        text = re.sub(r"\*([^*\n]+?)\*", r"<em>\1</em>", text)
        text = re.sub(r"\[([^\]]+)\]\(([^)\s]+)\)", cls._link, text)
        return text

    def markdown_to_html(self, markdown: str) -> str:
        """
        Minimal markdown rendering: headers, bold, italic, code, links and
        lists. Input is escaped first so raw HTML in answers is inert.
        """
        if not markdown:
            return ""

        stash: list[str] = []

        def keep(fragment: str, marker: str = "\x00") -> str:
            stash.append(fragment)
            return f"{marker}{len(stash) - 1}{marker}"

        def code_block(match: re.Match) -> str:
            language = match.group(1)
            css = f' class="language-{language}"' if language else ""
            return keep(f"<pre><code{css}>{match.group(2)}</code></pre>", "\x01")

        text = html.escape(markdown.replace("\r\n", "\n"))
        text = re.sub(r"```([\w+-]*)\n(.*?)```", code_block, text, flags=re.DOTALL)
        text = re.sub(r"`([^`\n]+)`", lambda m: keep(f"<code>{m.group(1)}</code>"), text)

        rendered: list[str] = []
        for block in re.split(r"\n\s*\n", text):
            rendered.extend(self._render_block(block))

        output = "".join(rendered)
        return re.sub(r"[\x00\x01](\d+)[\x00\x01]", lambda m: stash[int(m.group(1))], output)

    def _render_block(self, block: str) -> list[str]:
        out: list[str] = []
        paragraph: list[str] = []
        list_tag: str | None = None

        def flush_paragraph() -> None:
            if paragraph:
                out.append(f"<p>{'<br>'.join(paragraph)}</p>")
                paragraph.clear()

        for line in block.split("\n"):
            if not line.strip():
                continue
            ordered = re.match(r"^\s*\d+\.\s+(.*)$", line)
            bullet = re.match(r"^\s*[-*]\s+(.*)$", line)
            tag = "ol" if ordered else "ul" if bullet else None

            if tag != list_tag:
                if list_tag:
                    out.append(f"</{list_tag}>")
                if tag:
                    flush_paragraph()
                    out.append(f"<{tag}>")
                list_tag = tag

            if tag:
                out.append(f"<li>{self._inline((ordered or bullet).group(1))}</li>")
                continue

            header = re.match(r"^(#{1,6})\s+(.*)$", line)
            if header:
                flush_paragraph()
                level = len(header.group(1))
                out.append(f"<h{level}>{self._inline(header.group(2))}</h{level}>")
            elif re.fullmatch(r"\s*\x01\d+\x01\s*", line):
                flush_paragraph()
                out.append(line.strip())
            else:
                paragraph.append(self._inline(line.strip()))

        if list_tag:
            out.append(f"</{list_tag}>")
        flush_paragraph()
        return out

    # Merging

    def _section_header(self, response: ProcessedResponse) -> str:
        return f"### {self.registry.display_name(response.platform)}"

    def merge_sequential(
        self, responses: list[ProcessedResponse], options: RequestOptions
    ) -> str:
        sections = []
        for response in responses:
            if options.include_section_headers:
                sections.append(f"{self._section_header(response)}\n\n{response.content}")
            else:
                sections.append(response.content)
        separator = "\n\n" if options.include_section_headers else "\n\n---\n\n"
        return separator.join(sections)

    def merge_best_first(
        self, responses: list[ProcessedResponse], options: RequestOptions
    ) -> str:
        # Successful answers first, then longer ones; sort is stable for ties
        ranked = sorted(responses, key=lambda r: (not r.success, -len(r.content)))
        return self.merge_sequential(ranked, options)

    def merge_task_specific(
        self, responses: list[ProcessedResponse], options: RequestOptions
    ) -> str:
        groups: dict[str, list[ProcessedResponse]] = {}
        for response in responses:
            groups.setdefault(response.task_type, []).append(response)

        sections = []
        for task_type, group in groups.items():
            heading = TaskType.parse(task_type).value.replace("_", " ").title()
            sections.append(f"## {heading}\n\n{self.merge_sequential(group, options)}")
        return "\n\n".join(sections)

    def merge(
        self, responses: list[ProcessedResponse], options: RequestOptions | None = None
    ) -> ProcessedResponse:
        options = options or RequestOptions()
        fmt = ResponseFormat.parse(options.response_format)
        try:
            if not responses:
                raise SynthesisError("No responses to merge")
            if len(responses) == 1:
                return responses[0]

            try:
                strategy = MergeStrategy(options.merge_strategy)
            except ValueError:
                logger.warning(
                    f"Unknown merge strategy {options.merge_strategy!r}, using sequential"
                )
                strategy = MergeStrategy.SEQUENTIAL

            if strategy is MergeStrategy.BEST_FIRST:
                content = self.merge_best_first(responses, options)
            elif strategy is MergeStrategy.TASK_SPECIFIC:
                content = self.merge_task_specific(responses, options)
            else:
                content = self.merge_sequential(responses, options)

            sources = [{"platform": r.platform, "task_type": r.task_type} for r in responses]
            return ProcessedResponse(
                content=content,
                platform=MERGED_PLATFORM,
                task_type=responses[0].task_type,
                timestamp=utc_now_iso(),
                user_id=responses[0].user_id,
                format=fmt.value,
                formatted_response=self.format_response(
                    content, None, fmt, options, platform=MERGED_PLATFORM, sources=sources
                ),
                sources=sources,
            )
        except Exception as e:
            logger.error(f"Error merging responses: {e}")
            first = responses[0] if responses else None
            return ProcessedResponse(
                content=MERGE_ERROR_MESSAGE,
                platform=MERGED_PLATFORM,
                task_type=first.task_type if first else "unknown",
                timestamp=utc_now_iso(),
                user_id=first.user_id if first else "unknown",
                format=fmt.value,
                formatted_response=MERGE_ERROR_MESSAGE,
                error=str(e),
            )

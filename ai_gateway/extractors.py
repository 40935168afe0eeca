"""Per-vendor response content extractors.

Each extractor takes a provider's raw response and returns the assistant
text. Shapes that don't match raise SynthesisError; the synthesizer turns
that into the JSON dump of the raw payload.
"""

import json
from typing import Any

from .errors import SynthesisError


def stringify(raw: Any) -> str:
    """Last-resort rendering of a payload we couldn't interpret"""
    if isinstance(raw, str):
        return raw
    try:
        return json.dumps(raw, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(raw)


def _chat_completion_text(raw: Any) -> str:
    try:
        content = raw["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise SynthesisError(f"Not a chat completion payload: {e}") from e
    if content is None:
        raise SynthesisError("Chat completion has no message content")
    return str(content)


def _format_citations(citations: Any) -> str:
    if not isinstance(citations, list):
        raise SynthesisError(f"Citations are not a list: {type(citations).__name__}")
    lines = ["", "", "**Sources:**"]
    for index, citation in enumerate(citations, start=1):
        if isinstance(citation, dict):
            url = citation.get("url", "")
            title = citation.get("title") or url
            lines.append(f"{index}. [{title}]({url})")
        else:
            lines.append(f"{index}. {citation}")
    return "\n".join(lines)


def extract_chat_completion(raw: Any) -> str:
    return _chat_completion_text(raw)


def extract_perplexity(raw: Any) -> str:
    """answer.text plus numbered citations; chat-completion shape as fallback"""
    if isinstance(raw, dict) and isinstance(raw.get("answer"), dict):
        answer = raw["answer"]
        if "text" not in answer:
            raise SynthesisError("Perplexity answer has no text")
        content = str(answer["text"])
        citations = answer.get("citations") or []
    else:
        content = _chat_completion_text(raw)
        citations = raw.get("citations") or []

    if citations:
        content += _format_citations(citations)
    return content


def extract_gemini(raw: Any) -> str:
    try:
        parts = raw["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError) as e:
        raise SynthesisError(f"Not a Gemini payload: {e}") from e
    texts = [str(p["text"]) for p in parts if isinstance(p, dict) and "text" in p]
    if not texts:
        raise SynthesisError("Gemini candidate has no text parts")
    return "".join(texts)


def extract_grok3(raw: Any) -> str:
    if isinstance(raw, dict) and isinstance(raw.get("output"), dict):
        content = raw["output"].get("content")
        if content is not None:
            return str(content)
    return _chat_completion_text(raw)


def extract_vertix(raw: Any) -> str:
    if isinstance(raw, dict) and isinstance(raw.get("content"), str):
        return raw["content"]
    return _chat_completion_text(raw)


def extract_local(raw: Any) -> str:
    if isinstance(raw, dict) and isinstance(raw.get("output"), str):
        return raw["output"]
    return _chat_completion_text(raw)

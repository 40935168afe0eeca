"""Input validation and log sanitization for user-supplied text"""

import logging
import re

logger = logging.getLogger(__name__)


class InputValidator:
    """Security-focused input validation"""

    # Logged, not blocked: these legitimately appear in code questions
    SUSPICIOUS_PATTERNS = [
        r"<\s*script\b",
        r"javascript\s*:",
        r"\{\{.*\}\}",
        r"\$\{.*\}",
        r"__proto__",
        r"eval\s*\(",
    ]

    MAX_PROMPT_LENGTH = 100000
    MAX_USER_ID_LENGTH = 256

    @classmethod
    def validate_prompt(cls, prompt: str | None) -> tuple[bool, str]:
        """Validate a user message"""
        if not prompt or not isinstance(prompt, str) or not prompt.strip():
            return False, "Invalid message: must be a non-empty string"

        if len(prompt) > cls.MAX_PROMPT_LENGTH:
            return False, f"Message exceeds maximum length of {cls.MAX_PROMPT_LENGTH}"

        for pattern in cls.SUSPICIOUS_PATTERNS:
            if re.search(pattern, prompt, re.IGNORECASE):
                logger.warning(f"Potentially suspicious pattern in message: {pattern}")

        return True, ""

    @classmethod
    def validate_user_id(cls, user_id: str | None) -> tuple[bool, str]:
        if not user_id or not isinstance(user_id, str):
            return False, "Invalid user id: must be a non-empty string"
        if len(user_id) > cls.MAX_USER_ID_LENGTH:
            return False, f"User id exceeds maximum length of {cls.MAX_USER_ID_LENGTH}"
        return True, ""

    @classmethod
    def sanitize_for_logging(cls, text: str | None, max_len: int = 100) -> str:
        """Truncate and redact anything that looks like a credential"""
        if not text:
            return ""
        sanitized = text[:max_len]
        sanitized = re.sub(
            r"(sk-|api[_-]?key|bearer\s+)[=:\s]*[a-zA-Z0-9\-_\.]{12,}",
            "[REDACTED]",
            sanitized,
            flags=re.IGNORECASE,
        )
        return sanitized + ("..." if len(text) > max_len else "")

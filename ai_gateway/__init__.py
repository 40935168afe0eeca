"""
AI Gateway - Multi-Provider AI Router with Fallback
===================================================

Classifies each message by task type, routes it to the best-suited provider
(ChatGPT, Perplexity, Gemini, GitHub Copilot, DeepSeek, Grok3, Vertix or a
local model) and falls back along a priority chain when a provider fails.
Conversation history is kept per user and trimmed to each provider's context
window.

Security Features:
- No API keys stored in code
- Secure credential storage (keyring/encrypted file)
- Input validation and log sanitization

Example Usage:
    >>> from ai_gateway import GatewayOrchestrator, load_config, set_api_key
    >>>
    >>> # Configure credentials (run once)
    >>> set_api_key("chatgpt", "sk-...")
    >>>
    >>> import asyncio
    >>>
    >>> async def main():
    ...     gateway = GatewayOrchestrator(load_config())
    ...     response = await gateway.process_request("Explain quicksort", "user-1")
    ...     print(response.formatted_response)
    >>>
    >>> asyncio.run(main())
"""

__version__ = "1.0.0"

from .classifier import ClassificationRule, LearnedClassifier, TaskClassifier
from .config import FeatureFlags, GatewayConfig, load_config, setup_logging
from .context import ContextManager, ContextStore, InMemoryContextStore, SQLiteContextStore
from .credentials import (
    CredentialManager,
    configure_credentials_interactive,
    get_api_key,
    get_credential_manager,
    set_api_key,
)
from .errors import (
    ClassificationError,
    GatewayError,
    NoAvailableProvider,
    PersistenceError,
    ProviderError,
    SynthesisError,
    UnknownPlatformError,
)
from .models import (
    ConversationTurn,
    EnhancedPrompt,
    ProcessedResponse,
    RequestOptions,
    RoutingDecision,
    TaskType,
)
from .orchestrator import GatewayOrchestrator
from .providers import BaseProvider
from .registry import PlatformRecord, PlatformRegistry, default_registry
from .routing import PlatformSelector
from .synthesizer import ResponseSynthesizer
from .thinking import ThinkingPromptBuilder
from .validation import InputValidator

__all__ = [
    # Version
    "__version__",

    # Credential management
    "get_api_key",
    "set_api_key",
    "get_credential_manager",
    "CredentialManager",
    "configure_credentials_interactive",

    # Configuration
    "GatewayConfig",
    "FeatureFlags",
    "load_config",
    "setup_logging",

    # Gateway
    "GatewayOrchestrator",
    "TaskClassifier",
    "ClassificationRule",
    "LearnedClassifier",
    "PlatformSelector",
    "PlatformRegistry",
    "PlatformRecord",
    "default_registry",
    "ThinkingPromptBuilder",
    "ResponseSynthesizer",
    "BaseProvider",
    "InputValidator",

    # Context
    "ContextManager",
    "ContextStore",
    "InMemoryContextStore",
    "SQLiteContextStore",

    # Data model
    "TaskType",
    "ConversationTurn",
    "EnhancedPrompt",
    "ProcessedResponse",
    "RequestOptions",
    "RoutingDecision",

    # Errors
    "GatewayError",
    "ClassificationError",
    "NoAvailableProvider",
    "UnknownPlatformError",
    "ProviderError",
    "SynthesisError",
    "PersistenceError",
]

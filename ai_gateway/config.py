"""
Gateway Configuration
=====================

Configuration is read from ~/.ai_gateway/config.json and the environment.
Environment variables win for feature flags so deployments can toggle
behaviour without editing the file.

Example config.json:
    {
        "environment": "production",
        "features": {"enableLocalModels": true, "enableFallbackChain": true},
        "contextWindows": {"local": 16000},
        "taskRouting": {"code": {"primary": "deepseek"}},
        "endpoints": {"local": "http://localhost:8000/v1"},
        "logging": {"level": "INFO", "file": "~/.ai_gateway/gateway.log"}
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .credentials import CONFIG_DIR

logger = logging.getLogger(__name__)

CONFIG_FILE = CONFIG_DIR / "config.json"

# Feature flag -> environment variable
FEATURE_ENV_VARS = {
    "enableStreaming": "ENABLE_STREAMING",
    "enableLocalModels": "ENABLE_LOCAL_MODELS",
    "enableThinkingEngine": "ENABLE_THINKING_ENGINE",
    "enableMultiPlatformRequests": "ENABLE_MULTI_PLATFORM_REQUESTS",
    "enableFallbackChain": "ENABLE_FALLBACK_CHAIN",
}

DEFAULT_FEATURES = {
    "enableStreaming": True,
    "enableLocalModels": False,
    "enableThinkingEngine": True,
    "enableMultiPlatformRequests": True,
    "enableFallbackChain": True,
}


@dataclass(frozen=True)
class FeatureFlags:
    enable_streaming: bool = True
    enable_local_models: bool = False
    enable_thinking_engine: bool = True
    enable_multi_platform_requests: bool = True
    enable_fallback_chain: bool = True


@dataclass
class GatewayConfig:
    """Resolved gateway settings"""

    environment: str = "development"
    features: FeatureFlags = field(default_factory=FeatureFlags)
    max_context_length: int = 10
    ml_confidence_threshold: float = 0.7
    classifier_timeout: float = 5.0
    request_timeout: float = 60.0
    stream_timeout: float = 300.0
    max_retries: int = 3
    context_windows: dict[str, int] = field(default_factory=dict)
    task_routing: dict[str, dict[str, str]] = field(default_factory=dict)
    domain_priorities: dict[str, list[str]] = field(default_factory=dict)
    classification_rules: list[dict[str, Any]] = field(default_factory=list)
    models: dict[str, str] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=dict)
    logging: dict[str, Any] = field(default_factory=dict)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


def _env_flag(name: str) -> bool | None:
    value = os.environ.get(name)
    if value is None:
        return None
    return value.strip().lower() == "true"


def _resolve_bool_config(value: bool | None, defaults: dict[str, Any], key: str) -> bool:
    if value is not None:
        return value

    config_value = defaults.get(key)
    if isinstance(config_value, bool):
        return config_value

    return DEFAULT_FEATURES.get(key, False)


def _dict_setting(loaded: dict[str, Any], key: str) -> dict[str, Any]:
    value = loaded.get(key, {})
    return value if isinstance(value, dict) else {}


def load_user_config(path: Path | None = None) -> dict[str, Any]:
    """Read the JSON config file, returning {} when missing or invalid"""
    config_path = path or CONFIG_FILE
    if not config_path.exists():
        return {}

    try:
        with config_path.open("r", encoding="utf-8") as config_file:
            loaded = json.load(config_file)
    except Exception as exc:
        # Can't rely on logging yet as it is configured from this file
        print(f"Warning: Failed to load config from {config_path}: {exc}")
        return {}

    if not isinstance(loaded, dict):
        print(f"Warning: Config file {config_path} did not contain an object.")
        return {}

    return loaded


def build_config(loaded: dict[str, Any]) -> GatewayConfig:
    """Merge a loaded config mapping with environment overrides"""
    features_cfg = _dict_setting(loaded, "features")
    flags = {
        key: _resolve_bool_config(_env_flag(env_var), features_cfg, key)
        for key, env_var in FEATURE_ENV_VARS.items()
    }

    environment = os.environ.get("GATEWAY_ENV") or loaded.get("environment")
    if not isinstance(environment, str) or not environment:
        environment = "development"

    rules = loaded.get("classificationRules", [])
    if not isinstance(rules, list):
        rules = []

    return GatewayConfig(
        environment=environment,
        features=FeatureFlags(
            enable_streaming=flags["enableStreaming"],
            enable_local_models=flags["enableLocalModels"],
            enable_thinking_engine=flags["enableThinkingEngine"],
            enable_multi_platform_requests=flags["enableMultiPlatformRequests"],
            enable_fallback_chain=flags["enableFallbackChain"],
        ),
        max_context_length=int(loaded.get("maxContextLength", 10)),
        ml_confidence_threshold=float(loaded.get("mlConfidenceThreshold", 0.7)),
        classifier_timeout=float(loaded.get("classifierTimeout", 5.0)),
        request_timeout=float(loaded.get("requestTimeout", 60.0)),
        stream_timeout=float(loaded.get("streamTimeout", 300.0)),
        max_retries=int(loaded.get("maxRetries", 3)),
        context_windows={
            k: int(v) for k, v in _dict_setting(loaded, "contextWindows").items()
        },
        task_routing={
            k: v
            for k, v in _dict_setting(loaded, "taskRouting").items()
            if isinstance(v, dict)
        },
        domain_priorities={
            k: list(v)
            for k, v in _dict_setting(loaded, "domainPriorities").items()
            if isinstance(v, list)
        },
        classification_rules=[r for r in rules if isinstance(r, dict)],
        models={k: str(v) for k, v in _dict_setting(loaded, "models").items()},
        endpoints={k: str(v) for k, v in _dict_setting(loaded, "endpoints").items()},
        logging=_dict_setting(loaded, "logging"),
    )


def load_config(path: Path | None = None) -> GatewayConfig:
    return build_config(load_user_config(path))


def setup_logging(config: GatewayConfig, verbose: bool = False) -> None:
    """Configure the root logger from the config's logging section"""
    level = logging.DEBUG if verbose else logging.INFO

    log_config = config.logging
    if not verbose and "level" in log_config:
        level_name = str(log_config["level"]).upper()
        level = getattr(logging, level_name, logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    log_file = log_config.get("file")
    if log_file:
        try:
            expanded_path = os.path.expanduser(log_file)
            handlers.append(logging.FileHandler(expanded_path, encoding="utf-8"))
        except Exception as e:
            # Fallback to console only if file setup fails
            print(f"Failed to setup log file {log_file}: {e}")

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )

import json
import logging
import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

# Add project root to path
sys.path.append(str(Path(__file__).parent.parent))

from ai_gateway.config import build_config, load_config, load_user_config, setup_logging
from ai_gateway.credentials import (
    CredentialBackend,
    CredentialManager,
    EncryptedFileBackend,
    EnvironmentBackend,
)


class TestGatewayConfig(unittest.TestCase):
    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            config = build_config({})

        self.assertEqual(config.environment, "development")
        self.assertFalse(config.is_production)
        self.assertTrue(config.features.enable_fallback_chain)
        self.assertTrue(config.features.enable_streaming)
        # Local models are opt-in
        self.assertFalse(config.features.enable_local_models)
        self.assertEqual(config.max_context_length, 10)
        self.assertEqual(config.ml_confidence_threshold, 0.7)

    def test_file_features(self):
        with patch.dict(os.environ, {}, clear=True):
            config = build_config({"features": {"enableLocalModels": True}})

        self.assertTrue(config.features.enable_local_models)

    def test_env_overrides_file(self):
        loaded = {"features": {"enableLocalModels": True, "enableStreaming": True}}
        env = {"ENABLE_LOCAL_MODELS": "false", "ENABLE_STREAMING": "False"}
        with patch.dict(os.environ, env, clear=True):
            config = build_config(loaded)

        self.assertFalse(config.features.enable_local_models)
        self.assertFalse(config.features.enable_streaming)

    def test_env_flag_true(self):
        with patch.dict(os.environ, {"ENABLE_MULTI_PLATFORM_REQUESTS": "TRUE"}, clear=True):
            config = build_config({"features": {"enableMultiPlatformRequests": False}})

        self.assertTrue(config.features.enable_multi_platform_requests)

    def test_production_from_env(self):
        with patch.dict(os.environ, {"GATEWAY_ENV": "production"}, clear=True):
            config = build_config({"environment": "staging"})

        self.assertTrue(config.is_production)

    def test_routing_sections(self):
        loaded = {
            "contextWindows": {"local": "16000"},
            "taskRouting": {"code": {"primary": "deepseek"}, "broken": "nope"},
            "domainPriorities": {"code": ["deepseek", "copilot"]},
            "classificationRules": [{"taskType": "code", "keywords": ["sql"]}, "junk"],
            "endpoints": {"local": "http://127.0.0.1:9000/v1"},
        }
        with patch.dict(os.environ, {}, clear=True):
            config = build_config(loaded)

        self.assertEqual(config.context_windows, {"local": 16000})
        self.assertEqual(config.task_routing, {"code": {"primary": "deepseek"}})
        self.assertEqual(config.domain_priorities["code"], ["deepseek", "copilot"])
        self.assertEqual(len(config.classification_rules), 1)
        self.assertEqual(config.endpoints["local"], "http://127.0.0.1:9000/v1")

    def test_missing_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            self.assertEqual(load_user_config(Path(tmp) / "missing.json"), {})

    def test_invalid_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            path.write_text("{not json", encoding="utf-8")
            self.assertEqual(load_user_config(path), {})

            path.write_text("[1, 2, 3]", encoding="utf-8")
            self.assertEqual(load_user_config(path), {})

    def test_load_config_from_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            path.write_text(json.dumps({"maxContextLength": 4}), encoding="utf-8")
            with patch.dict(os.environ, {}, clear=True):
                config = load_config(path)

        self.assertEqual(config.max_context_length, 4)


class TestLoggingSetup(unittest.TestCase):
    def tearDown(self):
        root = logging.getLogger()
        for handler in list(root.handlers):
            root.removeHandler(handler)
        root.setLevel(logging.WARNING)

    @patch("ai_gateway.config.logging.FileHandler")
    def test_logging_setup(self, mock_file_handler):
        log_path = os.path.join(tempfile.gettempdir(), "test_ai_gateway.log")
        with patch.dict(os.environ, {}, clear=True):
            config = build_config({"logging": {"level": "DEBUG", "file": log_path}})

        setup_logging(config)

        # Verify FileHandler was initialized with correct path
        mock_file_handler.assert_called_with(log_path, encoding="utf-8")
        self.assertEqual(logging.getLogger().level, logging.DEBUG)

    def test_verbose_wins_over_config_level(self):
        with patch.dict(os.environ, {}, clear=True):
            config = build_config({"logging": {"level": "ERROR"}})

        setup_logging(config, verbose=True)

        self.assertEqual(logging.getLogger().level, logging.DEBUG)


class FakeBackend(CredentialBackend):
    def __init__(self, keys=None, available=True):
        self.keys = dict(keys or {})
        self.available = available

    @property
    def is_available(self):
        return self.available

    def get(self, platform):
        return self.keys.get(platform)

    def set(self, platform, api_key):
        self.keys[platform] = api_key
        return True

    def delete(self, platform):
        self.keys.pop(platform, None)
        return True

    def list_platforms(self):
        return list(self.keys)


class TestCredentialBackends(unittest.TestCase):
    def test_environment_backend_get(self):
        backend = EnvironmentBackend()

        with patch.dict(os.environ, {"OPENAI_API_KEY": "test-key"}):
            self.assertEqual(backend.get("chatgpt"), "test-key")

    def test_environment_backend_missing(self):
        backend = EnvironmentBackend()

        with patch.dict(os.environ, {}, clear=True):
            self.assertIsNone(backend.get("nonexistent"))

    def test_environment_backend_unknown_platform_convention(self):
        backend = EnvironmentBackend()

        with patch.dict(os.environ, {"MISTRAL_API_KEY": "abc"}, clear=True):
            self.assertEqual(backend.get("mistral"), "abc")

    def test_environment_backend_lists_configured(self):
        backend = EnvironmentBackend()

        with patch.dict(os.environ, {"GROK3_API_KEY": "x", "DEEPSEEK_API_KEY": "y"}, clear=True):
            self.assertEqual(sorted(backend.list_platforms()), ["deepseek", "grok3"])

    def test_encrypted_file_round_trip(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "credentials.enc"
            backend = EncryptedFileBackend(path)
            self.assertTrue(backend.is_available)

            self.assertTrue(backend.set("gemini", "gemini-secret-123"))
            self.assertNotIn(b"gemini-secret-123", path.read_bytes())
            self.assertEqual(EncryptedFileBackend(path).get("gemini"), "gemini-secret-123")

            self.assertTrue(backend.delete("gemini"))
            self.assertIsNone(backend.get("gemini"))


class TestCredentialManager(unittest.TestCase):
    def test_first_backend_wins(self):
        manager = CredentialManager(
            [FakeBackend({"chatgpt": "from-keyring"}), FakeBackend({"chatgpt": "from-env"})]
        )
        self.assertEqual(manager.get_api_key("chatgpt"), "from-keyring")

    def test_unavailable_backend_skipped(self):
        manager = CredentialManager(
            [
                FakeBackend({"chatgpt": "hidden"}, available=False),
                FakeBackend({"chatgpt": "visible"}),
            ]
        )
        self.assertEqual(manager.get_api_key("ChatGPT"), "visible")

    def test_missing_credential(self):
        manager = CredentialManager([FakeBackend()])
        self.assertIsNone(manager.get_api_key("perplexity"))

    def test_set_rejects_short_keys(self):
        backend = FakeBackend()
        manager = CredentialManager([backend])

        self.assertFalse(manager.set_credential("chatgpt", "short"))
        self.assertEqual(backend.keys, {})

    def test_set_refreshes_cache(self):
        backend = FakeBackend({"gemini": "old-key-0000000"})
        manager = CredentialManager([backend])
        self.assertEqual(manager.get_api_key("gemini"), "old-key-0000000")

        self.assertTrue(manager.set_credential("gemini", "new-key-1111111"))

        self.assertEqual(manager.get_api_key("gemini"), "new-key-1111111")

    def test_delete_and_list(self):
        first = FakeBackend({"copilot": "a" * 12})
        second = FakeBackend({"grok3": "b" * 12})
        manager = CredentialManager([first, second])

        self.assertEqual(manager.list_configured_platforms(), ["copilot", "grok3"])
        self.assertTrue(manager.delete_credential("copilot"))
        self.assertEqual(manager.list_configured_platforms(), ["grok3"])

    def test_credential_repr_hides_key(self):
        manager = CredentialManager([FakeBackend({"vertix": "super-secret-key"})])
        credential = manager.get_credential("vertix")

        self.assertNotIn("super-secret-key", repr(credential))
        self.assertNotIn("super-secret-key", str(credential))


if __name__ == "__main__":
    unittest.main()

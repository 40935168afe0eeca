"""
Provider Credentials
====================
API keys for the gateway's platforms are resolved through a chain of
backends, most secure first:
1. System keyring (OS credential store)
2. Encrypted file keyed to this machine
3. Environment variables

Keys are never written in plain text and never logged.
"""

import base64
import getpass
import hashlib
import json
import logging
import os
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import keyring
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

SERVICE_NAME = "ai_gateway"
CONFIG_DIR = Path.home() / ".ai_gateway"
ENCRYPTED_CREDS_FILE = CONFIG_DIR / "credentials.enc"


@dataclass(frozen=True)
class APICredential:
    """Credential container that never prints its key"""

    platform: str
    _key: str

    def get_key(self) -> str:
        logger.debug(f"API key accessed for platform: {self.platform}")
        return self._key

    def __repr__(self) -> str:
        return f"APICredential(platform={self.platform}, key=****)"

    def __str__(self) -> str:
        return self.__repr__()


class CredentialBackend(ABC):
    """Storage backend for platform API keys"""

    @abstractmethod
    def get(self, platform: str) -> str | None:
        pass

    @abstractmethod
    def set(self, platform: str, api_key: str) -> bool:
        pass

    @abstractmethod
    def delete(self, platform: str) -> bool:
        pass

    @abstractmethod
    def list_platforms(self) -> list[str]:
        pass

    @property
    @abstractmethod
    def is_available(self) -> bool:
        pass


class KeyringBackend(CredentialBackend):
    """OS keychain storage"""

    @property
    def is_available(self) -> bool:
        try:
            keyring.get_password(SERVICE_NAME, "__probe__")
            return True
        except Exception:
            return False

    def get(self, platform: str) -> str | None:
        if not self.is_available:
            return None
        try:
            return keyring.get_password(SERVICE_NAME, platform)
        except Exception as e:
            logger.warning(f"Keyring get failed for {platform}: {e}")
            return None

    def set(self, platform: str, api_key: str) -> bool:
        if not self.is_available:
            return False
        try:
            keyring.set_password(SERVICE_NAME, platform, api_key)
            logger.info(f"Stored credential in keyring for: {platform}")
            return True
        except Exception as e:
            logger.error(f"Keyring set failed for {platform}: {e}")
            return False

    def delete(self, platform: str) -> bool:
        if not self.is_available:
            return False
        try:
            keyring.delete_password(SERVICE_NAME, platform)
            return True
        except Exception as e:
            logger.warning(f"Keyring delete failed for {platform}: {e}")
            return False

    def list_platforms(self) -> list[str]:
        # keyring has no enumeration API
        return []


class EncryptedFileBackend(CredentialBackend):
    """Fernet-encrypted JSON file with a key derived from the machine id"""

    def __init__(self, path: Path = ENCRYPTED_CREDS_FILE):
        self.path = path
        self._fernet: Fernet | None = None
        self._init_encryption()

    @property
    def is_available(self) -> bool:
        return self._fernet is not None

    @staticmethod
    def _machine_id() -> bytes:
        identifiers = []
        if sys.platform == "linux":
            try:
                with open("/etc/machine-id", encoding="utf-8") as f:
                    identifiers.append(f.read().strip())
            except OSError:
                pass
        identifiers.append(getpass.getuser())
        identifiers.append(os.uname().nodename if hasattr(os, "uname") else "unknown")
        return hashlib.sha256(":".join(identifiers).encode()).digest()

    def _init_encryption(self) -> None:
        try:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=b"ai_gateway_v1",
                iterations=480000,
            )
            key = base64.urlsafe_b64encode(kdf.derive(self._machine_id()))
            self._fernet = Fernet(key)
            self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        except Exception as e:
            logger.error(f"Failed to initialize encryption: {e}")
            self._fernet = None

    def _load(self) -> dict[str, str]:
        if self._fernet is None or not self.path.exists():
            return {}
        try:
            decrypted = self._fernet.decrypt(self.path.read_bytes())
            return json.loads(decrypted.decode())
        except Exception as e:
            logger.error(f"Failed to load credentials: {e}")
            return {}

    def _save(self, creds: dict[str, str]) -> bool:
        if self._fernet is None:
            return False
        try:
            encrypted = self._fernet.encrypt(json.dumps(creds).encode())
            temp_file = self.path.with_suffix(".tmp")
            temp_file.write_bytes(encrypted)
            os.chmod(temp_file, 0o600)
            temp_file.replace(self.path)
            return True
        except Exception as e:
            logger.error(f"Failed to save credentials: {e}")
            return False

    def get(self, platform: str) -> str | None:
        return self._load().get(platform)

    def set(self, platform: str, api_key: str) -> bool:
        creds = self._load()
        creds[platform] = api_key
        saved = self._save(creds)
        if saved:
            logger.info(f"Stored credential in encrypted file for: {platform}")
        return saved

    def delete(self, platform: str) -> bool:
        creds = self._load()
        if platform in creds:
            del creds[platform]
            return self._save(creds)
        return True

    def list_platforms(self) -> list[str]:
        return list(self._load().keys())


class EnvironmentBackend(CredentialBackend):
    """Environment variables (always available, least secure)"""

    ENV_VAR_MAP = {
        "chatgpt": "OPENAI_API_KEY",
        "perplexity": "PERPLEXITY_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "copilot": "GITHUB_COPILOT_API_KEY",
        "deepseek": "DEEPSEEK_API_KEY",
        "grok3": "GROK3_API_KEY",
        "vertix": "VERTIX_API_KEY",
        "local": "LOCAL_MODEL_API_KEY",
    }

    @property
    def is_available(self) -> bool:
        return True

    def _env_var(self, platform: str) -> str:
        return self.ENV_VAR_MAP.get(platform.lower(), f"{platform.upper()}_API_KEY")

    def get(self, platform: str) -> str | None:
        return os.environ.get(self._env_var(platform))

    def set(self, platform: str, api_key: str) -> bool:
        os.environ[self._env_var(platform)] = api_key
        logger.warning(f"Set API key in environment (non-persistent) for: {platform}")
        return True

    def delete(self, platform: str) -> bool:
        os.environ.pop(self._env_var(platform), None)
        return True

    def list_platforms(self) -> list[str]:
        return [p for p, v in self.ENV_VAR_MAP.items() if os.environ.get(v)]


class CredentialManager:
    """Resolves keys through keyring, encrypted file, then environment"""

    def __init__(self, backends: list[CredentialBackend] | None = None):
        self._backends = backends or [
            KeyringBackend(),
            EncryptedFileBackend(),
            EnvironmentBackend(),
        ]
        self._cache: dict[str, APICredential] = {}
        available = [type(b).__name__ for b in self._backends if b.is_available]
        logger.debug(f"Available credential backends: {available}")

    def get_credential(self, platform: str) -> APICredential | None:
        platform = platform.lower()
        if platform in self._cache:
            return self._cache[platform]

        for backend in self._backends:
            if not backend.is_available:
                continue
            api_key = backend.get(platform)
            if api_key:
                credential = APICredential(platform=platform, _key=api_key)
                self._cache[platform] = credential
                logger.debug(
                    f"Retrieved credential for {platform} from {type(backend).__name__}"
                )
                return credential

        logger.debug(f"No credential found for platform: {platform}")
        return None

    def set_credential(self, platform: str, api_key: str) -> bool:
        """Store in the most secure available backend"""
        platform = platform.lower()
        if not api_key or len(api_key) < 10:
            logger.error("Invalid API key: too short")
            return False

        for backend in self._backends:
            if backend.is_available and not isinstance(backend, EnvironmentBackend):
                if backend.set(platform, api_key):
                    self._cache.pop(platform, None)
                    return True

        self._cache.pop(platform, None)
        return EnvironmentBackend().set(platform, api_key)

    def delete_credential(self, platform: str) -> bool:
        platform = platform.lower()
        self._cache.pop(platform, None)
        success = True
        for backend in self._backends:
            if backend.is_available:
                success = backend.delete(platform) and success
        return success

    def list_configured_platforms(self) -> list[str]:
        platforms: set[str] = set()
        for backend in self._backends:
            if backend.is_available:
                platforms.update(backend.list_platforms())
        return sorted(platforms)

    def get_api_key(self, platform: str) -> str | None:
        cred = self.get_credential(platform)
        return cred.get_key() if cred else None


_manager: CredentialManager | None = None


def get_credential_manager() -> CredentialManager:
    global _manager
    if _manager is None:
        _manager = CredentialManager()
    return _manager


def get_api_key(platform: str) -> str | None:
    return get_credential_manager().get_api_key(platform)


def set_api_key(platform: str, api_key: str) -> bool:
    return get_credential_manager().set_credential(platform, api_key)


def configure_credentials_interactive() -> None:
    """Prompt for each platform's API key on the terminal"""
    print("\nAI Gateway Credential Configuration\n")
    print("=" * 50)

    manager = get_credential_manager()
    platforms = [
        ("chatgpt", "ChatGPT (general chat, creative)"),
        ("perplexity", "Perplexity (research with citations)"),
        ("gemini", "Gemini (long context, multimodal)"),
        ("copilot", "GitHub Copilot (code)"),
        ("deepseek", "DeepSeek (reasoning, math)"),
        ("grok3", "Grok3 (real-time data analysis)"),
        ("vertix", "Vertix (domain expertise)"),
    ]

    for platform_id, description in platforms:
        status = "configured" if manager.get_credential(platform_id) else "not set"
        print(f"\n{description}: [{status}]")
        answer = input(f"Configure {platform_id}? (y/N/clear): ").strip().lower()
        if answer == "clear":
            manager.delete_credential(platform_id)
            print(f"  -> Cleared {platform_id} credentials")
        elif answer == "y":
            api_key = getpass.getpass(f"  Enter API key for {platform_id}: ")
            if api_key and manager.set_credential(platform_id, api_key):
                print(f"  -> Saved {platform_id} credentials securely")
            else:
                print(f"  -> Failed to save {platform_id} credentials")

    print("\n" + "=" * 50)
    print(f"Configured platforms: {manager.list_configured_platforms()}")

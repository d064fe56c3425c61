"""Secret-aware key/value storage.

Two namespaces share one store:

- secure: credentials (upstream tokens, refresh tokens, token records).
  Never written in plaintext.
- settings: small JSON-serializable non-secret values (ms-user-info,
  device registrations, logout marks). Kept in a JSON file beside the
  encrypted store, or in memory.

Backends:
1. KeychainSecretStore (primary): OS keychain via keyring library
   - macOS: Keychain
   - Windows: Credential Locker
   - Linux: Secret Service (GNOME Keyring, KDE Wallet)

2. EncryptedFileSecretStore (fallback): Fernet-encrypted JSON document
   - Used when keyring is unavailable
   - Key derived from machine-specific identifiers

3. MemorySecretStore: process-local, for tests and throwaway development runs.

All methods are synchronous. Async callers wrap them in asyncio.to_thread.
"""

from __future__ import annotations

__all__ = [
    "EncryptedFileSecretStore",
    "KeychainSecretStore",
    "MemorySecretStore",
    "SecretStore",
    "create_secret_store",
    "get_secret_store_info",
]

import base64
import hashlib
import json
import platform
import secrets
import socket
import subprocess
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ms365_gateway.constants import APP_NAME
from ms365_gateway.exceptions import StorageError
from ms365_gateway.telemetry.system.system_logger import get_system_logger

if TYPE_CHECKING:
    from cryptography.fernet import Fernet

    from ms365_gateway.config import StorageConfig

# Service name for keyring storage
KEYRING_SERVICE = APP_NAME

ENCRYPTED_STORE_FILE = "secrets.enc"
SETTINGS_FILE = "settings.json"


class SecretStore(ABC):
    """Abstract base class for secret-aware storage backends."""

    backend_name: str = "abstract"

    # -- secure namespace --------------------------------------------------

    @abstractmethod
    def get_secret(self, key: str) -> str | None:
        """Read a secret.

        Args:
            key: Storage key, e.g. "ms365:ann@contoso.com:upstream-token".

        Returns:
            The stored value, or None if absent.

        Raises:
            StorageError: If the backend cannot be read.
        """

    @abstractmethod
    def set_secret(self, key: str, value: str) -> None:
        """Write a secret, replacing any previous value.

        Raises:
            StorageError: If the backend cannot be written.
        """

    @abstractmethod
    def delete_secret(self, key: str) -> None:
        """Delete a secret. Deleting an absent key is not an error.

        Raises:
            StorageError: If the backend cannot be written.
        """

    # -- settings namespace ------------------------------------------------

    @abstractmethod
    def get_setting(self, key: str) -> Any | None:
        """Read a non-secret setting, or None if absent."""

    @abstractmethod
    def set_setting(self, key: str, value: Any) -> None:
        """Write a JSON-serializable non-secret setting."""

    @abstractmethod
    def delete_setting(self, key: str) -> None:
        """Delete a setting. Deleting an absent key is not an error."""

    def describe(self) -> dict[str, str]:
        """Backend description for status output."""
        return {"backend": self.backend_name}


# =============================================================================
# Settings file shared by the persistent backends
# =============================================================================


class _JsonSettingsFile:
    """Non-secret settings persisted as one JSON object."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._cache: dict[str, Any] | None = None

    def _load(self) -> dict[str, Any]:
        if self._cache is not None:
            return self._cache
        if not self._path.exists():
            self._cache = {}
            return self._cache
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to read settings file {self._path}: {e}") from e
        self._cache = data if isinstance(data, dict) else {}
        return self._cache

    def _flush(self, data: dict[str, Any]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.parent.chmod(0o700)
            tmp_path = self._path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp_path.chmod(0o600)
            tmp_path.replace(self._path)
        except OSError as e:
            raise StorageError(f"Failed to write settings file {self._path}: {e}") from e

    def get(self, key: str) -> Any | None:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = dict(self._load())
            data[key] = value
            self._flush(data)
            self._cache = data

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key not in data:
                return
            data = {k: v for k, v in data.items() if k != key}
            self._flush(data)
            self._cache = data


# =============================================================================
# Backends
# =============================================================================


class KeychainSecretStore(SecretStore):
    """Secrets in the OS keychain, one entry per key.

    Uses the system's secure credential storage:
    - macOS: Keychain
    - Windows: Credential Locker
    - Linux: Secret Service API (GNOME Keyring, KDE Wallet, etc.)
    """

    backend_name = "keychain"

    def __init__(self, directory: Path, service: str = KEYRING_SERVICE) -> None:
        """Initialize keychain storage.

        Args:
            directory: Directory for the settings file.
            service: Keyring service name.
        """
        self._service = service
        self._settings = _JsonSettingsFile(directory / SETTINGS_FILE)

    def get_secret(self, key: str) -> str | None:
        import keyring

        try:
            value: str | None = keyring.get_password(self._service, key)
        except Exception as e:
            raise StorageError(f"Failed to access keychain: {e}") from e
        return value

    def set_secret(self, key: str, value: str) -> None:
        import keyring

        try:
            keyring.set_password(self._service, key, value)
        except Exception as e:
            raise StorageError(f"Failed to save secret to keychain: {e}") from e

    def delete_secret(self, key: str) -> None:
        import keyring
        from keyring.errors import PasswordDeleteError

        try:
            keyring.delete_password(self._service, key)
        except PasswordDeleteError:
            pass
        except Exception as e:
            raise StorageError(f"Failed to delete secret from keychain: {e}") from e

    def get_setting(self, key: str) -> Any | None:
        return self._settings.get(key)

    def set_setting(self, key: str, value: Any) -> None:
        self._settings.set(key, value)

    def delete_setting(self, key: str) -> None:
        self._settings.delete(key)

    def describe(self) -> dict[str, str]:
        import keyring

        return {
            "backend": self.backend_name,
            "keyring_backend": type(keyring.get_keyring()).__name__,
            "service": self._service,
        }


class EncryptedFileSecretStore(SecretStore):
    """Fallback secret storage using a Fernet-encrypted JSON document.

    Uses symmetric encryption with a key derived from machine-specific
    identifiers. This is less secure than keychain but works when
    keyring is unavailable.

    Key derivation uses:
    - Hostname
    - Machine ID (platform-specific)
    - Static salt for this application
    """

    backend_name = "encrypted_file"

    def __init__(self, directory: Path) -> None:
        """Initialize encrypted file storage.

        Args:
            directory: Directory holding the encrypted store and settings file.
        """
        self._storage_path = directory / ENCRYPTED_STORE_FILE
        self._settings = _JsonSettingsFile(directory / SETTINGS_FILE)
        self._key: bytes | None = None
        self._lock = threading.Lock()
        self._secrets: dict[str, str] | None = None

    def _get_machine_id(self) -> str:
        """Get platform-specific machine identifier.

        Returns:
            String that's unique and stable for this machine.
        """
        system = platform.system()

        if system == "Darwin":
            try:
                result = subprocess.run(
                    ["ioreg", "-rd1", "-c", "IOPlatformExpertDevice"],
                    capture_output=True,
                    text=True,
                    timeout=5,
                )
                for line in result.stdout.split("\n"):
                    if "IOPlatformUUID" in line:
                        parts = line.split("=")
                        if len(parts) >= 2:
                            return parts[1].strip().strip('"')
            except (subprocess.SubprocessError, OSError):
                pass

        elif system == "Linux":
            for path in ["/etc/machine-id", "/var/lib/dbus/machine-id"]:
                try:
                    with open(path) as f:
                        return f.read().strip()
                except OSError:
                    continue

        elif system == "Windows":
            try:
                winreg = __import__("winreg")
                key = winreg.OpenKey(
                    winreg.HKEY_LOCAL_MACHINE,
                    r"SOFTWARE\Microsoft\Cryptography",
                    0,
                    winreg.KEY_READ | winreg.KEY_WOW64_64KEY,
                )
                value, _ = winreg.QueryValueEx(key, "MachineGuid")
                winreg.CloseKey(key)
                return str(value)
            except (OSError, ImportError, AttributeError):
                pass

        return socket.gethostname()

    def _derive_key(self) -> bytes:
        """Derive the Fernet key with PBKDF2 over machine id and hostname."""
        if self._key is not None:
            return self._key

        machine_id = self._get_machine_id()
        hostname = socket.gethostname()
        combined = f"{machine_id}:{hostname}:{APP_NAME}-secret-store"

        # Static per-application salt keeps the key stable across restarts;
        # machine_id + hostname provide per-machine uniqueness.
        salt = f"{APP_NAME}-v1".encode()
        key = hashlib.pbkdf2_hmac("sha256", combined.encode(), salt, iterations=100_000, dklen=32)

        self._key = base64.urlsafe_b64encode(key)
        return self._key

    def _get_fernet(self) -> "Fernet":
        from cryptography.fernet import Fernet

        return Fernet(self._derive_key())

    def _load(self) -> dict[str, str]:
        if self._secrets is not None:
            return self._secrets
        if not self._storage_path.exists():
            self._secrets = {}
            return self._secrets
        try:
            decrypted = self._get_fernet().decrypt(self._storage_path.read_bytes())
        except Exception as e:
            raise StorageError(
                f"Failed to decrypt secret store (may be corrupted or key changed): {e}"
            ) from e
        try:
            data = json.loads(decrypted.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to parse secret store (may be corrupted): {e}") from e
        self._secrets = {str(k): str(v) for k, v in data.items()}
        return self._secrets

    def _save(self, data: dict[str, str]) -> None:
        try:
            encrypted = self._get_fernet().encrypt(json.dumps(data).encode())
            self._storage_path.parent.mkdir(parents=True, exist_ok=True)
            self._storage_path.parent.chmod(0o700)
            tmp_path = self._storage_path.with_suffix(".tmp")
            tmp_path.write_bytes(encrypted)
            tmp_path.chmod(0o600)
            tmp_path.replace(self._storage_path)
        except Exception as e:
            raise StorageError(f"Failed to save encrypted secret store: {e}") from e

    def get_secret(self, key: str) -> str | None:
        with self._lock:
            return self._load().get(key)

    def set_secret(self, key: str, value: str) -> None:
        with self._lock:
            data = dict(self._load())
            data[key] = value
            self._save(data)
            self._secrets = data

    def delete_secret(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key not in data:
                return
            data = {k: v for k, v in data.items() if k != key}
            self._save(data)
            self._secrets = data

    def get_setting(self, key: str) -> Any | None:
        return self._settings.get(key)

    def set_setting(self, key: str, value: Any) -> None:
        self._settings.set(key, value)

    def delete_setting(self, key: str) -> None:
        self._settings.delete(key)

    def describe(self) -> dict[str, str]:
        return {"backend": self.backend_name, "location": str(self._storage_path)}


class MemorySecretStore(SecretStore):
    """Process-local store. Contents vanish with the process."""

    backend_name = "memory"

    def __init__(self) -> None:
        self._secrets: dict[str, str] = {}
        self._settings: dict[str, Any] = {}
        self._lock = threading.Lock()

    def get_secret(self, key: str) -> str | None:
        with self._lock:
            return self._secrets.get(key)

    def set_secret(self, key: str, value: str) -> None:
        with self._lock:
            self._secrets[key] = value

    def delete_secret(self, key: str) -> None:
        with self._lock:
            self._secrets.pop(key, None)

    def get_setting(self, key: str) -> Any | None:
        with self._lock:
            return self._settings.get(key)

    def set_setting(self, key: str, value: Any) -> None:
        # Round-trip through JSON so callers get the same guarantees as the file backends
        encoded = json.loads(json.dumps(value))
        with self._lock:
            self._settings[key] = encoded

    def delete_setting(self, key: str) -> None:
        with self._lock:
            self._settings.pop(key, None)


# =============================================================================
# Factory
# =============================================================================


# Slot written and removed under the gateway's own service to prove the keychain works
_KEYCHAIN_CHECK_KEY = "store-check"


def _keychain_unavailable_reason(service: str = KEYRING_SERVICE) -> str | None:
    """Say why the OS keychain cannot hold gateway secrets.

    Round-trips a random value through the same service name the
    KeychainSecretStore would use.

    Returns:
        None when the keychain is usable, otherwise a short reason.
    """
    try:
        import keyring
        from keyring.backends.fail import Keyring as FailKeyring
    except ImportError as e:
        return f"keyring not importable: {e}"

    backend = keyring.get_keyring()
    if isinstance(backend, FailKeyring):
        return "no keyring backend installed"

    check_value = secrets.token_hex(8)
    try:
        keyring.set_password(service, _KEYCHAIN_CHECK_KEY, check_value)
        stored = keyring.get_password(service, _KEYCHAIN_CHECK_KEY)
        keyring.delete_password(service, _KEYCHAIN_CHECK_KEY)
    except Exception as e:
        # DBus and permission failures surface as assorted exception types
        return f"{type(backend).__name__}: {type(e).__name__}: {e}"
    if stored != check_value:
        return f"{type(backend).__name__} did not return the stored value"
    return None


def create_secret_store(config: "StorageConfig") -> SecretStore:
    """Create the configured secret store backend.

    "auto" prefers keychain storage when available, falls back to the
    encrypted file.

    Args:
        config: Storage configuration.

    Returns:
        SecretStore instance.

    Raises:
        StorageError: If "keychain" is requested but no keyring is usable.
    """
    directory = Path(config.directory)
    backend = config.backend
    logger = get_system_logger()
    fallback_reason: str | None = None

    if backend == "memory":
        store: SecretStore = MemorySecretStore()
    elif backend == "file":
        store = EncryptedFileSecretStore(directory)
    elif backend == "keychain":
        reason = _keychain_unavailable_reason()
        if reason is not None:
            raise StorageError(f"Keychain storage requested but the keychain is unusable ({reason})")
        store = KeychainSecretStore(directory)
    else:
        fallback_reason = _keychain_unavailable_reason()
        if fallback_reason is None:
            store = KeychainSecretStore(directory)
        else:
            store = EncryptedFileSecretStore(directory)
            logger.warning(
                {
                    "event": "keychain_unavailable",
                    "message": "Keychain unusable, storing secrets in the encrypted file",
                    "reason": fallback_reason,
                    "location": str(directory / ENCRYPTED_STORE_FILE),
                }
            )

    logger.info(
        {
            "event": "secret_store_selected",
            "message": f"Using {store.backend_name} secret store",
            "backend": store.backend_name,
            "requested": backend,
        }
    )
    return store


def get_secret_store_info(config: "StorageConfig") -> dict[str, str]:
    """Describe the backend create_secret_store() would pick, without creating it.

    Args:
        config: Storage configuration.

    Returns:
        Dict with 'backend' and backend-specific keys.
    """
    directory = Path(config.directory)
    if config.backend == "memory":
        return {"backend": MemorySecretStore.backend_name}
    if config.backend == "keychain" or (config.backend == "auto" and _keychain_unavailable_reason() is None):
        return {"backend": KeychainSecretStore.backend_name, "service": KEYRING_SERVICE}
    return {
        "backend": EncryptedFileSecretStore.backend_name,
        "location": str(directory / ENCRYPTED_STORE_FILE),
    }

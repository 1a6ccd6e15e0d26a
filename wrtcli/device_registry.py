"""
Device Registry
===============

Keeps the table of managed OpenWrt devices in a YAML document inside the
configuration directory. Passwords are stored encrypted with Fernet; the key
comes from WRTCLI_ENCRYPTION_KEY or is generated once into the config dir.
"""

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, List

import yaml
from cryptography.fernet import Fernet, InvalidToken

from .config import Settings
from .error_handling import NotFoundError, RegistryError
from .schemas import Device, StoredDevice

logger = logging.getLogger(__name__)


def get_encryption_key(settings: Settings) -> str:
    """Get or create encryption key for device passwords."""
    if settings.encryption_key:
        return settings.encryption_key

    key_path = settings.key_path
    if key_path.exists():
        return key_path.read_text().strip()

    key_path.parent.mkdir(parents=True, exist_ok=True)
    key = Fernet.generate_key().decode()
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(key)
    logger.info(f"Generated new registry encryption key at {key_path}")
    return key


def encrypt_password(password: str, key: str) -> str:
    """Encrypt password for storage."""
    if not password:
        return ""
    try:
        return Fernet(key.encode()).encrypt(password.encode()).decode()
    except ValueError as e:
        raise RegistryError(f"Invalid registry encryption key: {e}") from e


def decrypt_password(encrypted_password: str, key: str) -> str:
    """Decrypt password from storage."""
    if not encrypted_password:
        return ""
    try:
        return Fernet(key.encode()).decrypt(encrypted_password.encode()).decode()
    except (InvalidToken, ValueError) as e:
        raise RegistryError("Failed to decrypt stored device password; was the encryption key changed?") from e


class DeviceRegistry:
    """YAML-backed device table."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.path: Path = settings.registry_path
        self._lock = threading.RLock()

    def _load(self) -> Dict[str, StoredDevice]:
        if not self.path.exists():
            return {}

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            devices = data.get("devices") or {}
            return {name: StoredDevice.model_validate(entry) for name, entry in devices.items()}
        except (OSError, yaml.YAMLError, ValueError, AttributeError) as e:
            raise RegistryError(f"Failed to read device registry {self.path}: {e}") from e

    def _save(self, devices: Dict[str, StoredDevice]):
        document = {
            "devices": {
                name: stored.model_dump(mode="json") for name, stored in sorted(devices.items())
            }
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".config.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    yaml.safe_dump(document, f, sort_keys=False)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        except OSError as e:
            raise RegistryError(f"Failed to write device registry {self.path}: {e}") from e

    def add(self, device: Device):
        """Register a device, replacing any entry with the same name."""
        key = get_encryption_key(self.settings)
        with self._lock:
            devices = self._load()
            replaced = device.name in devices
            devices[device.name] = StoredDevice(
                ip=device.ip,
                user=device.user,
                password_encrypted=encrypt_password(device.password, key),
                transport=device.transport,
            )
            self._save(devices)
        logger.info(f"{'Updated' if replaced else 'Added'} device {device.name} ({device.ip})")

    def lookup(self, name: str) -> Device:
        with self._lock:
            stored = self._load().get(name)
        if stored is None:
            raise NotFoundError(f"Device '{name}' not found")

        password = decrypt_password(stored.password_encrypted, get_encryption_key(self.settings))
        return Device(name=name, ip=stored.ip, user=stored.user, password=password,
                      transport=stored.transport)

    def list(self) -> List[Device]:
        """Return registered devices sorted by name, passwords omitted."""
        with self._lock:
            devices = self._load()
        return [
            Device(name=name, ip=stored.ip, user=stored.user, password="", transport=stored.transport)
            for name, stored in sorted(devices.items())
        ]

    def remove(self, name: str):
        with self._lock:
            devices = self._load()
            if name not in devices:
                raise NotFoundError(f"Device '{name}' not found")
            del devices[name]
            self._save(devices)
        logger.info(f"Removed device {name}")

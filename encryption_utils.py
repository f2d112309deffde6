"""
At-rest encryption for stored documents.

Each document payload is serialized to canonical JSON and sealed with
Fernet before it reaches the database. ``EncryptedJSON`` performs the
round trip inside SQLAlchemy so the store adapter only ever sees plain
dictionaries.

The key comes from the FINANCE_SYNC_ENCRYPTION_KEY environment variable,
then from ``security.encryption_key`` in config.yaml; when neither is set a
new key is generated and written back to config.yaml.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.types import Text, TypeDecorator

from exceptions import DecryptionError, EncryptionKeyError

logger = logging.getLogger(__name__)

ENV_KEY_NAME = "FINANCE_SYNC_ENCRYPTION_KEY"
CONFIG_FILE = Path("config.yaml")
SECURITY_SECTION = "security"
KEY_FIELD = "encryption_key"

# Fernet tokens always begin with the version byte 0x80.
_FERNET_PREFIX = "gAAAAA"


def _as_fernet_key(raw_key: str | bytes) -> bytes:
    key = raw_key.strip().encode("utf-8") if isinstance(raw_key, str) else raw_key
    try:
        Fernet(key)
    except (ValueError, TypeError) as exc:
        raise EncryptionKeyError("Invalid Fernet key supplied.", original_error=exc) from exc
    return key


def _load_security_config(config_file: Path) -> Dict[str, Any]:
    """Return the whole config.yaml mapping, or {} when absent or unreadable."""
    if not config_file.exists():
        return {}
    try:
        with config_file.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        logger.error("Unable to parse %s while looking for the encryption key: %s", config_file, exc)
        return {}
    return data if isinstance(data, dict) else {}


class EncryptionManager:
    """
    Seals and opens document payloads with a lazily resolved Fernet key.

    Args:
        config_file: YAML file holding ``security.encryption_key``
        env_var: Environment variable consulted first
        auto_generate: Create and persist a key when none is configured
    """

    def __init__(
        self,
        *,
        config_file: Path = CONFIG_FILE,
        env_var: str = ENV_KEY_NAME,
        auto_generate: bool = True,
    ) -> None:
        self.config_file = Path(config_file)
        self.env_var = env_var
        self.auto_generate = auto_generate
        self._fernet: Optional[Fernet] = None
        self._key: Optional[bytes] = None

    def _key_from_env(self) -> Optional[bytes]:
        raw_key = os.environ.get(self.env_var)
        if not raw_key:
            return None
        try:
            return _as_fernet_key(raw_key)
        except EncryptionKeyError as exc:
            raise EncryptionKeyError(
                f"The {self.env_var} environment variable does not hold a valid Fernet key."
            ) from exc

    def _key_from_config(self) -> Optional[bytes]:
        section = _load_security_config(self.config_file).get(SECURITY_SECTION) or {}
        raw_key = section.get(KEY_FIELD) if isinstance(section, dict) else None
        if not raw_key:
            return None
        try:
            return _as_fernet_key(raw_key)
        except EncryptionKeyError:
            logger.warning("Ignoring invalid encryption key in %s", self.config_file)
            return None

    def _generate_and_store_key(self) -> bytes:
        key = Fernet.generate_key()
        config_data = _load_security_config(self.config_file)
        section = config_data.get(SECURITY_SECTION)
        if not isinstance(section, dict):
            section = {}
        section[KEY_FIELD] = key.decode("utf-8")
        config_data[SECURITY_SECTION] = section
        with self.config_file.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(config_data, handle, sort_keys=True)
        logger.info("Generated a new encryption key and stored it in %s", self.config_file)
        return key

    def get_key(self) -> bytes:
        """
        Resolve the Fernet key, generating one when allowed.

        Raises:
            EncryptionKeyError: If the environment key is invalid, or no key
                exists and auto-generation is disabled
        """
        if self._key is not None:
            return self._key

        key = self._key_from_env() or self._key_from_config()
        if key is None:
            if not self.auto_generate:
                raise EncryptionKeyError(
                    "Encryption key not found",
                    details={"env_var": self.env_var, "config_file": str(self.config_file)}
                )
            key = self._generate_and_store_key()

        self._key = key
        self._fernet = Fernet(key)
        return key

    @property
    def fernet(self) -> Fernet:
        if self._fernet is None:
            self.get_key()
        return self._fernet  # type: ignore[return-value]

    def encrypt_document(self, data: Dict[str, Any]) -> str:
        """Serialize a document to canonical JSON and encrypt it."""
        payload = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return self.fernet.encrypt(payload.encode("utf-8")).decode("utf-8")

    def decrypt_document(self, token: str) -> Dict[str, Any]:
        """
        Decrypt a stored payload back into a document.

        Raises:
            DecryptionError: If the token does not match the current key or
                the plaintext is not a JSON object
        """
        try:
            plaintext = self.fernet.decrypt(token.encode("utf-8"))
        except InvalidToken as exc:
            logger.error("Stored document could not be decrypted with the current key")
            raise DecryptionError("Unable to decrypt stored document.", original_error=exc) from exc
        return _parse_document(plaintext.decode("utf-8"))


def _parse_document(text: str) -> Dict[str, Any]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise DecryptionError("Stored document is not valid JSON.", original_error=exc) from exc
    if not isinstance(data, dict):
        raise DecryptionError("Stored document is not a JSON object.")
    return data


def is_ciphertext(value: Any) -> bool:
    """Cheap check for a Fernet token: version prefix plus valid urlsafe base64."""
    if not isinstance(value, str) or not value.startswith(_FERNET_PREFIX):
        return False
    try:
        base64.urlsafe_b64decode(value.encode("utf-8"))
    except (binascii.Error, ValueError):
        return False
    return True


@lru_cache(maxsize=1)
def get_encryption_manager() -> EncryptionManager:
    """Process-wide manager used by the column type."""
    return EncryptionManager()


class EncryptedJSON(TypeDecorator):
    """
    Column type persisting a JSON document as Fernet ciphertext.

    Rows written before encryption was enabled hold plaintext JSON and are
    still readable.
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Any, dialect) -> Any:  # type: ignore[override]
        if value is None:
            return None
        return get_encryption_manager().encrypt_document(value)

    def process_result_value(self, value: Any, dialect) -> Any:  # type: ignore[override]
        if value is None:
            return None
        if is_ciphertext(value):
            return get_encryption_manager().decrypt_document(value)
        return _parse_document(value)

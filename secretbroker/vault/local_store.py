"""
Built-in encrypted vault.

Layout of store.json:
    {
        "version": 1,
        "secrets": {"<name>": {"type": "string", "blob": "<base64>"}},
        "parameters": {"<ref>": {"blob": "<base64>"}}
    }

Type tags stay in clear so enumeration never decrypts anything. Blobs are
the protector's ciphertext of the marshaled secret document.
"""

import base64
import binascii
import json
from pathlib import Path
from typing import Any, Optional

from secretbroker.utils.files import atomic_write_json
from secretbroker.utils.logging import get_logger
from secretbroker.vault import marshal
from secretbroker.vault.base import VaultBackend
from secretbroker.vault.exceptions import (
    DuplicateNameError,
    SecretNotFoundError,
    StorageCorruptionError,
    UnsupportedSecretTypeError,
)
from secretbroker.vault.locking import StoreLock
from secretbroker.vault.protection import UserScopeProtector
from secretbroker.vault.types import SecretInfo, SecretType, WireSecret, zero_buffer
from secretbroker.vault.wildcard import filter_names

logger = get_logger(__name__)

LOCAL_VAULT_NAME = "LocalVault"
STORE_VERSION = 1


class LocalVaultStore(VaultBackend):
    """
    Always-present vault backed by an encrypted JSON file.

    Also hosts the private parameter namespace used to keep extension vault
    connection parameters out of the plain registry.
    """

    name = LOCAL_VAULT_NAME

    def __init__(
        self,
        store_dir: Path,
        protector: Optional[UserScopeProtector] = None,
        lock: Optional[StoreLock] = None,
    ):
        self.store_dir = Path(store_dir)
        self.store_file = self.store_dir / "store.json"
        self.protector = protector or UserScopeProtector(self.store_dir / ".protection-key")
        self.lock = lock or StoreLock(self.store_dir / ".lock")

    # ------------------------------------------------------------------
    # Secret operations
    # ------------------------------------------------------------------

    def get_secret(self, name: str, additional_parameters: Optional[dict] = None) -> WireSecret:
        _check_name(name)
        with self.lock.shared():
            entry = self._read()["secrets"].get(name)
        if entry is None:
            raise SecretNotFoundError(
                f"Secret '{name}' not found in vault '{self.name}'", self.name
            )
        wire = self._decode(entry, f"secret:{name}")
        if wire.type.value != entry.get("type"):
            raise StorageCorruptionError(
                f"Secret '{name}' type tag does not match its payload", self.name
            )
        logger.debug(f"Read secret '{name}' from {self.name}")
        return wire

    def get_secret_info(
        self, filter: str = "*", additional_parameters: Optional[dict] = None
    ) -> list[SecretInfo]:
        with self.lock.shared():
            entries = self._read()["secrets"]
        infos = []
        for name in sorted(entries):
            try:
                secret_type = SecretType(entries[name].get("type"))
            except (ValueError, AttributeError):
                raise StorageCorruptionError(
                    f"Secret '{name}' has an unknown type tag", self.name
                )
            infos.append(SecretInfo(name, secret_type, self.name))
        return filter_names(infos, filter, key=lambda info: info.name)

    def set_secret(
        self,
        name: str,
        secret: WireSecret,
        additional_parameters: Optional[dict] = None,
        no_clobber: bool = False,
    ) -> bool:
        """
        Store a secret, overwriting any existing one.

        With no_clobber the existence check and the write happen under the
        same exclusive lock.

        Raises:
            DuplicateNameError: no_clobber and the name is taken
        """
        _check_name(name)
        entry = {"type": secret.type.value, "blob": self._encode(secret, f"secret:{name}")}
        with self.lock.exclusive():
            data = self._read()
            if no_clobber and name in data["secrets"]:
                raise DuplicateNameError(
                    f"Secret '{name}' already exists in vault '{self.name}'", self.name
                )
            data["secrets"][name] = entry
            self._write(data)
        logger.info(f"Stored secret '{name}' ({secret.type.value}) in {self.name}")
        return True

    def remove_secret(self, name: str, additional_parameters: Optional[dict] = None) -> bool:
        _check_name(name)
        with self.lock.exclusive():
            data = self._read()
            if data["secrets"].pop(name, None) is None:
                raise SecretNotFoundError(
                    f"Secret '{name}' not found in vault '{self.name}'", self.name
                )
            self._write(data)
        logger.info(f"Removed secret '{name}' from {self.name}")
        return True

    def test_vault(self, additional_parameters: Optional[dict] = None) -> bool:
        """Check that the key loads and the store file is readable."""
        self.protector.protect(b"", "test")
        with self.lock.shared():
            self._read()
        return True

    # ------------------------------------------------------------------
    # Parameter namespace (internal)
    # ------------------------------------------------------------------

    def get_parameters(self, ref: Optional[str]) -> dict:
        """Return a fresh copy of the parameter set stored under ref."""
        if not ref:
            return {}
        with self.lock.shared():
            entry = self._read()["parameters"].get(ref)
        if entry is None:
            return {}
        wire = self._decode(entry, f"parameters:{ref}")
        if wire.type is not SecretType.MAPPING:
            raise StorageCorruptionError(
                f"Parameter set '{ref}' is not a mapping", self.name
            )
        return marshal.unmarshal(wire)

    def set_parameters(self, ref: str, parameters: dict) -> None:
        """
        Store a parameter set. Values may be any non-mapping secret type.

        Raises:
            UnsupportedSecretTypeError: For values outside the supported set
        """
        if not isinstance(parameters, dict):
            raise UnsupportedSecretTypeError("Vault parameters must be a mapping")
        entry = {"blob": self._encode(marshal.marshal(parameters), f"parameters:{ref}")}
        with self.lock.exclusive():
            data = self._read()
            data["parameters"][ref] = entry
            self._write(data)
        logger.debug(f"Stored parameter set '{ref}'")

    def remove_parameters(self, ref: Optional[str]) -> bool:
        if not ref:
            return False
        with self.lock.exclusive():
            data = self._read()
            removed = data["parameters"].pop(ref, None) is not None
            if removed:
                self._write(data)
        if removed:
            logger.debug(f"Purged parameter set '{ref}'")
        return removed

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def _read(self) -> dict:
        """Load the store document. Caller must hold the lock."""
        if not self.store_file.exists():
            return {"version": STORE_VERSION, "secrets": {}, "parameters": {}}
        try:
            with open(self.store_file) as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StorageCorruptionError(
                f"Invalid JSON in {self.store_file}: {e}", self.name
            ) from e
        if (
            not isinstance(data, dict)
            or data.get("version") != STORE_VERSION
            or not isinstance(data.get("secrets"), dict)
            or not isinstance(data.get("parameters"), dict)
        ):
            raise StorageCorruptionError(
                f"Unrecognized store layout in {self.store_file}", self.name
            )
        return data

    def _write(self, data: dict) -> None:
        """Persist the store document. Caller must hold the exclusive lock."""
        self.store_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        atomic_write_json(self.store_file, data)

    def _encode(self, wire: WireSecret, context: str) -> str:
        plaintext = bytearray(json.dumps(marshal.to_document(wire)).encode("utf-8"))
        try:
            blob = self.protector.protect(plaintext, context)
        finally:
            zero_buffer(plaintext)
        return base64.b64encode(blob).decode("ascii")

    def _decode(self, entry: Any, context: str) -> WireSecret:
        try:
            blob = base64.b64decode(entry["blob"], validate=True)
        except (KeyError, TypeError, binascii.Error) as e:
            raise StorageCorruptionError(
                f"Record '{context}' has no readable blob", self.name
            ) from e
        plaintext = self.protector.unprotect(blob, context)
        try:
            return marshal.from_document(json.loads(plaintext))
        except (json.JSONDecodeError, UnicodeDecodeError, UnsupportedSecretTypeError) as e:
            raise StorageCorruptionError(
                f"Record '{context}' could not be decoded", self.name
            ) from e
        finally:
            zero_buffer(plaintext)


def _check_name(name: Any) -> None:
    if not isinstance(name, str) or not name:
        raise ValueError("Secret name must be a non-empty string")


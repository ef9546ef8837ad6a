"""Durable registry of extension vaults."""

import json
import threading
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Optional

from secretbroker.utils.files import atomic_write_json
from secretbroker.utils.logging import get_logger
from secretbroker.vault.exceptions import (
    DuplicateNameError,
    ReservedNameError,
    StorageCorruptionError,
    VaultNotFoundError,
)
from secretbroker.vault.local_store import LOCAL_VAULT_NAME, LocalVaultStore

logger = get_logger(__name__)

REGISTRY_VERSION = 1
PARAMETERS_REF_PREFIX = "vault-parameters/"


@dataclass(frozen=True)
class VaultRegistration:
    """
    One registered extension vault.

    Parameters are never stored here; parameters_ref points into the local
    store's private parameter namespace.
    """

    name: str
    locator: str
    parameters_ref: Optional[str] = None
    is_default: bool = False


def is_reserved(name: str) -> bool:
    return name.casefold() == LOCAL_VAULT_NAME.casefold()


class VaultRegistry:
    """
    Mapping of vault name to registration, persisted as JSON.

    Loaded once on construction and flushed after every mutation with an
    atomic temp-file + rename. Names compare case-insensitively but keep
    the spelling they were registered with.

    Usage:
        registry = VaultRegistry(home / "registry.json", local_store)
        registry.register("remote1", "my_vaults.remote", {"endpoint": "x"})
    """

    def __init__(self, path: Path, local_store: LocalVaultStore):
        self.path = Path(path)
        self.local_store = local_store
        self._lock = threading.RLock()
        self._vaults: dict[str, VaultRegistration] = {}
        self._load()

    def register(
        self,
        name: str,
        locator: str,
        parameters: Optional[dict] = None,
        is_default: bool = False,
        force: bool = False,
    ) -> VaultRegistration:
        """
        Add a registration.

        Args:
            name: Vault name, unique ignoring case
            locator: Implementation locator
            parameters: Optional connection parameters, stored encrypted
            is_default: Make this the default vault
            force: Replace an existing registration of the same name

        Raises:
            ReservedNameError: name is the built-in vault's
            DuplicateNameError: name is taken and force is not set
        """
        if not isinstance(name, str) or not name.strip():
            raise ValueError("Vault name must be a non-empty string")
        if is_reserved(name):
            raise ReservedNameError(
                f"'{name}' is reserved for the built-in vault", LOCAL_VAULT_NAME
            )
        if not isinstance(locator, str) or not locator.strip():
            raise ValueError("Vault locator must be a non-empty string")

        with self._lock:
            key = name.casefold()
            existing = self._vaults.get(key)
            if existing is not None and not force:
                raise DuplicateNameError(f"Vault '{existing.name}' is already registered", name)

            ref = None
            if parameters:
                ref = PARAMETERS_REF_PREFIX + key
                self.local_store.set_parameters(ref, parameters)
            elif existing is not None:
                self.local_store.remove_parameters(existing.parameters_ref)

            registration = VaultRegistration(name, locator, ref, bool(is_default))
            if is_default:
                self._clear_default()
            # dict assignment keeps the original slot on re-register
            self._vaults[key] = registration
            self._flush()

        action = "Re-registered" if existing is not None else "Registered"
        logger.info(f"{action} vault '{name}' ({locator})")
        return registration

    def get(self, name: str) -> VaultRegistration:
        with self._lock:
            registration = self._vaults.get(name.casefold())
        if registration is None:
            raise VaultNotFoundError(f"Vault '{name}' is not registered", name)
        return registration

    def exists(self, name: str) -> bool:
        with self._lock:
            return name.casefold() in self._vaults

    def list(self) -> list[VaultRegistration]:
        """Registrations in registration order."""
        with self._lock:
            return list(self._vaults.values())

    def default(self) -> Optional[VaultRegistration]:
        with self._lock:
            for registration in self._vaults.values():
                if registration.is_default:
                    return registration
        return None

    def set_default(self, name: str) -> None:
        """
        Make a registration the default vault.

        Passing the built-in vault name clears the default so that
        resolution falls back to the built-in vault.
        """
        with self._lock:
            if is_reserved(name):
                self._clear_default()
            else:
                registration = self.get(name)
                self._clear_default()
                self._vaults[name.casefold()] = replace(registration, is_default=True)
            self._flush()
        logger.info(f"Default vault set to '{name}'")

    def unregister(self, name: str) -> VaultRegistration:
        """
        Remove a registration and purge its parameter set.

        Raises:
            ReservedNameError: name is the built-in vault's
            VaultNotFoundError: name is not registered
        """
        if is_reserved(name):
            raise ReservedNameError(
                f"The built-in vault '{LOCAL_VAULT_NAME}' cannot be unregistered",
                LOCAL_VAULT_NAME,
            )
        with self._lock:
            registration = self.get(name)
            del self._vaults[name.casefold()]
            self._flush()
            self.local_store.remove_parameters(registration.parameters_ref)
        logger.info(f"Unregistered vault '{registration.name}'")
        return registration

    def _clear_default(self) -> None:
        for key, registration in self._vaults.items():
            if registration.is_default:
                self._vaults[key] = replace(registration, is_default=False)

    def _load(self) -> None:
        if not self.path.exists():
            logger.debug(f"No registry at {self.path}, starting empty")
            return
        try:
            with open(self.path) as f:
                data = json.load(f)
            if data.get("version") != REGISTRY_VERSION:
                raise ValueError(f"unsupported version {data.get('version')!r}")
            vaults = {}
            for item in data["vaults"]:
                registration = VaultRegistration(
                    name=item["name"],
                    locator=item["locator"],
                    parameters_ref=item.get("parameters_ref"),
                    is_default=bool(item.get("is_default", False)),
                )
                key = registration.name.casefold()
                if is_reserved(registration.name):
                    raise ValueError(f"entry uses the reserved name '{registration.name}'")
                if key in vaults:
                    raise ValueError(
                        f"entries '{vaults[key].name}' and '{registration.name}' differ only in case"
                    )
                vaults[key] = registration
        except (json.JSONDecodeError, UnicodeDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
            raise StorageCorruptionError(f"Registry {self.path} is unreadable: {e}") from e

        self._vaults = vaults
        if sum(1 for r in vaults.values() if r.is_default) > 1:
            logger.warning(f"Registry {self.path} has several default vaults, keeping the first")
            first = self.default()
            self._clear_default()
            self._vaults[first.name.casefold()] = first
        logger.info(f"Loaded {len(self._vaults)} vault registration(s) from {self.path}")

    def _flush(self) -> None:
        data = {
            "version": REGISTRY_VERSION,
            "vaults": [asdict(r) for r in self._vaults.values()],
        }
        atomic_write_json(self.path, data)

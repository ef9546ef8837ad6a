"""Vault contracts."""

from abc import ABC, abstractmethod
from typing import Any, Optional

from secretbroker.vault.types import SecretInfo, WireSecret

OPERATIONS = ("get_secret", "get_secret_info", "set_secret", "remove_secret")
OPTIONAL_OPERATIONS = ("test_vault",)


class VaultBackend(ABC):
    """
    Internal contract every vault is dispatched through.

    Implemented by:
    - LocalVaultStore (the built-in encrypted vault)
    - ExtensionVaultProxy (compiled or scripted third-party vaults)

    Values cross this interface only in wire form (WireSecret).
    """

    name: str

    @abstractmethod
    def get_secret(self, name: str, additional_parameters: Optional[dict] = None) -> WireSecret:
        """
        Retrieve a secret by name.

        Raises:
            SecretNotFoundError: If the vault holds no such secret
        """
        pass

    @abstractmethod
    def get_secret_info(
        self, filter: str = "*", additional_parameters: Optional[dict] = None
    ) -> list[SecretInfo]:
        """Enumerate secret metadata. The filter may be treated as a hint."""
        pass

    @abstractmethod
    def set_secret(
        self,
        name: str,
        secret: WireSecret,
        additional_parameters: Optional[dict] = None,
    ) -> bool:
        pass

    @abstractmethod
    def remove_secret(self, name: str, additional_parameters: Optional[dict] = None) -> bool:
        pass

    @abstractmethod
    def test_vault(self, additional_parameters: Optional[dict] = None) -> bool:
        pass


class ExtensionVault(ABC):
    """
    Optional base class for compiled-style extension vaults.

    Each operation receives an `errors` list as an explicit error channel:
    append a message (or exception) to it and return None to report a
    failure. Raise NotImplementedError from an operation the vault does not
    support. test_vault is optional.

    Register a subclass with a locator of the form "package.module:ClassName"
    or "path/to/file.py:ClassName".

    Example:
        class MemoryVault(ExtensionVault):
            store = {}

            def get_secret(self, name, vault_name, additional_parameters, errors):
                return self.store.get(name)
            ...
    """

    @abstractmethod
    def get_secret(
        self, name: str, vault_name: str, additional_parameters: dict, errors: list
    ) -> Any:
        pass

    @abstractmethod
    def get_secret_info(
        self, filter: str, vault_name: str, additional_parameters: dict, errors: list
    ) -> Any:
        pass

    @abstractmethod
    def set_secret(
        self,
        name: str,
        secret: Any,
        vault_name: str,
        additional_parameters: dict,
        errors: list,
    ) -> Any:
        pass

    @abstractmethod
    def remove_secret(
        self, name: str, vault_name: str, additional_parameters: dict, errors: list
    ) -> Any:
        pass

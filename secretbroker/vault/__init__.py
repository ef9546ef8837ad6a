"""Secret broker: local encrypted vault plus pluggable extension vaults."""

from secretbroker.vault.base import ExtensionVault
from secretbroker.vault.broker import SecretBroker
from secretbroker.vault.exceptions import (
    ContractViolationError,
    DuplicateNameError,
    ImplementationNotFoundError,
    NotFoundError,
    OperationNotSupportedError,
    PartialEnumerationError,
    ReservedNameError,
    SecretBrokerError,
    SecretNotFoundError,
    StorageCorruptionError,
    StoreLockTimeoutError,
    UnsupportedSecretTypeError,
    VaultInvocationError,
    VaultNotFoundError,
)
from secretbroker.vault.local_store import LOCAL_VAULT_NAME
from secretbroker.vault.registry import VaultRegistration
from secretbroker.vault.types import Credential, ProtectedString, SecretInfo, SecretType

__all__ = [
    "SecretBroker",
    "ExtensionVault",
    "VaultRegistration",
    "LOCAL_VAULT_NAME",
    "Credential",
    "ProtectedString",
    "SecretInfo",
    "SecretType",
    "SecretBrokerError",
    "NotFoundError",
    "VaultNotFoundError",
    "SecretNotFoundError",
    "ImplementationNotFoundError",
    "DuplicateNameError",
    "ReservedNameError",
    "UnsupportedSecretTypeError",
    "OperationNotSupportedError",
    "ContractViolationError",
    "VaultInvocationError",
    "PartialEnumerationError",
    "StorageCorruptionError",
    "StoreLockTimeoutError",
]

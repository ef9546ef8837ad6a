"""Custom exceptions for the secret broker."""

from typing import Optional


class SecretBrokerError(Exception):
    """Base exception. Carries the name of the vault involved, when known."""

    def __init__(self, message: str, vault_name: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.vault_name = vault_name

    def __str__(self) -> str:
        if self.vault_name and self.vault_name not in self.message:
            return f"[{self.vault_name}] {self.message}"
        return self.message


class NotFoundError(SecretBrokerError):
    """Raised when a vault, secret or implementation does not exist."""

    pass


class VaultNotFoundError(NotFoundError):
    """Raised when no vault is registered under the given name."""

    pass


class SecretNotFoundError(NotFoundError):
    """Raised when a vault holds no secret with the given name."""

    pass


class ImplementationNotFoundError(NotFoundError):
    """Raised when a registration locator cannot be resolved."""

    pass


class DuplicateNameError(SecretBrokerError):
    """Raised when a name is already taken."""

    pass


class ReservedNameError(SecretBrokerError):
    """Raised on an attempt to register or remove the built-in vault."""

    pass


class UnsupportedSecretTypeError(SecretBrokerError):
    """Raised when a value or type tag is outside the supported set."""

    pass


class OperationNotSupportedError(SecretBrokerError):
    """Raised when a vault does not implement the requested operation."""

    def __init__(self, operation: str, vault_name: Optional[str] = None):
        super().__init__(
            f"Vault '{vault_name}' does not support operation '{operation}'",
            vault_name,
        )
        self.operation = operation


class ContractViolationError(SecretBrokerError):
    """Raised when an implementation returns output of the wrong shape."""

    pass


class VaultInvocationError(SecretBrokerError):
    """Raised when a vault implementation reports a failure."""

    pass


class PartialEnumerationError(VaultInvocationError):
    """
    Raised after a fan-out enumeration in which some vaults failed.

    Attributes:
        results: Entries collected from the vaults that succeeded
        failures: Mapping of vault name to the error it raised
    """

    def __init__(self, results: list, failures: dict):
        names = ", ".join(sorted(failures))
        super().__init__(f"Enumeration failed for vault(s): {names}")
        self.results = results
        self.failures = failures


class StorageCorruptionError(SecretBrokerError):
    """Raised when local storage cannot be read, decoded or decrypted."""

    pass


class StoreLockTimeoutError(SecretBrokerError):
    """Raised when the local store lock could not be acquired in time."""

    pass

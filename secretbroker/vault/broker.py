"""Secret broker - one facade over the built-in vault and extension vaults."""

import threading
from typing import Any, Optional

from secretbroker.config.loader import BrokerSettings
from secretbroker.utils.logging import get_logger
from secretbroker.vault import marshal
from secretbroker.vault.base import VaultBackend
from secretbroker.vault.exceptions import (
    DuplicateNameError,
    OperationNotSupportedError,
    PartialEnumerationError,
    ReservedNameError,
    SecretBrokerError,
)
from secretbroker.vault.local_store import LOCAL_VAULT_NAME, LocalVaultStore
from secretbroker.vault.locking import StoreLock
from secretbroker.vault.protection import UserScopeProtector
from secretbroker.vault.proxy import ExtensionVaultProxy, load_implementation
from secretbroker.vault.registry import VaultRegistration, VaultRegistry, is_reserved
from secretbroker.vault.types import SecretInfo
from secretbroker.vault.wildcard import filter_names

logger = get_logger(__name__)


class SecretBroker:
    """
    Routes secret operations to the right vault.

    Vault resolution when no vault is named: the registration flagged
    default, else the built-in vault. Single-item operations go to exactly
    one vault; only get_secret_info fans out.

    Usage:
        broker = SecretBroker.from_settings(load_settings())
        broker.register_vault("remote1", "my_vaults.remote", {"endpoint": "x"})
        broker.add_secret("k1", "hello", vault="remote1")
        broker.get_secret("k1", vault="remote1")
    """

    def __init__(self, local_store: LocalVaultStore, registry: VaultRegistry):
        self.local_store = local_store
        self.registry = registry
        self._proxies: dict[tuple, ExtensionVaultProxy] = {}
        self._proxies_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: BrokerSettings) -> "SecretBroker":
        lock = StoreLock(
            settings.store_dir / ".lock",
            attempts=settings.lock_attempts,
            delay=settings.lock_delay,
            backoff=settings.lock_backoff,
        )
        local_store = LocalVaultStore(
            settings.store_dir, protector=UserScopeProtector(settings.key_file), lock=lock
        )
        registry = VaultRegistry(settings.registry_file, local_store)
        logger.info(f"Secret broker ready at {settings.home}")
        return cls(local_store, registry)

    # ------------------------------------------------------------------
    # Secrets
    # ------------------------------------------------------------------

    def add_secret(
        self,
        name: str,
        secret: Any,
        vault: Optional[str] = None,
        additional_parameters: Optional[dict] = None,
        no_clobber: bool = False,
    ) -> None:
        """
        Store a secret, replacing any secret of the same name.

        The value is checked against the supported types before any vault
        is contacted.

        Raises:
            UnsupportedSecretTypeError: The value is outside the supported set
            DuplicateNameError: no_clobber and the name already exists
            OperationNotSupportedError: The vault cannot store secrets
        """
        wire = marshal.marshal(secret)
        backend = self._resolve(vault)

        if backend is self.local_store:
            self.local_store.set_secret(name, wire, additional_parameters, no_clobber=no_clobber)
        else:
            if no_clobber and self._exists(backend, name, additional_parameters):
                raise DuplicateNameError(
                    f"Secret '{name}' already exists in vault '{backend.name}'", backend.name
                )
            backend.set_secret(name, wire, additional_parameters)
        logger.info(f"Added secret '{name}' to vault '{backend.name}'")

    def get_secret(
        self,
        name: str,
        vault: Optional[str] = None,
        additional_parameters: Optional[dict] = None,
    ) -> Any:
        """
        Fetch a secret value.

        Raises:
            SecretNotFoundError: The resolved vault has no such secret
            VaultNotFoundError: The named vault is not registered
        """
        backend = self._resolve(vault)
        wire = backend.get_secret(name, additional_parameters)
        return marshal.unmarshal(wire)

    def get_secret_info(
        self,
        filter: str = "*",
        vault: Optional[str] = None,
        additional_parameters: Optional[dict] = None,
    ) -> list[SecretInfo]:
        """
        Enumerate secret metadata matching a wildcard filter.

        With a vault name only that vault is queried. Without one, every
        vault is queried and the results merged; the same secret name in
        two vaults yields two entries. Each vault's results are re-filtered
        here, so matching does not depend on the vault's own filtering.

        Raises:
            PartialEnumerationError: Some vaults failed; carries the
                results of the others
        """
        filter = filter or "*"
        if vault is not None:
            backend = self._resolve(vault)
            return self._sorted(self._infos(backend, filter, additional_parameters))

        results: list[SecretInfo] = []
        failures: dict[str, Exception] = {}
        for backend in self._all_backends(failures):
            try:
                results.extend(self._infos(backend, filter, additional_parameters))
            except OperationNotSupportedError:
                logger.warning(f"Vault '{backend.name}' does not support enumeration, skipped")
            except SecretBrokerError as e:
                logger.warning(f"Enumeration failed for vault '{backend.name}': {e}")
                failures[backend.name] = e

        results = self._sorted(results)
        if failures:
            raise PartialEnumerationError(results, failures)
        return results

    def remove_secret(
        self,
        name: str,
        vault: Optional[str] = None,
        additional_parameters: Optional[dict] = None,
    ) -> None:
        backend = self._resolve(vault)
        backend.remove_secret(name, additional_parameters)
        logger.info(f"Removed secret '{name}' from vault '{backend.name}'")

    # ------------------------------------------------------------------
    # Vaults
    # ------------------------------------------------------------------

    def register_vault(
        self,
        name: str,
        locator: str,
        parameters: Optional[dict] = None,
        is_default: bool = False,
        force: bool = False,
    ) -> VaultRegistration:
        """
        Register an extension vault.

        Name conflicts are rejected before any implementation code runs.
        The locator is then resolved so a registration never points at an
        implementation that cannot be loaded.
        """
        if parameters:
            marshal.validate(parameters)
        if isinstance(name, str) and is_reserved(name):
            raise ReservedNameError(
                f"'{name}' is reserved for the built-in vault", LOCAL_VAULT_NAME
            )
        if isinstance(name, str) and not force and self.registry.exists(name):
            raise DuplicateNameError(f"Vault '{name}' is already registered", name)
        implementation = load_implementation(locator)
        registration = self.registry.register(
            name, locator, parameters, is_default=is_default, force=force
        )
        with self._proxies_lock:
            self._drop_proxies(registration.name)
            self._proxies[_proxy_key(registration)] = ExtensionVaultProxy(
                registration, self.local_store, implementation
            )
        return registration

    def unregister_vault(self, name: str) -> None:
        registration = self.registry.unregister(name)
        with self._proxies_lock:
            self._drop_proxies(registration.name)

    def get_vaults(self) -> list[VaultRegistration]:
        """Registrations in order, preceded by a pseudo-entry for the built-in vault."""
        default = self.registry.default()
        builtin = VaultRegistration(LOCAL_VAULT_NAME, "builtin", None, default is None)
        return [builtin] + self.registry.list()

    def set_default_vault(self, name: str) -> None:
        self.registry.set_default(name)

    def test_vault(
        self, vault: Optional[str] = None, additional_parameters: Optional[dict] = None
    ) -> bool:
        backend = self._resolve(vault)
        return backend.test_vault(additional_parameters)

    def get_vault(self, name: str) -> VaultBackend:
        """Backend for a vault name (the built-in store for its reserved name)."""
        if isinstance(name, str) and is_reserved(name):
            return self.local_store
        return self._proxy(self.registry.get(name))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve(self, vault: Optional[str]) -> VaultBackend:
        if vault is not None:
            return self.get_vault(vault)
        default = self.registry.default()
        if default is None:
            return self.local_store
        return self._proxy(default)

    def _proxy(self, registration: VaultRegistration) -> ExtensionVaultProxy:
        with self._proxies_lock:
            proxy = self._proxies.get(_proxy_key(registration))
        if proxy is None:
            # Loading may run third-party code, so it happens outside the lock
            proxy = ExtensionVaultProxy(registration, self.local_store)
            with self._proxies_lock:
                proxy = self._proxies.setdefault(_proxy_key(registration), proxy)
        return proxy

    def _drop_proxies(self, name: str) -> None:
        """Forget cached proxies for a vault name. Caller holds _proxies_lock."""
        for key in [k for k in self._proxies if k[0] == name.casefold()]:
            del self._proxies[key]

    def _all_backends(self, failures: dict):
        yield self.local_store
        for registration in self.registry.list():
            try:
                proxy = self._proxy(registration)
            except SecretBrokerError as e:
                logger.warning(f"Vault '{registration.name}' could not be loaded: {e}")
                failures[registration.name] = e
                continue
            yield proxy

    def _infos(
        self, backend: VaultBackend, filter: str, additional_parameters: Optional[dict]
    ) -> list[SecretInfo]:
        infos = backend.get_secret_info(filter, additional_parameters)
        return filter_names(infos, filter, key=lambda info: info.name)

    def _exists(self, backend: VaultBackend, name: str, additional_parameters: Optional[dict]) -> bool:
        # the wildcard escape keeps names like "a*" literal
        pattern = "".join(f"`{c}" if c in "*?[]`" else c for c in name)
        infos = self._infos(backend, pattern, additional_parameters)
        return any(info.name == name for info in infos)

    @staticmethod
    def _sorted(infos: list[SecretInfo]) -> list[SecretInfo]:
        return sorted(infos, key=lambda info: (info.name.casefold(), info.vault_name.casefold()))


def _proxy_key(registration: VaultRegistration) -> tuple:
    # the default flag does not affect dispatch, so toggling it keeps the proxy
    return (registration.name.casefold(), registration.locator, registration.parameters_ref)

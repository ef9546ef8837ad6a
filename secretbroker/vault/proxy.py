"""
Extension vault invocation.

A registration's locator resolves to one of two implementation styles:

    compiled   "package.module:ClassName" or "path/to/vault.py:ClassName"
               An object whose methods take an extra `errors` list used as
               an explicit error channel.
    scripted   "package.module" or "path/to/vault.py"
               A module of plain functions. Only names in the module's
               __all__ (or, without __all__, its public callables) count as
               implemented. Functions return a value or yield values.

Both are wrapped in ExtensionVaultProxy, which implements the internal
VaultBackend contract and checks every output against the documented shape
before anything reaches the broker.
"""

import hashlib
import importlib
import importlib.util
import inspect
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from secretbroker.utils.logging import get_logger
from secretbroker.vault import marshal
from secretbroker.vault.base import OPERATIONS, OPTIONAL_OPERATIONS, VaultBackend
from secretbroker.vault.exceptions import (
    ContractViolationError,
    ImplementationNotFoundError,
    OperationNotSupportedError,
    SecretBrokerError,
    SecretNotFoundError,
    UnsupportedSecretTypeError,
    VaultInvocationError,
)
from secretbroker.vault.local_store import LocalVaultStore
from secretbroker.vault.registry import VaultRegistration
from secretbroker.vault.types import SecretInfo, WireSecret

logger = get_logger(__name__)

COMPILED = "compiled"
SCRIPTED = "scripted"


class VaultImplementation(ABC):
    """Uniform view over a compiled or scripted implementation."""

    style: str

    @abstractmethod
    def supports(self, operation: str) -> bool:
        pass

    @abstractmethod
    def invoke(
        self, operation: str, args: tuple, vault_name: str, parameters: dict
    ) -> tuple[list, list]:
        """
        Call an operation.

        Returns:
            (outputs, errors): every value the implementation produced and
            every error it reported through its error channel
        """
        pass


class CompiledImplementation(VaultImplementation):
    style = COMPILED

    def __init__(self, instance: Any):
        self.instance = instance

    def supports(self, operation: str) -> bool:
        return callable(getattr(self.instance, operation, None))

    def invoke(self, operation, args, vault_name, parameters):
        errors: list = []
        result = getattr(self.instance, operation)(*args, vault_name, parameters, errors)
        outputs = [] if result is None else [result]
        return outputs, errors


class ScriptedImplementation(VaultImplementation):
    style = SCRIPTED

    def __init__(self, module: Any):
        self.module = module
        self.exports = _exported_names(module)

    def supports(self, operation: str) -> bool:
        return operation in self.exports and callable(getattr(self.module, operation, None))

    def invoke(self, operation, args, vault_name, parameters):
        result = getattr(self.module, operation)(*args, vault_name, parameters)
        if inspect.isgenerator(result):
            outputs = list(result)
        elif result is None:
            outputs = []
        else:
            outputs = [result]
        return outputs, []


def load_implementation(locator: str) -> VaultImplementation:
    """
    Resolve a locator to an implementation.

    Raises:
        ImplementationNotFoundError: Module, file or class cannot be found
        VaultInvocationError: The compiled class failed to initialize
    """
    locator = locator.strip()
    if _has_attribute(locator):
        target, _, attribute = locator.rpartition(":")
    else:
        target, attribute = locator, ""
    module = _import_target(target, locator)

    if not attribute:
        logger.debug(f"Resolved '{locator}' as a scripted vault")
        return ScriptedImplementation(module)

    cls = getattr(module, attribute, None)
    if not inspect.isclass(cls):
        raise ImplementationNotFoundError(
            f"'{attribute}' is not a class in vault implementation '{target}'"
        )
    try:
        instance = cls()
    except Exception as e:
        raise VaultInvocationError(
            f"Vault implementation '{locator}' failed to initialize: {e}"
        ) from e
    logger.debug(f"Resolved '{locator}' as a compiled vault")
    return CompiledImplementation(instance)


class ExtensionVaultProxy(VaultBackend):
    """
    VaultBackend over a registered extension vault.

    The vault's parameter set is read from the local store on every call,
    so rotating parameters takes effect without re-registering.
    """

    def __init__(
        self,
        registration: VaultRegistration,
        local_store: LocalVaultStore,
        implementation: Optional[VaultImplementation] = None,
    ):
        self.registration = registration
        self.name = registration.name
        self.local_store = local_store
        self.implementation = implementation or load_implementation(registration.locator)

    @property
    def style(self) -> str:
        return self.implementation.style

    def supported_operations(self) -> list[str]:
        return [
            op for op in OPERATIONS + OPTIONAL_OPERATIONS if self.implementation.supports(op)
        ]

    def get_secret(self, name: str, additional_parameters: Optional[dict] = None) -> WireSecret:
        outputs = self._invoke("get_secret", (name,), additional_parameters)
        if not outputs:
            raise SecretNotFoundError(
                f"Secret '{name}' not found in vault '{self.name}'", self.name
            )
        value = self._single(outputs, "get_secret")
        try:
            return marshal.marshal(value)
        except UnsupportedSecretTypeError as e:
            raise ContractViolationError(
                f"get_secret returned an unsupported value: {e.message}", self.name
            ) from e

    def get_secret_info(
        self, filter: str = "*", additional_parameters: Optional[dict] = None
    ) -> list[SecretInfo]:
        outputs = self._invoke("get_secret_info", (filter,), additional_parameters)
        infos = []
        for entry in _flatten_entries(outputs):
            infos.append(self._to_info(entry))
        return infos

    def set_secret(
        self,
        name: str,
        secret: WireSecret,
        additional_parameters: Optional[dict] = None,
    ) -> bool:
        if not self.implementation.supports("set_secret"):
            raise OperationNotSupportedError("set_secret", self.name)
        value = marshal.unmarshal(secret)
        outputs = self._invoke("set_secret", (name, value), additional_parameters)
        return self._succeeded(outputs, "set_secret", f"could not store secret '{name}'")

    def remove_secret(self, name: str, additional_parameters: Optional[dict] = None) -> bool:
        outputs = self._invoke("remove_secret", (name,), additional_parameters)
        return self._succeeded(outputs, "remove_secret", f"could not remove secret '{name}'")

    def test_vault(self, additional_parameters: Optional[dict] = None) -> bool:
        outputs = self._invoke("test_vault", (), additional_parameters)
        return self._succeeded(outputs, "test_vault", "vault test failed")

    def _invoke(self, operation: str, args: tuple, additional_parameters: Optional[dict]) -> list:
        if not self.implementation.supports(operation):
            raise OperationNotSupportedError(operation, self.name)

        parameters = self.local_store.get_parameters(self.registration.parameters_ref)
        parameters.update(additional_parameters or {})

        try:
            outputs, errors = self.implementation.invoke(operation, args, self.name, parameters)
        except NotImplementedError as e:
            raise OperationNotSupportedError(operation, self.name) from e
        except SecretBrokerError as e:
            if e.vault_name is None:
                e.vault_name = self.name
            raise
        except Exception as e:
            logger.warning(f"Vault '{self.name}' {operation} raised {type(e).__name__}")
            raise VaultInvocationError(
                f"Vault '{self.name}' {operation} failed: {e}", self.name
            ) from e

        if errors:
            if outputs:
                raise ContractViolationError(
                    f"{operation} reported errors and also returned a value", self.name
                )
            messages = "; ".join(str(error) for error in errors)
            logger.warning(f"Vault '{self.name}' {operation} reported {len(errors)} error(s)")
            cause = next((error for error in errors if isinstance(error, BaseException)), None)
            raise VaultInvocationError(
                f"Vault '{self.name}' {operation} failed: {messages}", self.name
            ) from cause
        return outputs

    def _single(self, outputs: list, operation: str) -> Any:
        if len(outputs) != 1:
            raise ContractViolationError(
                f"{operation} must return exactly one value, got {len(outputs)}", self.name
            )
        return outputs[0]

    def _succeeded(self, outputs: list, operation: str, failure: str) -> bool:
        result = self._single(outputs, operation)
        if type(result) is not bool:
            raise ContractViolationError(
                f"{operation} must return a bool, got {type(result).__name__}", self.name
            )
        if not result:
            raise VaultInvocationError(f"Vault '{self.name}' {failure}", self.name)
        return True

    def _to_info(self, entry: Any) -> SecretInfo:
        if isinstance(entry, SecretInfo):
            name, tag = entry.name, entry.type
        elif isinstance(entry, tuple) and len(entry) == 2:
            name, tag = entry
        else:
            raise ContractViolationError(
                f"get_secret_info returned a malformed entry of type {type(entry).__name__}",
                self.name,
            )
        if not isinstance(name, str) or not name:
            raise ContractViolationError(
                "get_secret_info returned an entry without a name", self.name
            )
        try:
            secret_type = marshal.parse_type(tag)
        except UnsupportedSecretTypeError as e:
            raise ContractViolationError(
                f"get_secret_info returned '{name}' with {e.message}", self.name
            ) from e
        return SecretInfo(name, secret_type, self.name)


def _flatten_entries(outputs: list) -> list:
    entries = []
    for output in outputs:
        if _is_entry(output) or not isinstance(output, (list, tuple)):
            entries.append(output)
        else:
            entries.extend(output)
    return entries


def _is_entry(value: Any) -> bool:
    return isinstance(value, SecretInfo) or (
        isinstance(value, tuple) and len(value) == 2 and isinstance(value[0], str)
    )


def _exported_names(module: Any) -> frozenset:
    declared = getattr(module, "__all__", None)
    if declared is not None:
        return frozenset(declared)
    return frozenset(
        name
        for name, value in vars(module).items()
        if not name.startswith("_") and callable(value)
    )


def _has_attribute(locator: str) -> bool:
    # a drive letter such as C:\ is not an attribute separator
    head, sep, tail = locator.rpartition(":")
    return bool(sep) and bool(head) and tail.isidentifier()


def _import_target(target: str, locator: str) -> Any:
    if target.endswith(".py") or "/" in target or "\\" in target:
        return _import_file(Path(target).expanduser(), locator)
    try:
        return importlib.import_module(target)
    except ImportError as e:
        raise ImplementationNotFoundError(
            f"Vault implementation module '{target}' not found: {e}"
        ) from e
    except Exception as e:
        raise ImplementationNotFoundError(
            f"Vault implementation '{locator}' failed to load: {e}"
        ) from e


def _import_file(path: Path, locator: str) -> Any:
    path = path.resolve()
    if not path.is_file():
        raise ImplementationNotFoundError(f"Vault implementation file '{path}' not found")

    digest = hashlib.sha256(str(path).encode("utf-8")).hexdigest()[:12]
    module_name = f"_secretbroker_vault_{path.stem}_{digest}"
    if module_name in sys.modules:
        return sys.modules[module_name]

    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise ImplementationNotFoundError(f"Cannot load vault implementation '{locator}'")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        del sys.modules[module_name]
        raise ImplementationNotFoundError(
            f"Vault implementation '{locator}' failed to load: {e}"
        ) from e
    return module

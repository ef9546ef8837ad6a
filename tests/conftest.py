"""Shared fixtures: isolated broker homes and extension vault sources."""

import textwrap
from pathlib import Path

import pytest

from secretbroker.config.loader import BrokerSettings
from secretbroker.vault.broker import SecretBroker
from secretbroker.vault.local_store import LocalVaultStore
from secretbroker.vault.locking import StoreLock

MEMORY_VAULT = '''
from secretbroker.vault import ExtensionVault
from secretbroker.vault.marshal import type_of


class MemoryVault(ExtensionVault):
    """Compiled-style vault keeping secrets in a dict. Ignores the filter."""

    def __init__(self):
        self.store = {}
        self.calls = []

    def get_secret(self, name, vault_name, additional_parameters, errors):
        self.calls.append(("get_secret", name, dict(additional_parameters)))
        return self.store.get(name)

    def get_secret_info(self, filter, vault_name, additional_parameters, errors):
        self.calls.append(("get_secret_info", filter, dict(additional_parameters)))
        return [(name, type_of(value)) for name, value in self.store.items()]

    def set_secret(self, name, secret, vault_name, additional_parameters, errors):
        self.calls.append(("set_secret", name, dict(additional_parameters)))
        self.store[name] = secret
        return True

    def remove_secret(self, name, vault_name, additional_parameters, errors):
        self.calls.append(("remove_secret", name, dict(additional_parameters)))
        if name not in self.store:
            errors.append(f"no secret named {name}")
            return None
        del self.store[name]
        return True

    def test_vault(self, vault_name, additional_parameters, errors):
        return "endpoint" in additional_parameters
'''

READONLY_VAULT = '''
"""Scripted-style vault that exports no set_secret."""

__all__ = ["get_secret", "get_secret_info", "remove_secret"]

_store = {"ab1": "one", "ab2": "two", "xy": "three"}


def get_secret(name, vault_name, additional_parameters):
    return _store.get(name)


def get_secret_info(filter, vault_name, additional_parameters):
    for name in _store:
        yield (name, "string")


def set_secret(name, secret, vault_name, additional_parameters):
    _store[name] = secret
    return True


def remove_secret(name, vault_name, additional_parameters):
    return _store.pop(name, None) is not None


def _helper():
    return "hidden"
'''

CHATTY_VAULT = '''
"""Scripted-style vault whose outputs break the contract."""

__all__ = ["get_secret", "get_secret_info", "set_secret", "remove_secret"]


def get_secret(name, vault_name, additional_parameters):
    yield "real-value"
    yield "spurious-value"


def get_secret_info(filter, vault_name, additional_parameters):
    return ["not-an-entry"]


def set_secret(name, secret, vault_name, additional_parameters):
    return "yes"


def remove_secret(name, vault_name, additional_parameters):
    raise RuntimeError("backend unreachable")
'''


def write_vault(directory: Path, filename: str, source: str) -> str:
    """Write vault source to a file and return its path as a locator."""
    path = Path(directory) / filename
    path.write_text(textwrap.dedent(source))
    return str(path)


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a throwaway home with a fast lock retry."""
    return BrokerSettings.for_home(
        tmp_path / "home", lock_attempts=50, lock_delay=0.001, lock_backoff=1.2
    )


@pytest.fixture
def local_store(tmp_path):
    store_dir = tmp_path / "store"
    return LocalVaultStore(
        store_dir, lock=StoreLock(store_dir / ".lock", attempts=50, delay=0.001, backoff=1.2)
    )


@pytest.fixture
def broker(settings):
    return SecretBroker.from_settings(settings)


@pytest.fixture
def memory_vault_locator(tmp_path):
    return write_vault(tmp_path, "memory_vault.py", MEMORY_VAULT) + ":MemoryVault"


@pytest.fixture
def readonly_vault_locator(tmp_path):
    return write_vault(tmp_path, "readonly_vault.py", READONLY_VAULT)


@pytest.fixture
def chatty_vault_locator(tmp_path):
    return write_vault(tmp_path, "chatty_vault.py", CHATTY_VAULT)

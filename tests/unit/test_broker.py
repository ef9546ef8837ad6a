"""Tests for the SecretBroker facade."""

import importlib
import sys
import threading
from pathlib import Path

import pytest

from secretbroker.vault import LOCAL_VAULT_NAME, SecretBroker
from secretbroker.vault.exceptions import (
    DuplicateNameError,
    ImplementationNotFoundError,
    OperationNotSupportedError,
    PartialEnumerationError,
    ReservedNameError,
    SecretNotFoundError,
    UnsupportedSecretTypeError,
    VaultInvocationError,
    VaultNotFoundError,
)
from secretbroker.vault.types import Credential, ProtectedString
from tests.conftest import write_vault

NO_ENUMERATION_VAULT = '''
__all__ = ["get_secret"]


def get_secret(name, vault_name, additional_parameters):
    return "fixed"
'''


def memory_of(broker, name):
    """The live MemoryVault instance behind a registration."""
    return broker.get_vault(name).implementation.instance


class TestScenarios:
    """End-to-end flows through the broker."""

    def test_register_then_add_to_extension(self, broker, memory_vault_locator):
        """Should marshal the string and store it via the vault's set."""
        # Arrange
        broker.register_vault("remote1", memory_vault_locator, {"endpoint": "x"})

        # Act
        broker.add_secret("k1", "hello", vault="remote1")

        # Assert
        memory = memory_of(broker, "remote1")
        assert memory.store == {"k1": "hello"}
        assert memory.calls[-1] == ("set_secret", "k1", {"endpoint": "x"})

    def test_unregistered_vault_is_not_found(self, broker, memory_vault_locator):
        # Arrange
        broker.register_vault("remote1", memory_vault_locator, {"endpoint": "x"})
        broker.add_secret("k1", "hello", vault="remote1")

        # Act
        broker.unregister_vault("remote1")

        # Assert
        with pytest.raises(VaultNotFoundError) as exc_info:
            broker.get_secret("k1", vault="remote1")
        assert "remote1" in str(exc_info.value)

    def test_nested_mapping_rejected_before_vault_call(self, broker, memory_vault_locator):
        # Arrange
        broker.register_vault("remote1", memory_vault_locator)

        # Act & Assert
        with pytest.raises(UnsupportedSecretTypeError):
            broker.add_secret("k2", {"outer": {"inner": "x"}}, vault="remote1")

        assert memory_of(broker, "remote1").calls == []

    def test_concurrent_adds_to_builtin_vault(self, broker):
        # Arrange
        errors = []

        def add(name):
            try:
                broker.add_secret(name, f"value-{name}")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=add, args=(name,)) for name in ["a", "b"]]

        # Act
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        # Assert
        assert errors == []
        assert broker.get_secret("a") == "value-a"
        assert broker.get_secret("b") == "value-b"


class TestRoundTrip:
    """Every supported type comes back structurally equal."""

    VALUES = [
        b"\x00\x01binary",
        "plain text",
        ProtectedString("protected"),
        Credential("alice", ProtectedString("pw")),
        {"user": "bob", "key": ProtectedString("k"), "blob": b"\xff"},
    ]

    @pytest.mark.parametrize("value", VALUES, ids=["bytes", "string", "protected", "credential", "mapping"])
    def test_builtin_vault(self, broker, value):
        broker.add_secret("item", value)
        assert broker.get_secret("item") == value

    @pytest.mark.parametrize("value", VALUES, ids=["bytes", "string", "protected", "credential", "mapping"])
    def test_extension_vault(self, broker, memory_vault_locator, value):
        broker.register_vault("mem", memory_vault_locator)
        broker.add_secret("item", value, vault="mem")
        assert broker.get_secret("item", vault="mem") == value

    def test_caller_gets_independent_copy(self, broker):
        """Disposing a returned value must not affect the stored one."""
        # Arrange
        broker.add_secret("p", ProtectedString("keep-me"))

        # Act
        broker.get_secret("p").dispose()

        # Assert
        assert broker.get_secret("p").reveal() == "keep-me"


class TestDefaultResolution:
    """Operations without a vault name go to the default vault."""

    def test_builtin_when_no_default(self, broker, memory_vault_locator):
        # Arrange
        broker.register_vault("mem", memory_vault_locator)

        # Act
        broker.add_secret("k", "v")

        # Assert
        assert broker.get_secret("k", vault=LOCAL_VAULT_NAME) == "v"
        assert memory_of(broker, "mem").store == {}

    def test_flagged_default_receives_operations(self, broker, memory_vault_locator):
        # Arrange
        broker.register_vault("mem", memory_vault_locator, is_default=True)

        # Act
        broker.add_secret("k", "v")

        # Assert
        assert memory_of(broker, "mem").store == {"k": "v"}
        assert broker.get_secret("k") == "v"
        with pytest.raises(SecretNotFoundError):
            broker.get_secret("k", vault=LOCAL_VAULT_NAME)

    def test_set_default_keeps_vault_state(self, broker, memory_vault_locator):
        """Changing the default flag reuses the loaded implementation."""
        # Arrange
        broker.register_vault("mem", memory_vault_locator)
        broker.add_secret("k", "v", vault="mem")

        # Act
        broker.set_default_vault("mem")

        # Assert
        assert broker.get_secret("k") == "v"

    def test_reset_default_to_builtin(self, broker, memory_vault_locator):
        # Arrange
        broker.register_vault("mem", memory_vault_locator, is_default=True)

        # Act
        broker.set_default_vault(LOCAL_VAULT_NAME)
        broker.add_secret("k", "v")

        # Assert
        assert broker.get_secret("k", vault=LOCAL_VAULT_NAME) == "v"

    def test_single_item_operations_do_not_search(self, broker, memory_vault_locator):
        """A secret only in another vault is not found through the default."""
        # Arrange
        broker.register_vault("mem", memory_vault_locator)
        broker.add_secret("only-in-mem", "v", vault="mem")

        # Act & Assert
        with pytest.raises(SecretNotFoundError):
            broker.get_secret("only-in-mem")


class TestSecretInfo:
    """Tests for enumeration across vaults."""

    def test_filter_applied_uniformly(self, broker, memory_vault_locator, readonly_vault_locator):
        """Vaults that ignore the filter still only contribute matches."""
        # Arrange
        broker.add_secret("ab1", "local")
        broker.add_secret("cd", "local")
        broker.register_vault("mem", memory_vault_locator)
        broker.add_secret("ab3", "m", vault="mem")
        broker.add_secret("zz", "m", vault="mem")
        broker.register_vault("ro", readonly_vault_locator)

        # Act
        infos = broker.get_secret_info("ab*")

        # Assert
        assert [(i.name, i.vault_name) for i in infos] == [
            ("ab1", LOCAL_VAULT_NAME),
            ("ab1", "ro"),
            ("ab2", "ro"),
            ("ab3", "mem"),
        ]

    def test_single_vault(self, broker, readonly_vault_locator):
        # Arrange
        broker.add_secret("ab-local", "v")
        broker.register_vault("ro", readonly_vault_locator)

        # Act
        infos = broker.get_secret_info("ab*", vault="ro")

        # Assert
        assert [i.name for i in infos] == ["ab1", "ab2"]

    def test_vault_without_enumeration_is_skipped(self, tmp_path, broker):
        # Arrange
        broker.add_secret("k", "v")
        broker.register_vault("fixed", write_vault(tmp_path, "fixed.py", NO_ENUMERATION_VAULT))

        # Act
        infos = broker.get_secret_info()

        # Assert
        assert [(i.name, i.vault_name) for i in infos] == [("k", LOCAL_VAULT_NAME)]

    def test_failing_vault_reported_with_partial_results(self, broker, chatty_vault_locator):
        # Arrange
        broker.add_secret("k", "v")
        broker.register_vault("chatty", chatty_vault_locator)

        # Act
        with pytest.raises(PartialEnumerationError) as exc_info:
            broker.get_secret_info()

        # Assert
        error = exc_info.value
        assert [i.name for i in error.results] == ["k"]
        assert list(error.failures) == ["chatty"]
        assert "chatty" in str(error)

    def test_unloadable_vault_reported(self, tmp_path, settings, broker):
        """A registration whose implementation vanished fails only itself."""
        # Arrange
        locator = write_vault(tmp_path, "gone.py", NO_ENUMERATION_VAULT)
        broker.register_vault("gone", locator)
        broker.add_secret("k", "v")
        Path(locator).unlink()
        fresh = SecretBroker.from_settings(settings)

        # Act
        with pytest.raises(PartialEnumerationError) as exc_info:
            fresh.get_secret_info()

        # Assert
        assert [i.name for i in exc_info.value.results] == ["k"]
        assert isinstance(exc_info.value.failures["gone"], ImplementationNotFoundError)

    def test_dotted_vault_failing_at_import_reported(self, tmp_path, monkeypatch, settings, broker):
        """A dotted-module vault that breaks on import does not abort the fan-out."""
        # Arrange
        module_name = "fanout_dotted_vault"
        write_vault(tmp_path, f"{module_name}.py", NO_ENUMERATION_VAULT)
        monkeypatch.syspath_prepend(str(tmp_path))
        broker.register_vault("dotted", module_name)
        broker.add_secret("k", "v")
        write_vault(tmp_path, f"{module_name}.py", "raise RuntimeError('dependency missing')\n")
        monkeypatch.delitem(sys.modules, module_name, raising=False)
        importlib.invalidate_caches()
        fresh = SecretBroker.from_settings(settings)

        # Act
        with pytest.raises(PartialEnumerationError) as exc_info:
            fresh.get_secret_info("*")

        # Assert
        assert [(i.name, i.vault_name) for i in exc_info.value.results] == [("k", LOCAL_VAULT_NAME)]
        failure = exc_info.value.failures["dotted"]
        assert isinstance(failure, ImplementationNotFoundError)
        assert "dependency missing" in str(failure)


class TestAddSecret:
    """Tests for add_secret edge cases."""

    def test_unsupported_set_is_reported(self, broker, readonly_vault_locator):
        # Arrange
        broker.register_vault("ro", readonly_vault_locator)

        # Act & Assert
        with pytest.raises(OperationNotSupportedError) as exc_info:
            broker.add_secret("new", "v", vault="ro")

        assert exc_info.value.vault_name == "ro"

    def test_unsupported_value_type(self, broker):
        with pytest.raises(UnsupportedSecretTypeError):
            broker.add_secret("k", 42)

    @pytest.mark.parametrize("vault", [None, "mem"])
    def test_disposed_credential_rejected_before_vault_call(self, broker, memory_vault_locator, vault):
        # Arrange
        broker.register_vault("mem", memory_vault_locator)
        password = ProtectedString("pw")
        credential = Credential("alice", password)
        password.dispose()

        # Act & Assert
        with pytest.raises(UnsupportedSecretTypeError):
            broker.add_secret("c", credential, vault=vault)

        assert memory_of(broker, "mem").calls == []
        assert broker.get_secret_info() == []

    def test_no_clobber_on_extension_vault(self, broker, memory_vault_locator):
        # Arrange
        broker.register_vault("mem", memory_vault_locator)
        broker.add_secret("k", "old", vault="mem")

        # Act & Assert
        with pytest.raises(DuplicateNameError):
            broker.add_secret("k", "new", vault="mem", no_clobber=True)

        assert broker.get_secret("k", vault="mem") == "old"

    def test_no_clobber_treats_wildcards_literally(self, broker, memory_vault_locator):
        # Arrange
        broker.register_vault("mem", memory_vault_locator)
        broker.add_secret("a-real", "v", vault="mem")

        # Act
        broker.add_secret("a*", "star", vault="mem", no_clobber=True)

        # Assert
        assert broker.get_secret("a*", vault="mem") == "star"

    def test_additional_parameters_override_stored(self, broker, memory_vault_locator):
        # Arrange
        broker.register_vault("mem", memory_vault_locator, {"endpoint": "x"})

        # Act
        broker.add_secret("k", "v", vault="mem", additional_parameters={"endpoint": "y"})

        # Assert
        assert memory_of(broker, "mem").calls[-1] == ("set_secret", "k", {"endpoint": "y"})


class TestVaultManagement:
    """Tests for registration through the broker."""

    def test_get_vaults_lists_builtin_first(self, broker, memory_vault_locator):
        # Arrange
        broker.register_vault("mem", memory_vault_locator)

        # Act
        vaults = broker.get_vaults()

        # Assert
        assert [(v.name, v.is_default) for v in vaults] == [
            (LOCAL_VAULT_NAME, True),
            ("mem", False),
        ]

    def test_builtin_not_default_when_another_is(self, broker, memory_vault_locator):
        broker.register_vault("mem", memory_vault_locator, is_default=True)
        assert [v.is_default for v in broker.get_vaults()] == [False, True]

    def test_unloadable_locator_not_registered(self, tmp_path, broker):
        # Act & Assert
        with pytest.raises(ImplementationNotFoundError):
            broker.register_vault("bad", str(tmp_path / "missing.py"))

        assert [v.name for v in broker.get_vaults()] == [LOCAL_VAULT_NAME]

    def test_nested_parameters_rejected(self, broker, memory_vault_locator):
        with pytest.raises(UnsupportedSecretTypeError):
            broker.register_vault("mem", memory_vault_locator, {"nested": {"a": "b"}})

    def test_builtin_name_reserved(self, broker, memory_vault_locator):
        with pytest.raises(ReservedNameError):
            broker.register_vault(LOCAL_VAULT_NAME, memory_vault_locator)
        with pytest.raises(ReservedNameError):
            broker.unregister_vault(LOCAL_VAULT_NAME.lower())

    def test_duplicate_registration(self, broker, memory_vault_locator):
        # Arrange
        broker.register_vault("mem", memory_vault_locator)

        # Act & Assert
        with pytest.raises(DuplicateNameError):
            broker.register_vault("mem", memory_vault_locator)

    def test_name_conflicts_checked_before_loading(self, tmp_path, broker, memory_vault_locator):
        """Implementation code never runs for a name that cannot be registered."""
        # Arrange
        marker = tmp_path / "loaded"
        locator = write_vault(
            tmp_path, "side_effect_vault.py", f"open({str(marker)!r}, 'w').close()\n"
        )
        broker.register_vault("mem", memory_vault_locator)

        # Act & Assert
        with pytest.raises(DuplicateNameError):
            broker.register_vault("MEM", locator)
        with pytest.raises(ReservedNameError):
            broker.register_vault(LOCAL_VAULT_NAME, locator)

        assert not marker.exists()

    def test_unregister_isolated_from_other_vaults(self, broker, memory_vault_locator, readonly_vault_locator):
        """Removing one vault leaves other vaults and their parameters alone."""
        # Arrange
        broker.add_secret("local-secret", "v")
        broker.register_vault("mem", memory_vault_locator, {"endpoint": "x"})
        broker.add_secret("k", "m", vault="mem")
        broker.register_vault("ro", readonly_vault_locator, {"endpoint": "gone"})

        # Act
        broker.unregister_vault("ro")

        # Assert
        assert broker.get_secret("local-secret") == "v"
        assert broker.get_secret("k", vault="mem") == "m"
        mem = broker.registry.get("mem")
        assert broker.local_store.get_parameters(mem.parameters_ref) == {"endpoint": "x"}

    def test_test_vault(self, broker, memory_vault_locator):
        # Arrange
        broker.register_vault("configured", memory_vault_locator, {"endpoint": "x"})
        broker.register_vault("bare", memory_vault_locator)

        # Act & Assert
        assert broker.test_vault() is True
        assert broker.test_vault("configured") is True
        with pytest.raises(VaultInvocationError):
            broker.test_vault("bare")

    def test_test_vault_unknown(self, broker):
        with pytest.raises(VaultNotFoundError):
            broker.test_vault("ghost")

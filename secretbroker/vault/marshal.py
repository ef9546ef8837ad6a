"""
Type marshaling at the broker/vault boundary.

Every value crossing the boundary is converted to a WireSecret: a
(SecretType, payload) pair whose payload is a fresh copy owned by the
receiver.

Payload forms:
    BYTES             bytes
    STRING            str
    PROTECTED_STRING  ProtectedString (copy)
    CREDENTIAL        (username, ProtectedString)
    MAPPING           tuple of (key, WireSecret), insertion order kept
"""

import base64
from collections.abc import Mapping
from typing import Any

from secretbroker.vault.exceptions import UnsupportedSecretTypeError
from secretbroker.vault.types import (
    Credential,
    ProtectedString,
    SecretType,
    WireSecret,
)

SCALAR_TYPES = (
    SecretType.BYTES,
    SecretType.STRING,
    SecretType.PROTECTED_STRING,
    SecretType.CREDENTIAL,
)


def type_of(value: Any) -> SecretType:
    """
    Classify a value into the closed type set.

    Raises:
        UnsupportedSecretTypeError: For anything outside the set
    """
    if isinstance(value, (bytes, bytearray)):
        return SecretType.BYTES
    if isinstance(value, str):
        return SecretType.STRING
    if isinstance(value, ProtectedString):
        return SecretType.PROTECTED_STRING
    if isinstance(value, Credential):
        return SecretType.CREDENTIAL
    if isinstance(value, Mapping):
        return SecretType.MAPPING
    raise UnsupportedSecretTypeError(
        f"Unsupported secret type: {type(value).__name__}"
    )


def parse_type(tag: Any) -> SecretType:
    """Convert a tag to SecretType without coercing unknown tags."""
    if isinstance(tag, SecretType):
        return tag
    try:
        return SecretType(tag)
    except ValueError:
        raise UnsupportedSecretTypeError(f"Unsupported secret type tag: {tag!r}")


def validate(value: Any) -> SecretType:
    """Check a value (including mapping members) without copying it."""
    secret_type = type_of(value)
    if secret_type is SecretType.MAPPING:
        _validate_mapping(value)
    elif secret_type is SecretType.PROTECTED_STRING and value.disposed:
        raise UnsupportedSecretTypeError("ProtectedString has been disposed")
    elif secret_type is SecretType.CREDENTIAL and value.password.disposed:
        raise UnsupportedSecretTypeError("Credential password has been disposed")
    return secret_type


def marshal(value: Any) -> WireSecret:
    """Convert a secret value to its tagged wire form."""
    secret_type = validate(value)
    if secret_type is SecretType.MAPPING:
        return WireSecret(
            SecretType.MAPPING,
            tuple((key, _marshal_scalar(item)) for key, item in value.items()),
        )
    return _marshal_scalar(value)


def unmarshal(wire: Any) -> Any:
    """Convert a wire value back to a live secret value."""
    if not isinstance(wire, WireSecret):
        raise UnsupportedSecretTypeError(
            f"Expected a WireSecret, got {type(wire).__name__}"
        )
    secret_type = parse_type(wire.type)
    if secret_type is SecretType.MAPPING:
        if not isinstance(wire.payload, tuple):
            raise UnsupportedSecretTypeError("Mapping payload must be a tuple of entries")
        result = {}
        for entry in wire.payload:
            if not (isinstance(entry, tuple) and len(entry) == 2 and isinstance(entry[0], str)):
                raise UnsupportedSecretTypeError("Malformed mapping entry")
            key, item = entry
            if not isinstance(item, WireSecret) or parse_type(item.type) not in SCALAR_TYPES:
                raise UnsupportedSecretTypeError(
                    f"Mapping entry '{key}' must be a non-mapping secret type"
                )
            result[key] = _unmarshal_scalar(item)
        return result
    return _unmarshal_scalar(wire)


def to_document(wire: WireSecret) -> dict:
    """
    Render a wire value as a JSON-compatible document.

    Protected values appear in plaintext in the result, which must only be
    handed straight to the encryption layer.
    """
    secret_type = parse_type(wire.type)
    payload = wire.payload
    if secret_type is SecretType.BYTES:
        data = base64.b64encode(payload).decode("ascii")
    elif secret_type is SecretType.STRING:
        data = payload
    elif secret_type is SecretType.PROTECTED_STRING:
        data = payload.reveal()
    elif secret_type is SecretType.CREDENTIAL:
        username, password = payload
        data = {"username": username, "password": password.reveal()}
    else:
        data = [[key, to_document(item)] for key, item in payload]
    return {"type": secret_type.value, "data": data}


def from_document(document: Any) -> WireSecret:
    """Inverse of to_document. Rejects unknown tags and malformed payloads."""
    if not isinstance(document, dict) or "type" not in document:
        raise UnsupportedSecretTypeError("Malformed secret document")
    secret_type = parse_type(document["type"])
    data = document.get("data")
    try:
        if secret_type is SecretType.BYTES:
            return WireSecret(secret_type, base64.b64decode(data, validate=True))
        if secret_type is SecretType.STRING:
            _require(isinstance(data, str))
            return WireSecret(secret_type, data)
        if secret_type is SecretType.PROTECTED_STRING:
            _require(isinstance(data, str))
            return WireSecret(secret_type, ProtectedString(data))
        if secret_type is SecretType.CREDENTIAL:
            _require(isinstance(data, dict) and isinstance(data.get("username"), str))
            return WireSecret(
                secret_type,
                (data["username"], ProtectedString(data["password"])),
            )
        _require(isinstance(data, list))
        items = []
        for key, item in data:
            entry = from_document(item)
            if entry.type is SecretType.MAPPING:
                raise UnsupportedSecretTypeError(
                    f"Nested mapping under key '{key}' is not supported"
                )
            items.append((key, entry))
        return WireSecret(secret_type, tuple(items))
    except (TypeError, ValueError, KeyError) as e:
        raise UnsupportedSecretTypeError(
            f"Malformed {secret_type.value} payload: {type(e).__name__}"
        ) from e


def _require(condition: bool) -> None:
    if not condition:
        raise ValueError("unexpected payload shape")


def _validate_mapping(value: Mapping) -> None:
    for key, item in value.items():
        if not isinstance(key, str):
            raise UnsupportedSecretTypeError(
                f"Mapping keys must be strings, got {type(key).__name__}"
            )
        item_type = type_of(item)
        if item_type is SecretType.MAPPING:
            raise UnsupportedSecretTypeError(
                f"Nested mapping under key '{key}' is not supported"
            )
        if item_type is SecretType.PROTECTED_STRING and item.disposed:
            raise UnsupportedSecretTypeError(
                f"ProtectedString under key '{key}' has been disposed"
            )
        if item_type is SecretType.CREDENTIAL and item.password.disposed:
            raise UnsupportedSecretTypeError(
                f"Credential password under key '{key}' has been disposed"
            )


def _marshal_scalar(value: Any) -> WireSecret:
    secret_type = type_of(value)
    if secret_type is SecretType.BYTES:
        return WireSecret(secret_type, bytes(value))
    if secret_type is SecretType.STRING:
        return WireSecret(secret_type, value)
    if secret_type is SecretType.PROTECTED_STRING:
        return WireSecret(secret_type, value.copy())
    if secret_type is SecretType.CREDENTIAL:
        return WireSecret(secret_type, (value.username, value.password.copy()))
    raise UnsupportedSecretTypeError("Nested mappings are not supported")


def _unmarshal_scalar(wire: WireSecret) -> Any:
    secret_type = parse_type(wire.type)
    payload = wire.payload
    if secret_type is SecretType.BYTES and isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    if secret_type is SecretType.STRING and isinstance(payload, str):
        return payload
    if secret_type is SecretType.PROTECTED_STRING and isinstance(payload, ProtectedString):
        return payload.copy()
    if (
        secret_type is SecretType.CREDENTIAL
        and isinstance(payload, tuple)
        and len(payload) == 2
        and isinstance(payload[0], str)
        and isinstance(payload[1], ProtectedString)
    ):
        return Credential(payload[0], payload[1].copy())
    raise UnsupportedSecretTypeError(
        f"Payload does not match type tag '{secret_type.value}'"
    )

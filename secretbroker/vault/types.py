"""Secret value types supported by the broker."""

import hmac
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Any, NamedTuple


class SecretType(str, Enum):
    """Closed set of secret types that may cross the broker/vault boundary."""

    BYTES = "bytes"
    STRING = "string"
    PROTECTED_STRING = "protected_string"
    CREDENTIAL = "credential"
    MAPPING = "mapping"


class ProtectedString:
    """
    In-memory-only sensitive string.

    The characters are kept XOR-masked in a bytearray and only unmasked by
    reveal(). Buffers are zeroed on dispose(), on context exit and when the
    object is collected. There is no implicit conversion to a plain str:
    repr(), str() and format() all render a mask.

    Usage:
        with ProtectedString("hunter2") as pw:
            connect(password=pw.reveal())
    """

    __slots__ = ("_masked", "_pad", "_disposed")

    def __init__(self, value: str = ""):
        if not isinstance(value, str):
            raise TypeError("ProtectedString requires a str value")
        raw = bytearray(value.encode("utf-8"))
        self._pad = bytearray(secrets.token_bytes(len(raw)))
        self._masked = bytearray(b ^ p for b, p in zip(raw, self._pad))
        self._disposed = False
        zero_buffer(raw)

    @classmethod
    def from_bytes(cls, data: bytearray) -> "ProtectedString":
        """Build from utf-8 bytes and zero the source buffer."""
        try:
            return cls(bytes(data).decode("utf-8"))
        finally:
            if isinstance(data, bytearray):
                zero_buffer(data)

    def reveal(self) -> str:
        """Return the plaintext. Keep the result short-lived."""
        if self._disposed:
            raise ValueError("ProtectedString has been disposed")
        raw = bytearray(b ^ p for b, p in zip(self._masked, self._pad))
        try:
            return raw.decode("utf-8")
        finally:
            zero_buffer(raw)

    def copy(self) -> "ProtectedString":
        clone = ProtectedString.__new__(ProtectedString)
        clone._pad = bytearray(secrets.token_bytes(len(self._masked)))
        clone._masked = bytearray(
            m ^ p ^ q for m, p, q in zip(self._masked, self._pad, clone._pad)
        )
        clone._disposed = self._disposed
        return clone

    def dispose(self) -> None:
        zero_buffer(self._masked)
        zero_buffer(self._pad)
        self._disposed = True

    @property
    def disposed(self) -> bool:
        return self._disposed

    def __len__(self) -> int:
        return len(self._masked)

    def __enter__(self) -> "ProtectedString":
        return self

    def __exit__(self, *exc_info) -> None:
        self.dispose()

    def __del__(self):
        try:
            self.dispose()
        except AttributeError:
            pass

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ProtectedString):
            return NotImplemented
        if self._disposed or other._disposed:
            return False
        left = bytearray(b ^ p for b, p in zip(self._masked, self._pad))
        right = bytearray(b ^ p for b, p in zip(other._masked, other._pad))
        try:
            return hmac.compare_digest(bytes(left), bytes(right))
        finally:
            zero_buffer(left)
            zero_buffer(right)

    __hash__ = None

    def __repr__(self) -> str:
        return "ProtectedString('****')"

    __str__ = __repr__

    def __format__(self, format_spec: str) -> str:
        return repr(self)

    def __reduce__(self):
        raise TypeError("ProtectedString cannot be pickled")


@dataclass(eq=True)
class Credential:
    """Username plus a protected secret value."""

    username: str
    password: ProtectedString

    def __post_init__(self):
        if not isinstance(self.username, str):
            raise TypeError("Credential username must be a str")
        if isinstance(self.password, str):
            self.password = ProtectedString(self.password)
        if not isinstance(self.password, ProtectedString):
            raise TypeError("Credential password must be a ProtectedString")

    def __repr__(self) -> str:
        return f"Credential(username={self.username!r}, password=****)"


@dataclass(frozen=True)
class SecretInfo:
    """Metadata about a stored secret. Never carries the value."""

    name: str
    type: SecretType
    vault_name: str


class WireSecret(NamedTuple):
    """Tagged (type, payload) pair used at every broker/vault crossing."""

    type: SecretType
    payload: Any

    def __repr__(self) -> str:
        return f"WireSecret(type={self.type.value}, payload=****)"


def zero_buffer(buf: bytearray) -> None:
    for i in range(len(buf)):
        buf[i] = 0

"""
User-scoped data protection for the local store.

AES-256-GCM keyed by a 32-byte random key kept in a file readable only by
the owning user (chmod 600). Every blob gets its own 12-byte nonce, which is
prepended to the ciphertext. The record name is bound as associated data so
a blob only decrypts under the name it was written for.
"""

import os
import secrets
import stat
import tempfile
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from secretbroker.utils.logging import get_logger
from secretbroker.vault.exceptions import StorageCorruptionError

logger = get_logger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


class UserScopeProtector:
    """Encrypts and decrypts blobs with the current user's protection key."""

    def __init__(self, key_file: Path):
        self.key_file = Path(key_file)
        self._key: bytes | None = None

    def init_key(self) -> Path:
        """Generate the key file if it does not exist yet. Idempotent."""
        if self.key_file.exists():
            return self.key_file
        self.key_file.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(prefix=".key_", dir=self.key_file.parent)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(secrets.token_bytes(KEY_SIZE))
                f.flush()
                os.fsync(f.fileno())
            os.chmod(temp_path, stat.S_IRUSR | stat.S_IWUSR)
            # link() refuses to overwrite, so concurrent creators agree on one key
            os.link(temp_path, self.key_file)
            logger.info(f"Created protection key at {self.key_file}")
        except FileExistsError:
            pass
        finally:
            os.unlink(temp_path)
        return self.key_file

    def _load_key(self) -> bytes:
        if self._key is not None:
            return self._key
        try:
            key = self.key_file.read_bytes()
        except FileNotFoundError:
            self.init_key()
            key = self.key_file.read_bytes()
        if len(key) != KEY_SIZE:
            raise StorageCorruptionError(
                f"Protection key must be {KEY_SIZE} bytes, got {len(key)}"
            )
        self._key = key
        return key

    def protect(self, plaintext: bytes, context: str) -> bytes:
        nonce = secrets.token_bytes(NONCE_SIZE)
        return nonce + AESGCM(self._load_key()).encrypt(
            nonce, bytes(plaintext), context.encode("utf-8")
        )

    def unprotect(self, data: bytes, context: str) -> bytearray:
        """
        Decrypt a blob written by protect().

        Returns a bytearray so the caller can zero it after use.

        Raises:
            StorageCorruptionError: Truncated blob, wrong key or wrong context
        """
        if len(data) < NONCE_SIZE + TAG_SIZE:
            raise StorageCorruptionError(f"Encrypted record '{context}' is truncated")
        try:
            plaintext = AESGCM(self._load_key()).decrypt(
                data[:NONCE_SIZE], data[NONCE_SIZE:], context.encode("utf-8")
            )
        except InvalidTag as e:
            raise StorageCorruptionError(
                f"Encrypted record '{context}' could not be decrypted"
            ) from e
        return bytearray(plaintext)

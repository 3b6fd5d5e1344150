"""Authenticated encryption for vaulted provider secrets."""

import os
from typing import NamedTuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

IV_LENGTH = 16
TAG_LENGTH = 16
ASSOCIATED_DATA = b"apikey"
MIN_KEY_LENGTH = 32


class EncryptionError(Exception):
    """Raised when encryption/decryption operations fail."""

    pass


class EncryptedSecret(NamedTuple):
    """Ciphertext, IV and tag of one encrypted secret."""

    ciphertext: bytes
    iv: bytes
    tag: bytes


class EncryptionService:
    """Service for encrypting and decrypting provider secrets using AES-256-GCM.

    A 256-bit key is derived from the configured encryption key with PBKDF2.
    Every encryption uses a fresh random 16-byte IV and binds the fixed
    associated data `apikey`, so a ciphertext cannot be replayed into another
    context without failing authentication.
    """

    def __init__(
        self,
        encryption_key: str,
        salt: str = "credbroker-vault-salt",
        iterations: int = 100000,
    ) -> None:
        """Initialize EncryptionService with encryption key.

        Args:
            encryption_key: Server-held encryption key string.
            salt: Salt for key derivation.
            iterations: PBKDF2 iteration count.

        Raises:
            EncryptionError: If the key is missing or shorter than 32 characters.
        """
        if not encryption_key or len(encryption_key) < MIN_KEY_LENGTH:
            raise EncryptionError(
                f"Encryption key must be at least {MIN_KEY_LENGTH} characters long"
            )

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode(),
            iterations=iterations,
        )
        self._key = kdf.derive(encryption_key.encode())
        self._aesgcm = AESGCM(self._key)

    @property
    def key_bytes(self) -> bytes:
        """Derived 256-bit key, used as input keying material for audit signatures."""
        return self._key

    def encrypt(self, plaintext: str) -> EncryptedSecret:
        """Encrypt a secret.

        Args:
            plaintext: Plain text secret to encrypt.

        Returns:
            EncryptedSecret with ciphertext, IV and authentication tag.

        Raises:
            EncryptionError: If encryption fails.
        """
        try:
            iv = os.urandom(IV_LENGTH)
            sealed = self._aesgcm.encrypt(iv, plaintext.encode(), ASSOCIATED_DATA)
        except Exception as e:
            raise EncryptionError(f"Failed to encrypt secret: {e}") from e
        return EncryptedSecret(
            ciphertext=sealed[:-TAG_LENGTH],
            iv=iv,
            tag=sealed[-TAG_LENGTH:],
        )

    def decrypt(self, secret: EncryptedSecret) -> str:
        """Decrypt a secret.

        Args:
            secret: Ciphertext, IV and tag produced by `encrypt`.

        Returns:
            Decrypted plain text secret.

        Raises:
            EncryptionError: If authentication or decryption fails.
        """
        try:
            decrypted = self._aesgcm.decrypt(
                secret.iv,
                secret.ciphertext + secret.tag,
                ASSOCIATED_DATA,
            )
        except InvalidTag as e:
            raise EncryptionError("Failed to decrypt secret: authentication tag mismatch") from e
        except Exception as e:
            raise EncryptionError(f"Failed to decrypt secret: {e}") from e
        return decrypted.decode()

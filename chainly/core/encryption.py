"""Credential encryption using AES-256-GCM.

Provides authenticated encryption for credential values using the cryptography library.
All credential values are encrypted before storage and decrypted only when needed.

Envelope format: ``base64url(iv):base64url(auth_tag):base64url(ciphertext)``

SECURITY NOTES:
- The 256-bit key is the SHA-256 digest of the configured master secret
- A fresh 128-bit IV is drawn for every encryption
- Never log decrypted credential values
- Clear decrypted values from memory as soon as possible
"""

import base64
import binascii
import hashlib
import os

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from chainly.config import MIN_ENCRYPTION_KEY_LENGTH

logger = structlog.get_logger()

IV_LENGTH = 16
AUTH_TAG_LENGTH = 16


class EncryptionError(Exception):
    """Base exception for encryption operations."""

    pass


class EncryptionKeyError(EncryptionError):
    """Invalid or missing encryption key."""

    pass


class DecryptionError(EncryptionError):
    """Failed to decrypt data."""

    pass


class InvalidEnvelopeError(DecryptionError):
    """Encrypted value is not a well-formed ``iv:tag:ciphertext`` envelope."""

    pass


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def derive_key(master_secret: str | None) -> bytes:
    """Derive the 256-bit vault key from the master secret.

    Raises:
        EncryptionKeyError: If the secret is missing or too short
    """
    if not master_secret:
        raise EncryptionKeyError("ENCRYPTION_KEY is not set")
    if len(master_secret) < MIN_ENCRYPTION_KEY_LENGTH:
        raise EncryptionKeyError(
            f"ENCRYPTION_KEY must be at least {MIN_ENCRYPTION_KEY_LENGTH} characters long for AES-256"
        )
    return hashlib.sha256(master_secret.encode("utf-8")).digest()


class CredentialEncryption:
    """AES-256-GCM credential encryption.

    Stateless apart from the derived key - can be shared across requests.

    Example usage:
        encryption = CredentialEncryption(master_secret)
        envelope = encryption.encrypt("sk-...")
        plaintext = encryption.decrypt(envelope)
    """

    def __init__(self, master_secret: str | None) -> None:
        """Initialize with the configured master secret.

        Args:
            master_secret: Secret of at least 32 characters

        Raises:
            EncryptionKeyError: If the secret is missing or too short
        """
        self._aesgcm = AESGCM(derive_key(master_secret))
        logger.debug("encryption_initialized")

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a credential value.

        Args:
            plaintext: Value to encrypt (must be non-empty)

        Returns:
            Envelope string ``iv:tag:ciphertext``

        Raises:
            EncryptionError: If the value is empty or encryption fails
        """
        if not plaintext:
            raise EncryptionError("Cannot encrypt empty value")

        iv = os.urandom(IV_LENGTH)
        try:
            sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        except Exception as e:
            logger.error("encryption_failed", error_type=type(e).__name__)
            raise EncryptionError("Failed to encrypt credential value") from e

        # AESGCM appends the tag to the ciphertext
        ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        return f"{_b64encode(iv)}:{_b64encode(tag)}:{_b64encode(ciphertext)}"

    def decrypt(self, envelope: str) -> str:
        """Decrypt a credential envelope.

        Args:
            envelope: Value produced by encrypt()

        Returns:
            Decrypted plaintext

        Raises:
            InvalidEnvelopeError: If the envelope is malformed
            DecryptionError: If the integrity check fails (wrong key, tampering)
        """
        if not envelope:
            raise InvalidEnvelopeError("Cannot decrypt empty value")

        parts = envelope.split(":")
        if len(parts) != 3:
            raise InvalidEnvelopeError("Invalid encrypted data format")

        try:
            iv, tag, ciphertext = (_b64decode(part) for part in parts)
        except (binascii.Error, ValueError) as e:
            raise InvalidEnvelopeError("Encrypted data is not valid base64url") from e

        if len(iv) != IV_LENGTH:
            raise InvalidEnvelopeError("Invalid IV length")
        if len(tag) != AUTH_TAG_LENGTH:
            raise InvalidEnvelopeError("Invalid auth tag length")

        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            logger.warning("decryption_invalid_tag")
            raise DecryptionError(
                "Failed to decrypt: integrity check failed (wrong key or corrupted data)"
            ) from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted data is not valid UTF-8") from e

    def rotate_key(self, envelope: str, new_master_secret: str) -> str:
        """Re-encrypt an envelope under a new master secret.

        Used for key rotation without data loss.

        Raises:
            EncryptionError: If decryption with the current key or re-encryption fails
        """
        plaintext = self.decrypt(envelope)
        re_encrypted = CredentialEncryption(new_master_secret).encrypt(plaintext)
        logger.info("credential_key_rotated")
        return re_encrypted


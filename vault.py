# GoClaw Credential Vault
# AES-256-GCM sealing for channel tokens and API keys stored on deployment records.
#
# Stored format: "<nonce>:<ciphertext>:<tag>", all hex. The nonce is 12 random
# bytes per call; the tag is the 16-byte GCM authentication tag.

import binascii
import os
import secrets
import threading

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from errors import ConfigurationError, DecryptionError, ValidationError

KEY_ENV = "GOCLAW_ENCRYPTION_KEY"
KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16


def generate_key():
    """Return a fresh 256-bit key as 64 hex characters."""
    return secrets.token_hex(KEY_BYTES)


def _parse_key(hex_key):
    if not hex_key:
        raise ConfigurationError(KEY_ENV, "encryption key is not configured")
    try:
        key = bytes.fromhex(hex_key.strip())
    except ValueError:
        raise ConfigurationError(KEY_ENV, "encryption key must be hex encoded")
    if len(key) != KEY_BYTES:
        raise ConfigurationError(
            KEY_ENV, f"encryption key must be {KEY_BYTES * 2} hex characters"
        )
    return key


class CredentialVault:
    """Encrypts and decrypts secrets at rest.

    decrypt() never returns a default: a tampered payload, a truncated
    payload and a payload sealed under another key all raise DecryptionError.
    """

    def __init__(self, hex_key=None):
        if hex_key is None:
            hex_key = os.environ.get(KEY_ENV, "")
        self._aead = AESGCM(_parse_key(hex_key))

    def encrypt(self, plaintext: str) -> str:
        try:
            data = plaintext.encode("utf-8")
        except UnicodeEncodeError:
            raise ValidationError("plaintext", "not encodable as UTF-8")
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, data, None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return f"{nonce.hex()}:{ciphertext.hex()}:{tag.hex()}"

    def decrypt(self, payload: str) -> str:
        if not isinstance(payload, str):
            raise DecryptionError("Encrypted value is missing")

        parts = payload.split(":")
        if len(parts) != 3:
            raise DecryptionError("Invalid encrypted format")

        try:
            nonce, ciphertext, tag = (binascii.unhexlify(p) for p in parts)
        except (binascii.Error, ValueError):
            raise DecryptionError("Invalid encrypted format: not hex encoded")

        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise DecryptionError("Invalid encrypted format: bad nonce or tag length")

        try:
            plain = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            raise DecryptionError(
                "Failed to decrypt credentials: authentication failed "
                "(tampered data or wrong key)"
            )

        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError("Failed to decrypt credentials: not valid UTF-8")


# ── Singleton ─────────────────────────────────────────────────────────

_vault = None
_vault_lock = threading.Lock()


def get_vault():
    global _vault
    if _vault is not None:
        return _vault
    with _vault_lock:
        if _vault is None:
            _vault = CredentialVault()
        return _vault

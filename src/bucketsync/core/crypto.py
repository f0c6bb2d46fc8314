"""Credential decryption for bucketsync.

Storage credentials arrive from the coordination service encrypted with
AES-256-GCM and encoded as ``iv:ciphertext:auth_tag`` (each part hex).
"""

from __future__ import annotations

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_SIZE = 32  # 256 bits


class CredentialError(Exception):
    """Raised when a stored credential cannot be decrypted."""


def decrypt_credential(value: str | None, key: bytes | None) -> str | None:
    """Decrypt a stored credential.

    Values that are empty or not in ``iv:ciphertext:tag`` form are returned
    unchanged, since older accounts store plain credentials.

    Args:
        value: Stored credential string.
        key: 32-byte AES key.

    Returns:
        The plaintext credential.

    Raises:
        CredentialError: If the value is encrypted and cannot be decrypted.
    """
    if not value:
        return value
    parts = value.split(":")
    if len(parts) != 3:
        return value
    if key is None or len(key) != KEY_SIZE:
        raise CredentialError("A 32-byte encryption key is required for encrypted credentials")

    iv_hex, ciphertext_hex, tag_hex = parts
    try:
        iv = bytes.fromhex(iv_hex)
        # AESGCM expects the tag appended to the ciphertext
        sealed = bytes.fromhex(ciphertext_hex) + bytes.fromhex(tag_hex)
        return AESGCM(key).decrypt(iv, sealed, None).decode("utf-8")
    except Exception as e:
        raise CredentialError(f"Failed to decrypt credential: {e}") from e


def encrypt_credential(value: str, key: bytes, iv: bytes) -> str:
    """Encrypt a credential into ``iv:ciphertext:tag`` form.

    Args:
        value: Plaintext credential.
        key: 32-byte AES key.
        iv: Nonce (12 bytes recommended).

    Returns:
        Encoded credential string.
    """
    sealed = AESGCM(key).encrypt(iv, value.encode("utf-8"), None)
    ciphertext, tag = sealed[:-16], sealed[-16:]
    return f"{iv.hex()}:{ciphertext.hex()}:{tag.hex()}"

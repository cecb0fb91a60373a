"""
Credential Cipher
=================
PBKDF2-SHA256 key derivation + AES-256-GCM authenticated encryption.

Every call draws a fresh salt and IV, so encrypting the same plaintext twice
with the same key material never yields the same blob. The KDF is slow on
purpose; the async variants run it in the default executor so the event loop
keeps serving other instances.
"""

import asyncio
import base64
import binascii
import os
import secrets
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .models import EncryptedBlob, DecryptionError

PBKDF2_ITERATIONS = 100_000
SALT_LENGTH = 16
IV_LENGTH = 12
KEY_LENGTH = 32

MASTER_PASSWORD_CHARSET = (
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789!@#$%^&*"
)


def generate_master_password(length: int = 32) -> str:
    """
    Generate a random master password from a fixed, storage-safe alphabet.

    Args:
        length: Number of characters

    Returns:
        Random string suitable as key material
    """
    if length <= 0:
        raise ValueError("length must be positive")
    return "".join(secrets.choice(MASTER_PASSWORD_CHARSET) for _ in range(length))


def _to_bytes(value: Union[str, bytes]) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return value


def _b64decode(value: str, field: str) -> bytes:
    try:
        return base64.b64decode(value.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
        raise DecryptionError("Malformed encrypted blob", reason=f"bad_{field}") from exc


class CredentialCipher:
    """
    Symmetric encryption of secrets at rest.

    Example:
        cipher = CredentialCipher()
        blob = await cipher.encrypt("pihole-password", master_key)
        password = await cipher.decrypt(blob, master_key)
    """

    def __init__(self, iterations: int = PBKDF2_ITERATIONS):
        if iterations < PBKDF2_ITERATIONS:
            raise ValueError(
                f"PBKDF2 iterations must be at least {PBKDF2_ITERATIONS}, got {iterations}"
            )
        self.iterations = iterations

    def derive_key(self, key_material: Union[str, bytes], salt: bytes) -> bytes:
        """Derive a 256-bit AES key from key material and salt."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(_to_bytes(key_material))

    def encrypt_sync(self, plaintext: str, key_material: Union[str, bytes]) -> EncryptedBlob:
        """Encrypt plaintext. Blocking; prefer `encrypt` inside the event loop."""
        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        key = self.derive_key(key_material, salt)
        ciphertext = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        return EncryptedBlob(
            ciphertext=base64.b64encode(ciphertext).decode("ascii"),
            salt=base64.b64encode(salt).decode("ascii"),
            iv=base64.b64encode(iv).decode("ascii"),
        )

    def decrypt_sync(self, blob: EncryptedBlob, key_material: Union[str, bytes]) -> str:
        """
        Decrypt a blob. Blocking; prefer `decrypt` inside the event loop.

        Raises:
            DecryptionError: wrong key material, malformed or tampered blob
        """
        salt = _b64decode(blob.salt, "salt")
        iv = _b64decode(blob.iv, "iv")
        ciphertext = _b64decode(blob.ciphertext, "ciphertext")

        if len(salt) != SALT_LENGTH:
            raise DecryptionError("Malformed encrypted blob", reason="salt_length")
        if len(iv) != IV_LENGTH:
            raise DecryptionError("Malformed encrypted blob", reason="iv_length")

        key = self.derive_key(key_material, salt)
        try:
            plaintext = AESGCM(key).decrypt(iv, ciphertext, None)
        except InvalidTag as exc:
            raise DecryptionError("Authentication tag mismatch", reason="invalid_tag") from exc

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Plaintext is not valid UTF-8", reason="encoding") from exc

    async def encrypt(self, plaintext: str, key_material: Union[str, bytes]) -> EncryptedBlob:
        """Encrypt plaintext without blocking the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.encrypt_sync, plaintext, key_material)

    async def decrypt(self, blob: EncryptedBlob, key_material: Union[str, bytes]) -> str:
        """Decrypt a blob without blocking the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.decrypt_sync, blob, key_material)

"""
PiSentinel Core - Credential Encryption
=======================================
Encryption of Pi-hole passwords and master keys at rest.

- PBKDF2-SHA256 (100k iterations) key derivation with a random salt per call
- AES-256-GCM with a random IV per call
- Tampering surfaces as DecryptionError, never as garbled plaintext

Usage:
    from pisentinel_core.crypto import CredentialCipher, generate_master_password

    cipher = CredentialCipher()
    master_key = generate_master_password()
    blob = await cipher.encrypt("secret", master_key)
"""

from .models import EncryptedBlob, DecryptionError
from .cipher import (
    CredentialCipher,
    generate_master_password,
    PBKDF2_ITERATIONS,
    SALT_LENGTH,
    IV_LENGTH,
)

__all__ = [
    "EncryptedBlob",
    "DecryptionError",
    "CredentialCipher",
    "generate_master_password",
    "PBKDF2_ITERATIONS",
    "SALT_LENGTH",
    "IV_LENGTH",
]

"""
Cipher Models
=============
Encrypted blob container and cipher errors.
"""

from pydantic import BaseModel, ConfigDict


class EncryptedBlob(BaseModel):
    """
    Self-describing AES-GCM ciphertext.

    All three fields are base64 text so the blob can be stored as JSON.
    Decryption needs nothing but the key material it was encrypted with.
    """
    model_config = ConfigDict(frozen=True)

    ciphertext: str
    salt: str
    iv: str


class DecryptionError(Exception):
    """Raised when a blob cannot be decrypted (wrong key, corrupted or tampered data)."""

    def __init__(self, message: str = "Decryption failed", reason: str = "unknown"):
        self.reason = reason
        super().__init__(f"{message} ({reason})")

"""
Session Token Store
===================
Keeps each instance's session (sid + csrf) in the volatile store, encrypted
with AES-256-GCM under a key generated once per process. The key is unrelated
to any instance's master key and never leaves memory.

The expiry is stored in clear so liveness checks need no decryption.
"""

import base64
import json
import os
import time
from typing import Optional, Union

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..crypto import IV_LENGTH
from ..http.models import Session
from ..instances.registry import session_key
from ..instances.storage import KeyValueStore

logger = structlog.get_logger(__name__)

RECORD_VERSION = 1


class SessionTokenStore:
    def __init__(self, volatile: KeyValueStore, key: Optional[bytes] = None, default_validity: int = 300):
        self.volatile = volatile
        self.default_validity = default_validity
        self._aesgcm = AESGCM(key or AESGCM.generate_key(bit_length=256))

    def _seal(self, session: Session) -> dict:
        nonce = os.urandom(IV_LENGTH)
        payload = json.dumps(session.to_dict()).encode("utf-8")
        ciphertext = self._aesgcm.encrypt(nonce, payload, None)
        return {
            "v": RECORD_VERSION,
            "iv": base64.b64encode(nonce).decode("ascii"),
            "ciphertext": base64.b64encode(ciphertext).decode("ascii"),
            "expires_at": session.expires_at,
        }

    def _open(self, record: dict) -> Session:
        nonce = base64.b64decode(record["iv"], validate=True)
        ciphertext = base64.b64decode(record["ciphertext"], validate=True)
        payload = self._aesgcm.decrypt(nonce, ciphertext, None)
        return Session.from_dict(json.loads(payload))

    def _from_legacy(self, record: dict) -> Session:
        # Records migrated from single-instance releases: plaintext, expiry in ms, no validity
        expires_ms = record.get("expiresAt")
        return Session(
            sid=record.get("sid"),
            csrf=record.get("csrf"),
            validity=self.default_validity,
            expires_at=expires_ms / 1000 if expires_ms else None,
        )

    async def save(self, instance_id: str, session: Session) -> None:
        await self.volatile.set(session_key(instance_id), self._seal(session))

    async def load(self, instance_id: str) -> Optional[Session]:
        """The stored session, or None if missing or unreadable (e.g. sealed by an earlier process)."""
        record = await self.volatile.get(session_key(instance_id))
        if not isinstance(record, dict):
            return None

        if "ciphertext" not in record and "sid" in record:
            session = self._from_legacy(record)
            await self.save(instance_id, session)
            logger.info("legacy_session_resealed", instance_id=instance_id)
            return session

        try:
            return self._open(record)
        except (InvalidTag, KeyError, ValueError, TypeError) as e:
            logger.info("stored_session_unreadable", instance_id=instance_id, error=type(e).__name__)
            await self.clear(instance_id)
            return None

    async def load_live(self, instance_id: str, now: Optional[float] = None) -> Optional[Session]:
        """The stored session if it has not expired."""
        if await self.expires_at(instance_id) == 0:
            return None
        session = await self.load(instance_id)
        if session is None or session.is_expired(now):
            return None
        return session

    async def expires_at(self, instance_id: str) -> Optional[Union[float, int]]:
        """
        Expiry from the clear-text field. 0 when no session is stored,
        None when the stored session never expires.
        """
        record = await self.volatile.get(session_key(instance_id))
        if not isinstance(record, dict):
            return 0
        if "ciphertext" not in record:
            expires_ms = record.get("expiresAt")
            return expires_ms / 1000 if expires_ms else None
        return record.get("expires_at")

    async def has_live_session(self, instance_id: str, now: Optional[float] = None) -> bool:
        expires_at = await self.expires_at(instance_id)
        if expires_at is None:
            return True
        now = time.time() if now is None else now
        return expires_at > now

    async def clear(self, instance_id: str) -> None:
        await self.volatile.remove(session_key(instance_id))

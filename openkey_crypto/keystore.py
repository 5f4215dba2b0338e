"""
Key resolution for secret chats.

A KeyStore maps a key id to key material. Two policies exist:

- FixedKeyStore: one long-lived key, derived from a master secret or
  generated once and pinned to the device.
- RotatingKeyStore: one key per UTC calendar day. Today's key is created on
  first use; a missing key for any other day is permanently lost.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Protocol, Set

from .primitives import (
    generate_key,
    derive_master_key,
    export_key,
    import_key,
    KeyNotFound,
)

logger = logging.getLogger(__name__)

FIXED_KEY_ID = "master"


class KeyBackend(Protocol):
    """Persistent key-value slot storage for exported keys"""

    def save_key(self, key_id: str, jwk: dict) -> None: ...

    def load_key(self, key_id: str) -> Optional[dict]: ...

    def list_key_ids(self) -> List[str]: ...

    def delete_key(self, key_id: str) -> None: ...


@dataclass
class KeyStoreInfo:
    """Diagnostic snapshot of a key store"""
    policy: str
    current_key_id: str
    key_exists_for_today: bool
    total_keys: int
    key_ids: List[str] = field(default_factory=list)


class KeyStore:
    """Base class for key resolution policies"""

    policy = "abstract"

    def current_key_id(self) -> str:
        raise NotImplementedError

    async def resolve(self, key_id: str) -> bytes:
        raise NotImplementedError

    def describe(self) -> KeyStoreInfo:
        raise NotImplementedError


class FixedKeyStore(KeyStore):
    """
    Single key used for every operation.

    With a master secret the key is derived and never stored. Without one, a
    device key is loaded from the backend's fixed slot, or generated and
    persisted there on first use.
    """

    policy = "fixed"

    def __init__(self, master_secret: Optional[str] = None,
                 backend: Optional[KeyBackend] = None,
                 key_id: str = FIXED_KEY_ID):
        if master_secret is None and backend is None:
            raise ValueError("FixedKeyStore needs a master secret or a backend")
        self.key_id = key_id
        self.backend = backend
        self._key: Optional[bytes] = None
        if master_secret is not None:
            self._key = derive_master_key(master_secret)

    def current_key_id(self) -> str:
        return self.key_id

    async def resolve(self, key_id: str) -> bytes:
        # Any id resolves: the payload's key_id is informational here.
        if self._key is None:
            jwk = self.backend.load_key(self.key_id)
            if jwk is None:
                logger.info("Generating device key for slot %s", self.key_id)
                key = generate_key()
                self.backend.save_key(self.key_id, export_key(key))
                self._key = key
            else:
                self._key = import_key(jwk)
        return self._key

    def describe(self) -> KeyStoreInfo:
        return KeyStoreInfo(
            policy=self.policy,
            current_key_id=self.key_id,
            key_exists_for_today=True,
            total_keys=1,
            key_ids=[self.key_id],
        )


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


class RotatingKeyStore(KeyStore):
    """
    One freshly generated key per calendar day (key id ``YYYY-MM-DD``).
    """

    policy = "rotating"

    def __init__(self, backend: KeyBackend, clock: Optional[Callable[[], date]] = None):
        self.backend = backend
        self.clock = clock or utc_today
        self._cache: Dict[str, bytes] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._missing: Set[str] = set()

    def current_key_id(self) -> str:
        return self.clock().isoformat()

    async def resolve(self, key_id: str) -> bytes:
        """
        Return the key for a day.

        Args:
            key_id: Day identifier

        Returns:
            32-byte key

        Raises:
            KeyNotFound: If the key is absent and key_id is not today
        """
        if key_id in self._cache:
            return self._cache[key_id]
        today = self.current_key_id()
        if key_id in self._missing and key_id != today:
            raise KeyNotFound(key_id)

        lock = self._locks.setdefault(key_id, asyncio.Lock())
        try:
            async with lock:
                # Another caller may have settled it while we waited.
                if key_id in self._cache:
                    return self._cache[key_id]
                if key_id in self._missing and key_id != today:
                    raise KeyNotFound(key_id)

                jwk = self.backend.load_key(key_id)
                if jwk is not None:
                    key = import_key(jwk)
                elif key_id == today:
                    logger.info("Generating new key for %s", key_id)
                    key = generate_key()
                    self.backend.save_key(key_id, export_key(key))
                else:
                    self._missing.add(key_id)
                    raise KeyNotFound(key_id)

                self._cache[key_id] = key
                self._missing.discard(key_id)
                return key
        finally:
            # Settled ids are answered from the cache or the missing set
            if self._locks.get(key_id) is lock:
                del self._locks[key_id]

    def prune(self, keep_days: int) -> List[str]:
        """
        Delete keys older than the retention window.

        Messages sealed under a deleted key become permanently unavailable.

        Returns:
            The key ids that were removed
        """
        cutoff = self.clock() - timedelta(days=keep_days)
        removed = []
        for key_id in self.backend.list_key_ids():
            try:
                day = date.fromisoformat(key_id)
            except ValueError:
                continue
            if day < cutoff:
                self.backend.delete_key(key_id)
                self._cache.pop(key_id, None)
                removed.append(key_id)
        if removed:
            logger.info("Pruned %d expired keys", len(removed))
        return removed

    def describe(self) -> KeyStoreInfo:
        key_ids = sorted(self.backend.list_key_ids())
        today = self.current_key_id()
        return KeyStoreInfo(
            policy=self.policy,
            current_key_id=today,
            key_exists_for_today=today in key_ids,
            total_keys=len(key_ids),
            key_ids=key_ids,
        )


def build_keystore(policy: str, backend: KeyBackend,
                   master_secret: Optional[str] = None) -> KeyStore:
    """
    Create the key store for a configured policy.

    Args:
        policy: "rotating" or "fixed"
        backend: Persistent key storage
        master_secret: Secret for the fixed policy; None pins a device key

    Returns:
        KeyStore instance
    """
    if policy == RotatingKeyStore.policy:
        return RotatingKeyStore(backend)
    if policy == FixedKeyStore.policy:
        return FixedKeyStore(master_secret=master_secret, backend=backend)
    raise ValueError(f"Unknown key policy: {policy}")

"""
Local persistent storage for the chat client.

Keeps exported secret-chat keys and small metadata records on the device.
Values can optionally be wrapped with a passphrase-derived key.
"""

import os
import json
import logging
import sqlite3
from typing import Optional, List
from pathlib import Path
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

_CHECK_KEY = "__check__"
_CHECK_VALUE = "openkey"


class StorageError(Exception):
    """Local store is closed or cannot be unlocked"""
    pass


class LocalStore:
    """
    Device-local key-value storage backed by SQLite.

    Exported keys live in the ``keys`` table keyed by key id (a calendar day
    or a fixed slot name). Nothing stored here is ever sent to the server.
    """

    def __init__(self, storage_dir: str = "client_data", name: str = "device"):
        """
        Initialize local storage.

        Args:
            storage_dir: Directory to store data in
            name: Base name of the database file
        """
        self.name = name
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.db_path = self.storage_dir / f"{name}.db"
        self.salt_path = self.storage_dir / f"{name}.salt"
        self.wrapping_key: Optional[bytes] = None
        self.db: Optional[sqlite3.Connection] = None

    def derive_key(self, passphrase: str, salt: bytes) -> bytes:
        """
        Derive the wrapping key from a passphrase using PBKDF2.

        Args:
            passphrase: User passphrase
            salt: Salt for key derivation

        Returns:
            32-byte wrapping key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return kdf.derive(passphrase.encode())

    def open(self, passphrase: Optional[str] = None) -> bool:
        """
        Open the store, unlocking it when a passphrase is given.

        Args:
            passphrase: Optional passphrase protecting stored values

        Returns:
            True if opened, False if the passphrase is wrong
        """
        is_new = not self.db_path.exists()

        if passphrase is not None:
            if self.salt_path.exists():
                salt = self.salt_path.read_bytes()
            else:
                salt = os.urandom(16)
                self.salt_path.write_bytes(salt)
            self.wrapping_key = self.derive_key(passphrase, salt)

        self._init_database()

        if is_new:
            self._put("metadata", "key", _CHECK_KEY, _CHECK_VALUE)
            return True

        try:
            check = self._get("metadata", "key", _CHECK_KEY)
        except (InvalidTag, UnicodeDecodeError):
            logger.warning("Wrong passphrase for local store %s", self.db_path)
            self.close()
            self.wrapping_key = None
            return False
        return check in (None, _CHECK_VALUE)

    def _init_database(self):
        """Initialize SQLite database"""
        self.db = sqlite3.connect(str(self.db_path))
        cursor = self.db.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS keys (
                key TEXT PRIMARY KEY,
                value BLOB NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS metadata (
                key TEXT PRIMARY KEY,
                value BLOB NOT NULL
            )
        """)

        self.db.commit()

    def _wrap(self, data: bytes) -> bytes:
        if not self.wrapping_key:
            return data
        nonce = os.urandom(12)
        aesgcm = AESGCM(self.wrapping_key)
        return nonce + aesgcm.encrypt(nonce, data, None)

    def _unwrap(self, data: bytes) -> bytes:
        if not self.wrapping_key:
            return data
        aesgcm = AESGCM(self.wrapping_key)
        return aesgcm.decrypt(data[:12], data[12:], None)

    def _require_db(self) -> sqlite3.Connection:
        if not self.db:
            raise StorageError("Local store is not open")
        return self.db

    def _put(self, table: str, column: str, key: str, value: str):
        db = self._require_db()
        db.execute(
            f"INSERT OR REPLACE INTO {table} ({column}, value) VALUES (?, ?)",
            (key, self._wrap(value.encode()))
        )
        db.commit()

    def _get(self, table: str, column: str, key: str) -> Optional[str]:
        cursor = self._require_db().execute(
            f"SELECT value FROM {table} WHERE {column} = ?", (key,)
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return self._unwrap(row[0]).decode()

    def save_key(self, key_id: str, jwk: dict):
        """
        Persist an exported key.

        Args:
            key_id: Day identifier or fixed slot name
            jwk: Exported key
        """
        self._put("keys", "key", key_id, json.dumps(jwk))

    def load_key(self, key_id: str) -> Optional[dict]:
        """
        Load an exported key.

        Returns:
            JWK dictionary or None
        """
        value = self._get("keys", "key", key_id)
        return json.loads(value) if value is not None else None

    def list_key_ids(self) -> List[str]:
        cursor = self._require_db().execute("SELECT key FROM keys ORDER BY key")
        return [row[0] for row in cursor.fetchall()]

    def delete_key(self, key_id: str):
        db = self._require_db()
        db.execute("DELETE FROM keys WHERE key = ?", (key_id,))
        db.commit()

    def save_metadata(self, key: str, value):
        """Store a JSON-serializable metadata value"""
        self._put("metadata", "key", key, json.dumps(value))

    def load_metadata(self, key: str):
        value = self._get("metadata", "key", key)
        return json.loads(value) if value is not None else None

    def delete_metadata(self, key: str):
        db = self._require_db()
        db.execute("DELETE FROM metadata WHERE key = ?", (key,))
        db.commit()

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None

"""
Stored-text codec for secret chats.

Message text on the server is either a structured EncryptedPayload (JSON) or
legacy plaintext. decode_stored_text tells the two apart; MessageCodec seals
outgoing text and opens incoming text, failing closed to a fixed sentinel.
"""

import json
import logging
from dataclasses import dataclass
from typing import Union

from .keystore import KeyStore
from .primitives import (
    EncryptedPayload,
    encrypt_text,
    decrypt_text,
    CryptoError,
    KeyNotFound,
)

logger = logging.getLogger(__name__)

UNAVAILABLE_TEXT = "🔒 Message unavailable (key lost)"


@dataclass(frozen=True)
class Plaintext:
    """Stored text that is not an encrypted payload"""
    text: str


StoredText = Union[EncryptedPayload, Plaintext]


def looks_encrypted(value: str) -> bool:
    """Cheap syntactic probe run before any JSON parsing."""
    return value.startswith('{') and '"ciphertext"' in value


def decode_stored_text(value: str) -> StoredText:
    """
    Decode stored message text.

    Anything that is not a well-formed payload object decodes to Plaintext;
    a malformed payload is legacy text, not an error.
    """
    if not looks_encrypted(value):
        return Plaintext(value)
    try:
        data = json.loads(value)
    except ValueError:
        return Plaintext(value)
    if not isinstance(data, dict):
        return Plaintext(value)
    try:
        return EncryptedPayload.from_dict(data)
    except ValueError:
        return Plaintext(value)


class MessageCodec:
    """
    Seals and opens secret-chat text through a KeyStore.
    """

    def __init__(self, keystore: KeyStore):
        self.keystore = keystore

    async def seal(self, plaintext: str) -> str:
        """
        Encrypt text under the current key.

        Args:
            plaintext: Message text

        Returns:
            JSON-serialized EncryptedPayload
        """
        key_id = self.keystore.current_key_id()
        key = await self.keystore.resolve(key_id)
        return encrypt_text(plaintext, key, key_id).to_json()

    async def open(self, stored: str) -> str:
        """
        Decrypt stored text.

        Legacy plaintext is returned unchanged. A payload whose key is gone or
        which fails authentication yields UNAVAILABLE_TEXT.
        """
        decoded = decode_stored_text(stored)
        if isinstance(decoded, Plaintext):
            return decoded.text

        try:
            key = await self.keystore.resolve(decoded.key_id)
            return decrypt_text(decoded, key)
        except KeyNotFound as e:
            logger.warning("Key missing for message: %s", e)
        except CryptoError as e:
            logger.warning("Decryption failed under key %s: %s", decoded.key_id, e)
        return UNAVAILABLE_TEXT

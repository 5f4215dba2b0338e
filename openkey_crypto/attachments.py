"""
Encrypted attachment containers.

A file is packed as a data URL (``data:<media type>;base64,<bytes>``) so the
media type travels inside the ciphertext, then sealed with encrypt_bytes.
The uploaded blob is the JSON form of the resulting payload.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .codec import Plaintext, decode_stored_text
from .keystore import KeyStore
from .primitives import (
    CryptoError,
    DecryptionError,
    encrypt_bytes,
    decrypt_bytes,
)

logger = logging.getLogger(__name__)

ENCRYPTED_MEDIA_TYPE = "text/plain"
ENCRYPTED_SUFFIX = ".enc"
DEFAULT_MEDIA_TYPE = "application/octet-stream"


class AttachmentKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    FILE = "file"


class AttachmentStatus(str, Enum):
    """What the UI should render for an attachment"""
    LOADING = "loading"
    NOT_SECRET = "not_secret"
    READY = "ready"
    FAILED = "failed"


class AttachmentDecryptError(CryptoError):
    """
    An encrypted attachment could not be restored.

    Attributes:
        reason: "key_missing", "auth_failed" or "malformed"
    """

    def __init__(self, reason: str, detail: str = ""):
        super().__init__(f"Attachment decryption failed ({reason}){': ' + detail if detail else ''}")
        self.reason = reason


@dataclass
class DecryptedAttachment:
    data: bytes
    media_type: str
    kind: AttachmentKind


@dataclass
class AttachmentView:
    """Result handed to the rendering layer"""
    status: AttachmentStatus
    attachment: Optional[DecryptedAttachment] = None
    url: Optional[str] = None
    error: Optional[str] = None


def classify_media_type(media_type: Optional[str]) -> AttachmentKind:
    media_type = (media_type or "").lower()
    if media_type.startswith("image/"):
        return AttachmentKind.IMAGE
    if media_type.startswith("video/"):
        return AttachmentKind.VIDEO
    return AttachmentKind.FILE


def pack_data_url(data: bytes, media_type: str) -> bytes:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{media_type or DEFAULT_MEDIA_TYPE};base64,{encoded}".encode("ascii")


def unpack_data_url(container: bytes):
    """
    Split a data URL into (media_type, data).

    Raises:
        AttachmentDecryptError: If the container is not a base64 data URL
    """
    try:
        text = container.decode("ascii")
    except UnicodeDecodeError as e:
        raise AttachmentDecryptError("malformed", "container is not ASCII") from e
    if not text.startswith("data:"):
        raise AttachmentDecryptError("malformed", "container is not a data URL")

    header, sep, body = text[5:].partition(",")
    if not sep or not header.endswith(";base64"):
        raise AttachmentDecryptError("malformed", "data URL is not base64")
    media_type = header[: -len(";base64")] or DEFAULT_MEDIA_TYPE
    try:
        return media_type, base64.b64decode(body, validate=True)
    except binascii.Error as e:
        raise AttachmentDecryptError("malformed", str(e)) from e


class AttachmentPipeline:
    """
    Encrypts files before upload and restores them after download.
    """

    def __init__(self, keystore: KeyStore):
        self.keystore = keystore

    async def encrypt_file(self, data: bytes, media_type: str) -> bytes:
        """
        Seal a file into an uploadable blob.

        Args:
            data: Raw file bytes
            media_type: Declared media type of the file

        Returns:
            UTF-8 JSON of the EncryptedPayload
        """
        key_id = self.keystore.current_key_id()
        key = await self.keystore.resolve(key_id)
        payload = encrypt_bytes(pack_data_url(data, media_type), key, key_id)
        return payload.to_json().encode("utf-8")

    async def decrypt_file(self, blob: bytes,
                           expected_kind: Optional[AttachmentKind] = None) -> DecryptedAttachment:
        """
        Restore a blob produced by encrypt_file.

        Args:
            blob: Downloaded bytes
            expected_kind: Kind recorded on the message, used when the
                container carries no media type

        Returns:
            DecryptedAttachment with the original bytes and media type

        Raises:
            AttachmentDecryptError: On missing key, failed authentication or a
                malformed blob
        """
        try:
            text = blob.decode("utf-8").strip()
        except UnicodeDecodeError as e:
            raise AttachmentDecryptError("malformed", "blob is not text") from e

        payload = decode_stored_text(text)
        if isinstance(payload, Plaintext):
            raise AttachmentDecryptError("malformed", "blob is not an encrypted payload")

        try:
            key = await self.keystore.resolve(payload.key_id)
        except CryptoError as e:
            # Absent or unreadable key material
            raise AttachmentDecryptError("key_missing", str(e)) from e

        try:
            container = decrypt_bytes(payload, key)
        except DecryptionError as e:
            raise AttachmentDecryptError("auth_failed", str(e)) from e

        media_type, data = unpack_data_url(container)
        if media_type == DEFAULT_MEDIA_TYPE and expected_kind is not None:
            kind = expected_kind
        else:
            kind = classify_media_type(media_type)
        if expected_kind is not None and kind != expected_kind:
            logger.debug("Attachment kind %s differs from expected %s", kind.value, expected_kind.value)
        return DecryptedAttachment(data=data, media_type=media_type, kind=kind)

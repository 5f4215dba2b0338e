"""
Cryptographic module for OpenKey secret chats.

Implements symmetric end-to-end protection for secret conversations:
- AES-256-GCM text and binary encryption
- Fixed or daily-rotating key stores
- Encrypted attachment containers
"""

from .primitives import (
    EncryptedPayload,
    encrypt_text,
    decrypt_text,
    encrypt_bytes,
    decrypt_bytes,
    generate_key,
    CryptoError,
    DecryptionError,
    KeyNotFound
)
from .codec import MessageCodec, Plaintext, decode_stored_text, UNAVAILABLE_TEXT
from .keystore import KeyStore, FixedKeyStore, RotatingKeyStore, build_keystore
from .attachments import (
    AttachmentPipeline,
    AttachmentKind,
    AttachmentStatus,
    AttachmentDecryptError,
    classify_media_type
)

__all__ = [
    'EncryptedPayload',
    'encrypt_text',
    'decrypt_text',
    'encrypt_bytes',
    'decrypt_bytes',
    'generate_key',
    'CryptoError',
    'DecryptionError',
    'KeyNotFound',
    'MessageCodec',
    'Plaintext',
    'decode_stored_text',
    'UNAVAILABLE_TEXT',
    'KeyStore',
    'FixedKeyStore',
    'RotatingKeyStore',
    'build_keystore',
    'AttachmentPipeline',
    'AttachmentKind',
    'AttachmentStatus',
    'AttachmentDecryptError',
    'classify_media_type'
]

"""
Cryptographic Primitives for Secret Chats

This module provides the symmetric operations used to protect secret-chat
text and attachments: AES-256-GCM with a fresh random nonce per call, plus
key generation, export and derivation helpers.
"""

import os
import json
import base64
import binascii
from dataclasses import dataclass
from typing import Dict, Optional
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


KEY_LENGTH = 32  # AES-256
NONCE_LENGTH = 12  # 96-bit IV for AES-GCM
TAG_LENGTH = 16

MASTER_KEY_INFO = b"OpenKey master key v1"


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class DecryptionError(CryptoError):
    """Authentication failed, the key is wrong or the ciphertext is malformed"""
    pass


class KeyNotFound(CryptoError):
    """No key material exists for the requested key id"""

    def __init__(self, key_id: str):
        super().__init__(f"Key for {key_id} not found. Message cannot be decrypted.")
        self.key_id = key_id


@dataclass(frozen=True)
class EncryptedPayload:
    """
    On-the-wire form of one encrypted unit.

    Attributes:
        key_id: Identifier of the key that sealed this unit
        nonce: 12-byte GCM nonce
        ciphertext: Encrypted data followed by the 16-byte tag
    """
    key_id: str
    nonce: bytes
    ciphertext: bytes

    def to_dict(self) -> Dict[str, str]:
        """Convert to dictionary for serialization"""
        return {
            'key_id': self.key_id,
            'nonce': base64.b64encode(self.nonce).decode('ascii'),
            'ciphertext': base64.b64encode(self.ciphertext).decode('ascii'),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict) -> 'EncryptedPayload':
        """
        Create from dictionary.

        Raises:
            ValueError: If a field is missing or not valid base64
        """
        key_id = data.get('key_id')
        nonce = data.get('nonce')
        ciphertext = data.get('ciphertext')
        if not all(isinstance(v, str) and v for v in (key_id, nonce, ciphertext)):
            raise ValueError("Payload requires non-empty key_id, nonce and ciphertext")
        try:
            return cls(
                key_id=key_id,
                nonce=base64.b64decode(nonce, validate=True),
                ciphertext=base64.b64decode(ciphertext, validate=True),
            )
        except binascii.Error as e:
            raise ValueError(f"Payload field is not base64: {e}") from e


def generate_key() -> bytes:
    """
    Generate a fresh 256-bit AES-GCM key.

    Returns:
        32 random bytes
    """
    return AESGCM.generate_key(bit_length=256)


def derive_master_key(secret: str) -> bytes:
    """
    Derive the fixed application key from a master secret (HKDF-SHA256).

    Args:
        secret: Application or device secret

    Returns:
        32-byte key
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,
        info=MASTER_KEY_INFO
    )
    return hkdf.derive(secret.encode('utf-8'))


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode('ascii')


def _b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def export_key(key: bytes) -> Dict:
    """
    Export a key to its persistable JWK form.

    Args:
        key: 32-byte AES key

    Returns:
        JSON Web Key dictionary
    """
    return {
        'kty': 'oct',
        'alg': 'A256GCM',
        'k': _b64url_encode(key),
        'ext': True,
        'key_ops': ['encrypt', 'decrypt'],
    }


def import_key(jwk: Dict) -> bytes:
    """
    Import a key previously produced by export_key.

    Raises:
        CryptoError: If the JWK is not a 256-bit symmetric key
    """
    if jwk.get('kty') != 'oct' or not isinstance(jwk.get('k'), str):
        raise CryptoError("Unsupported key format")
    try:
        key = _b64url_decode(jwk['k'])
    except (binascii.Error, ValueError) as e:
        raise CryptoError(f"Corrupted key material: {e}") from e
    if len(key) != KEY_LENGTH:
        raise CryptoError(f"Expected {KEY_LENGTH}-byte key, got {len(key)}")
    return key


def encrypt_bytes(data: bytes, key: bytes, key_id: str,
                  associated_data: Optional[bytes] = None) -> EncryptedPayload:
    """
    Encrypt binary content using AES-256-GCM.

    Args:
        data: Bytes to encrypt
        key: 32-byte encryption key
        key_id: Identifier recorded in the payload
        associated_data: Additional authenticated data

    Returns:
        EncryptedPayload with a freshly drawn nonce
    """
    nonce = os.urandom(NONCE_LENGTH)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, data, associated_data)
    return EncryptedPayload(key_id=key_id, nonce=nonce, ciphertext=ciphertext)


def decrypt_bytes(payload: EncryptedPayload, key: bytes,
                  associated_data: Optional[bytes] = None) -> bytes:
    """
    Decrypt binary content using AES-256-GCM.

    Args:
        payload: Unit produced by encrypt_bytes
        key: 32-byte encryption key
        associated_data: Additional authenticated data

    Returns:
        Decrypted bytes

    Raises:
        DecryptionError: If the payload is malformed or authentication fails
    """
    if len(payload.nonce) != NONCE_LENGTH:
        raise DecryptionError(f"Nonce must be {NONCE_LENGTH} bytes")
    if len(payload.ciphertext) < TAG_LENGTH:
        raise DecryptionError("Ciphertext too short")

    try:
        aesgcm = AESGCM(key)
    except ValueError as e:
        raise DecryptionError(f"Invalid key: {e}") from e

    try:
        return aesgcm.decrypt(payload.nonce, payload.ciphertext, associated_data)
    except InvalidTag as e:
        raise DecryptionError("Decryption failed: wrong key or tampered payload") from e


def encrypt_text(plaintext: str, key: bytes, key_id: str) -> EncryptedPayload:
    """Encrypt a UTF-8 string"""
    return encrypt_bytes(plaintext.encode('utf-8'), key, key_id)


def decrypt_text(payload: EncryptedPayload, key: bytes) -> str:
    """
    Decrypt a payload produced by encrypt_text.

    Raises:
        DecryptionError: If decryption fails or the result is not UTF-8
    """
    data = decrypt_bytes(payload, key)
    try:
        return data.decode('utf-8')
    except UnicodeDecodeError as e:
        raise DecryptionError("Decrypted data is not valid UTF-8") from e

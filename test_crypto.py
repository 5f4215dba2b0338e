#!/usr/bin/env python3
"""
Tests for secret-chat cryptography: primitives, codec, key stores and
attachment containers.
"""

import asyncio
import json
import sys
from datetime import date

import pytest

from openkey_crypto.primitives import (
    EncryptedPayload,
    encrypt_text,
    decrypt_text,
    encrypt_bytes,
    decrypt_bytes,
    generate_key,
    export_key,
    import_key,
    derive_master_key,
    CryptoError,
    DecryptionError,
    KeyNotFound
)
from openkey_crypto.codec import MessageCodec, Plaintext, decode_stored_text, UNAVAILABLE_TEXT
from openkey_crypto.keystore import FixedKeyStore, RotatingKeyStore, build_keystore
from openkey_crypto.attachments import (
    AttachmentPipeline,
    AttachmentKind,
    AttachmentDecryptError,
    classify_media_type
)

TODAY = date(2026, 10, 19)


class MemoryBackend:
    """In-memory stand-in for the local key table"""

    def __init__(self):
        self.keys = {}
        self.saves = 0
        self.loads = 0

    def save_key(self, key_id, jwk):
        self.saves += 1
        self.keys[key_id] = jwk

    def load_key(self, key_id):
        self.loads += 1
        return self.keys.get(key_id)

    def list_key_ids(self):
        return sorted(self.keys)

    def delete_key(self, key_id):
        self.keys.pop(key_id, None)


def rotating_store(backend=None, today=TODAY):
    return RotatingKeyStore(backend or MemoryBackend(), clock=lambda: today)


def test_text_round_trip():
    """Test text encryption round trips"""
    key = generate_key()
    samples = [
        "Hello OpenKey World 123",
        "",
        "Привет 🌍! Это тест UTF-8.",
        '{"key_id": "x", "nonce": "y", "ciphertext": "z"}',
    ]
    for plaintext in samples:
        payload = encrypt_text(plaintext, key, "2026-10-19")
        assert decrypt_text(payload, key) == plaintext, f"Round trip failed for {plaintext!r}"
        assert payload.ciphertext != plaintext.encode(), "Ciphertext equals plaintext"


def test_nonce_uniqueness():
    """Same plaintext twice gives different nonce and ciphertext"""
    key = generate_key()
    first = encrypt_text("Secret", key, "2026-10-19")
    second = encrypt_text("Secret", key, "2026-10-19")

    assert first.nonce != second.nonce, "Nonces are unique per encryption"
    assert first.ciphertext != second.ciphertext, "IV must randomize ciphertext"
    assert first.key_id == second.key_id
    assert len(first.nonce) == 12


def test_wrong_key_and_tampering():
    """Test authentication failures"""
    key = generate_key()
    payload = encrypt_bytes(b"attack at dawn", key, "k")

    with pytest.raises(DecryptionError):
        decrypt_bytes(payload, generate_key())

    tampered = bytearray(payload.ciphertext)
    tampered[0] ^= 0xFF
    with pytest.raises(DecryptionError):
        decrypt_bytes(EncryptedPayload("k", payload.nonce, bytes(tampered)), key)

    with pytest.raises(DecryptionError):
        decrypt_bytes(EncryptedPayload("k", b"short", payload.ciphertext), key)


def test_payload_serialization():
    """Payload JSON carries key_id, nonce and ciphertext"""
    key = generate_key()
    payload = encrypt_text("hi", key, "2026-10-19")
    data = json.loads(payload.to_json())

    assert set(data) == {"key_id", "nonce", "ciphertext"}
    assert EncryptedPayload.from_dict(data) == payload

    with pytest.raises(ValueError):
        EncryptedPayload.from_dict({"key_id": "x", "nonce": "%%%", "ciphertext": "AAAA"})


def test_key_export_import():
    key = generate_key()
    jwk = export_key(key)
    assert jwk["kty"] == "oct"
    assert import_key(jwk) == key

    with pytest.raises(CryptoError):
        import_key({"kty": "oct", "k": "AAAA"})


def test_master_key_derivation():
    assert derive_master_key("secret") == derive_master_key("secret")
    assert derive_master_key("secret") != derive_master_key("other")
    assert len(derive_master_key("secret")) == 32


def test_decode_stored_text():
    """Only well-formed payload objects decode as encrypted"""
    key = generate_key()
    sealed = encrypt_text("hi", key, "2026-10-19").to_json()

    assert isinstance(decode_stored_text(sealed), EncryptedPayload)
    for legacy in [
        "This is not a JSON string",
        "{ not json but mentions \"ciphertext\"",
        '["ciphertext"]',
        '{"ciphertext": "AAAA"}',
        '{"key_id": "", "nonce": "AAAA", "ciphertext": "AAAA"}',
        '{"key_id": "d", "nonce": 5, "ciphertext": "AAAA"}',
    ]:
        assert decode_stored_text(legacy) == Plaintext(legacy)


def test_codec_round_trip_and_passthrough():
    """Codec seals under today's key and passes legacy text through"""
    async def scenario():
        codec = MessageCodec(rotating_store())
        sealed = await codec.seal("Привет 🌍")
        assert json.loads(sealed)["key_id"] == "2026-10-19"
        assert await codec.open(sealed) == "Привет 🌍"
        assert await codec.open("plain old text") == "plain old text"
        assert await codec.open("") == ""
    asyncio.run(scenario())


def test_codec_fails_closed():
    """Missing or wrong keys yield the unavailable sentinel"""
    async def scenario():
        codec = MessageCodec(rotating_store())

        foreign = encrypt_text("lost", generate_key(), "2020-01-01").to_json()
        assert await codec.open(foreign) == UNAVAILABLE_TEXT

        wrong_key = encrypt_text("forged", generate_key(), "2026-10-19").to_json()
        assert await codec.open(wrong_key) == UNAVAILABLE_TEXT
    asyncio.run(scenario())


def test_rotating_keystore_generates_today_only():
    async def scenario():
        backend = MemoryBackend()
        store = rotating_store(backend)

        key = await store.resolve("2026-10-19")
        assert backend.load_key("2026-10-19") is not None
        assert await store.resolve("2026-10-19") == key

        with pytest.raises(KeyNotFound):
            await store.resolve("2026-10-18")

        # A fresh instance over the same backend reloads the persisted key
        assert await rotating_store(backend).resolve("2026-10-19") == key
    asyncio.run(scenario())


def test_rotating_keystore_single_flight():
    """Concurrent first use of today's key generates it once"""
    async def scenario():
        backend = MemoryBackend()
        store = rotating_store(backend)
        keys = await asyncio.gather(*(store.resolve("2026-10-19") for _ in range(5)))
        assert len(set(keys)) == 1
        assert backend.saves == 1
    asyncio.run(scenario())


def test_rotating_keystore_prune_and_describe():
    async def scenario():
        backend = MemoryBackend()
        await rotating_store(backend, date(2026, 9, 1)).resolve("2026-09-01")
        store = rotating_store(backend)
        await store.resolve("2026-10-19")

        info = store.describe()
        assert info.key_exists_for_today
        assert info.total_keys == 2

        assert store.prune(keep_days=30) == ["2026-09-01"]
        with pytest.raises(KeyNotFound):
            await store.resolve("2026-09-01")
    asyncio.run(scenario())


def test_fixed_keystore():
    """Fixed policy resolves any key id to the same key"""
    async def scenario():
        store = FixedKeyStore(master_secret="OPENKEY_DEMO")
        assert await store.resolve("master") == await store.resolve("2020-01-01")

        backend = MemoryBackend()
        pinned = build_keystore("fixed", backend)
        key = await pinned.resolve("master")
        assert backend.load_key("master") is not None
        assert await build_keystore("fixed", backend).resolve("anything") == key

        with pytest.raises(ValueError):
            build_keystore("weekly", backend)
    asyncio.run(scenario())


def test_attachment_round_trip():
    """Encrypted file decrypts byte-identical with its media type"""
    async def scenario():
        pipeline = AttachmentPipeline(rotating_store())
        data = b"\x89PNG\r\n\x1a\n" + bytes(range(256)) * 4
        blob = await pipeline.encrypt_file(data, "image/png")

        assert data not in blob
        restored = await pipeline.decrypt_file(blob, AttachmentKind.IMAGE)
        assert restored.data == data
        assert restored.media_type == "image/png"
        assert restored.kind == AttachmentKind.IMAGE
    asyncio.run(scenario())


def test_attachment_failures_are_typed():
    async def scenario():
        pipeline = AttachmentPipeline(rotating_store())
        blob = await pipeline.encrypt_file(b"video bytes", "video/mp4")

        other_device = AttachmentPipeline(rotating_store())
        with pytest.raises(AttachmentDecryptError) as info:
            await other_device.decrypt_file(blob)
        assert info.value.reason == "auth_failed"

        later = AttachmentPipeline(rotating_store(today=date(2026, 10, 20)))
        with pytest.raises(AttachmentDecryptError) as info:
            await later.decrypt_file(blob)
        assert info.value.reason == "key_missing"

        with pytest.raises(AttachmentDecryptError) as info:
            await pipeline.decrypt_file(b"\xff\xd8 raw jpeg")
        assert info.value.reason == "malformed"
    asyncio.run(scenario())


def test_classify_media_type():
    assert classify_media_type("image/jpeg") == AttachmentKind.IMAGE
    assert classify_media_type("video/mp4") == AttachmentKind.VIDEO
    assert classify_media_type("application/pdf") == AttachmentKind.FILE
    assert classify_media_type(None) == AttachmentKind.FILE


def test_rotating_keystore_remembers_missing_keys():
    """A lost key is looked up once, and no per-id locks pile up"""
    async def scenario():
        backend = MemoryBackend()
        store = rotating_store(backend)

        for _ in range(3):
            with pytest.raises(KeyNotFound):
                await store.resolve("2020-01-01")
        assert backend.loads == 1

        await store.resolve("2026-10-19")
        assert store._locks == {}
    asyncio.run(scenario())


def test_missing_future_key_is_generated_on_its_day():
    async def scenario():
        store = rotating_store()
        with pytest.raises(KeyNotFound):
            await store.resolve("2026-10-20")
        store.clock = lambda: date(2026, 10, 20)
        assert len(await store.resolve("2026-10-20")) == 32
    asyncio.run(scenario())


def test_attachment_with_corrupt_stored_key():
    async def scenario():
        blob = await AttachmentPipeline(rotating_store()).encrypt_file(b"photo", "image/jpeg")

        backend = MemoryBackend()
        backend.keys["2026-10-19"] = {"kty": "oct", "k": "AAAA"}
        with pytest.raises(AttachmentDecryptError) as info:
            await AttachmentPipeline(rotating_store(backend)).decrypt_file(blob)
        assert info.value.reason == "key_missing"
    asyncio.run(scenario())


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))

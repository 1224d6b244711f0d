"""Tests for the AES-GCM envelope."""

import base64

import pytest

from shellproto import crypto
from shellproto.crypto import NONCE_SIZE, TAG_SIZE, EnvelopeCipher
from shellproto.errors import DecryptionError


PAYLOADS = [
    b"",
    b"x",
    b'{"action":"exec","command":["echo","hello"]}',
    bytes(range(256)) * 8,
]


class TestRoundTrip:
    """Seal then open returns the original bytes."""

    @pytest.mark.parametrize("payload", PAYLOADS)
    def test_round_trip(self, payload, passphrase):
        envelope = crypto.seal(payload, passphrase)
        assert crypto.open_envelope(envelope, passphrase) == payload

    def test_round_trip_empty_and_unicode_passphrase(self):
        for key in ("", "pässwörd ✓"):
            cipher = EnvelopeCipher(key)
            assert cipher.open(cipher.seal(b"data")) == b"data"

    def test_open_accepts_str(self, cipher):
        envelope = cipher.seal(b"hello")
        assert cipher.open(envelope.decode("ascii")) == b"hello"

    def test_envelope_layout(self, cipher):
        envelope = cipher.seal(b"hello")
        decoded = base64.b64decode(envelope)
        assert len(decoded) == NONCE_SIZE + len(b"hello") + TAG_SIZE


class TestKeyDerivation:

    def test_same_passphrase_same_key(self):
        assert crypto.derive_key("abc") == crypto.derive_key("abc")
        assert len(crypto.derive_key("abc")) == 32

    def test_key_is_sha256_of_passphrase(self):
        import hashlib
        assert crypto.derive_key("abc") == hashlib.sha256(b"abc").digest()


class TestTamperDetection:
    """Any change to the envelope must make open() fail."""

    def test_every_bit_flip_detected(self, cipher):
        decoded = bytearray(base64.b64decode(cipher.seal(b"sensitive command")))
        for index in range(len(decoded)):
            for bit in (0x01, 0x80):
                tampered = bytearray(decoded)
                tampered[index] ^= bit
                with pytest.raises(DecryptionError):
                    cipher.open(base64.b64encode(bytes(tampered)))

    def test_truncated_envelope(self, cipher):
        decoded = base64.b64decode(cipher.seal(b"payload"))
        with pytest.raises(DecryptionError):
            cipher.open(base64.b64encode(decoded[:-1]))

    def test_shorter_than_nonce(self, cipher):
        with pytest.raises(DecryptionError, match="too short"):
            cipher.open(base64.b64encode(b"\x00" * (NONCE_SIZE - 1)))

    def test_invalid_base64(self, cipher):
        with pytest.raises(DecryptionError, match="base64"):
            cipher.open(b"not base64 at all!!")

    def test_non_ascii_text(self, cipher):
        with pytest.raises(DecryptionError):
            cipher.open("ümlaut")


class TestWrongKey:

    def test_wrong_passphrase_fails(self):
        envelope = crypto.seal(b"payload", "key-one")
        with pytest.raises(DecryptionError):
            crypto.open_envelope(envelope, "key-two")

    def test_similar_passphrase_fails(self):
        envelope = crypto.seal(b"payload", "secret")
        with pytest.raises(DecryptionError):
            crypto.open_envelope(envelope, "secret ")


class TestNonces:

    def test_same_input_gives_different_envelopes(self, cipher):
        first = cipher.seal(b"same")
        second = cipher.seal(b"same")
        assert first != second
        assert base64.b64decode(first)[:NONCE_SIZE] != base64.b64decode(second)[:NONCE_SIZE]

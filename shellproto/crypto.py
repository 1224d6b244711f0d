"""
MQTT Shell Crypto Module (shared by agent and controller)
AES-256-GCM envelopes keyed from a pre-shared passphrase.

AES-GCM ensures:
- Confidentiality (nothing readable by other subscribers on the broker)
- Integrity (any flipped bit fails the tag check)
- Authenticity (only holders of the passphrase can build a valid envelope)

Envelope on the wire: base64(<12-byte nonce><ciphertext><16-byte tag>)

Note: the key is a single unsalted SHA-256 of the passphrase. That is weaker
than a password-based KDF, but it is what deployed peers expect, so changing
it would break compatibility with them.
"""

import base64
import binascii
from typing import Union

from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.Random import get_random_bytes

from .errors import DecryptionError, EncryptionError

NONCE_SIZE = 12
TAG_SIZE = 16


def derive_key(passphrase: str) -> bytes:
    """Derive the 32-byte AES key from the passphrase."""
    return SHA256.new(passphrase.encode("utf-8")).digest()


class EnvelopeCipher:
    """Seals and opens envelopes under one passphrase.

    The key is derived once; instances are read-only afterwards and safe to
    share between threads.
    """

    def __init__(self, passphrase: str):
        if passphrase is None:
            raise EncryptionError("passphrase is required")
        self._key = derive_key(passphrase)

    def seal(self, plaintext: bytes) -> bytes:
        """
        Encrypt plaintext and return the text-encoded envelope.

        A fresh random nonce is drawn on every call.
        """
        try:
            nonce = get_random_bytes(NONCE_SIZE)
            cipher = AES.new(self._key, AES.MODE_GCM, nonce=nonce)
            ciphertext, tag = cipher.encrypt_and_digest(plaintext)
        except (ValueError, TypeError, OSError) as exc:
            raise EncryptionError(f"failed to encrypt: {exc}") from exc

        return base64.b64encode(nonce + ciphertext + tag)

    def open(self, envelope: Union[bytes, str]) -> bytes:
        """
        Decode, verify and decrypt an envelope.

        Raises DecryptionError if the encoding is bad, the buffer is too short
        or the tag does not verify.
        """
        if isinstance(envelope, str):
            envelope = envelope.encode("ascii", errors="replace")
        try:
            decoded = base64.b64decode(envelope, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError(f"failed to decode base64: {exc}") from exc

        if len(decoded) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("ciphertext too short")

        nonce = decoded[:NONCE_SIZE]
        ciphertext = decoded[NONCE_SIZE:-TAG_SIZE]
        tag = decoded[-TAG_SIZE:]

        cipher = AES.new(self._key, AES.MODE_GCM, nonce=nonce)
        try:
            return cipher.decrypt_and_verify(ciphertext, tag)
        except ValueError as exc:
            # pycryptodome raises ValueError("MAC check failed")
            raise DecryptionError(f"failed to decrypt: {exc}") from exc


def seal(plaintext: bytes, passphrase: str) -> bytes:
    """One-shot form of EnvelopeCipher.seal."""
    return EnvelopeCipher(passphrase).seal(plaintext)


def open_envelope(envelope: Union[bytes, str], passphrase: str) -> bytes:
    """One-shot form of EnvelopeCipher.open."""
    return EnvelopeCipher(passphrase).open(envelope)


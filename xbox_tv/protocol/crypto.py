"""Key agreement, payload encryption and signing for SmartGlass sessions."""

from __future__ import annotations

import os
from typing import Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from ..errors import ProtocolError
from .constants import BLOCK_SIZE, KEY_APPEND, KEY_PREPEND


def pad(data: bytes) -> bytes:
    """Pad to the cipher block size; aligned data is left untouched."""

    remainder = len(data) % BLOCK_SIZE
    if not remainder:
        return data
    size = BLOCK_SIZE - remainder
    return data + bytes([size]) * size


class SmartGlassCrypto:
    """Session keys derived from an ECDH P-256 exchange with the console.

    The shared secret is expanded with SHA-512 into a 16 byte AES key, a 16
    byte key for deriving initialization vectors and a 32 byte HMAC key.
    """

    def __init__(
        self,
        console_key: ec.EllipticCurvePublicKey,
        private_key: Optional[ec.EllipticCurvePrivateKey] = None,
    ) -> None:
        self._private_key = private_key or ec.generate_private_key(ec.SECP256R1())
        secret = self._private_key.exchange(ec.ECDH(), console_key)

        digest = hashes.Hash(hashes.SHA512())
        digest.update(KEY_PREPEND + secret + KEY_APPEND)
        material = digest.finalize()

        self._encrypt_key = material[:16]
        self._iv_key = material[16:32]
        self._hash_key = material[32:]

    @classmethod
    def from_certificate(cls, der: bytes) -> "SmartGlassCrypto":
        """Build session keys from the console's DER certificate.

        Raises:
            ProtocolError: If the certificate does not hold a P-256 key.
        """

        try:
            certificate = x509.load_der_x509_certificate(der)
        except ValueError as exc:
            raise ProtocolError(f"Invalid console certificate: {exc}") from exc

        public_key = certificate.public_key()
        if not isinstance(public_key, ec.EllipticCurvePublicKey):
            raise ProtocolError("Console certificate does not carry an EC key")
        return cls(public_key)

    @property
    def public_key_bytes(self) -> bytes:
        """Raw X || Y coordinates of our public key."""

        point = self._private_key.public_key().public_bytes(
            Encoding.X962, PublicFormat.UncompressedPoint
        )
        return point[1:]

    def generate_iv(self, seed: Optional[bytes] = None) -> bytes:
        if seed is None:
            return os.urandom(BLOCK_SIZE)
        encryptor = Cipher(algorithms.AES(self._iv_key), modes.ECB()).encryptor()
        return encryptor.update(seed[:BLOCK_SIZE]) + encryptor.finalize()

    def encrypt(self, data: bytes, iv: bytes) -> bytes:
        encryptor = Cipher(algorithms.AES(self._encrypt_key), modes.CBC(iv)).encryptor()
        return encryptor.update(pad(data)) + encryptor.finalize()

    def decrypt(self, data: bytes, iv: bytes) -> bytes:
        if len(data) % BLOCK_SIZE:
            raise ProtocolError("Encrypted payload is not block aligned")
        decryptor = Cipher(algorithms.AES(self._encrypt_key), modes.CBC(iv)).decryptor()
        return decryptor.update(data) + decryptor.finalize()

    def sign(self, data: bytes) -> bytes:
        signer = hmac.HMAC(self._hash_key, hashes.SHA256())
        signer.update(data)
        return signer.finalize()

    def verify(self, data: bytes, signature: bytes) -> None:
        """Raises ``ProtocolError`` when ``signature`` does not match."""

        verifier = hmac.HMAC(self._hash_key, hashes.SHA256())
        verifier.update(data)
        try:
            verifier.verify(signature)
        except InvalidSignature:
            raise ProtocolError("Message signature mismatch") from None

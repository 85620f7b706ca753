"""Ephemeral ECDH key exchange with the device.

The device works on raw P-256 curve points, so public keys cross the wire as
64 bytes (X || Y) without the SEC1 format byte. The shared secret is the raw
32-byte X coordinate of the ECDH agreement, the same value WebCrypto's
``deriveBits(..., 256)`` yields on the other side.
"""

import logging
import struct
from typing import Optional

from Crypto.Hash import HMAC, SHA256
from Crypto.Protocol.DH import key_agreement
from Crypto.Protocol.KDF import HKDF
from Crypto.PublicKey import ECC

from .errors import InvalidPeerKey, KeyGenerationFailed, NoKeyPair

_LOGGER = logging.getLogger(__name__)

CURVE = "P-256"
UNCOMPRESSED_POINT_PREFIX = b"\x04"
PUBLIC_KEY_SIZE = 64
SHARED_SECRET_SIZE = 32
TRANSFER_KEY_CONTEXT = b"na-provision transfer v1"
TRANSFER_TAG_SIZE = 32


def _raw_agreement(z: bytes) -> bytes:
    return z


class KeyExchangeEngine:
    """Holds one ephemeral P-256 key pair and derives shared secrets from it.

    The private key never leaves this object: the only operations exposed are
    public key export and secret derivation. Use one engine per provisioning
    attempt so key pairs are never reused across handshakes.
    """

    def __init__(self) -> None:
        self._private_key: Optional[ECC.EccKey] = None

    @property
    def has_key_pair(self) -> bool:
        """Whether a key pair has been generated."""
        return self._private_key is not None

    def generate_key_pair(self) -> bytes:
        """Generate a fresh key pair, replacing any previous one.

        Returns:
            The 64-byte raw public key (X || Y)

        Raises:
            KeyGenerationFailed: If the crypto provider cannot create the key
        """
        try:
            private_key = ECC.generate(curve=CURVE)
            encoded = private_key.public_key().export_key(format="SEC1", compress=False)
        except (ValueError, TypeError) as e:
            raise KeyGenerationFailed(f"Cannot generate {CURVE} key pair: {e}") from e

        if len(encoded) != PUBLIC_KEY_SIZE + 1 or encoded[:1] != UNCOMPRESSED_POINT_PREFIX:
            raise KeyGenerationFailed(f"Unexpected public key encoding ({len(encoded)} bytes)")

        if self._private_key is not None:
            _LOGGER.debug("Replacing existing ephemeral key pair")
        self._private_key = private_key
        return encoded[1:]

    def compute_shared_secret(self, peer_public_key: bytes) -> bytes:
        """Derive the shared secret from the peer's raw public key.

        Args:
            peer_public_key: 64-byte raw public key (X || Y) from the device

        Returns:
            32 bytes of shared secret material

        Raises:
            NoKeyPair: If generate_key_pair() has not been called
            InvalidPeerKey: If the bytes are not a valid point on the curve
        """
        if self._private_key is None:
            raise NoKeyPair("Key pair not generated")

        peer_public_key = bytes(peer_public_key)
        if len(peer_public_key) != PUBLIC_KEY_SIZE:
            raise InvalidPeerKey(
                f"Peer public key must be {PUBLIC_KEY_SIZE} bytes, got {len(peer_public_key)}"
            )

        try:
            peer_key = ECC.import_key(UNCOMPRESSED_POINT_PREFIX + peer_public_key, curve_name=CURVE)
            secret = key_agreement(
                static_priv=self._private_key,
                static_pub=peer_key,
                kdf=_raw_agreement,
            )
        except ValueError as e:
            raise InvalidPeerKey(f"Peer public key is not a valid {CURVE} point: {e}") from e

        if len(secret) != SHARED_SECRET_SIZE:
            raise InvalidPeerKey(f"Unexpected shared secret length: {len(secret)}")
        return secret


def derive_transfer_key(shared_secret: bytes) -> bytes:
    """Derive the firmware transfer MAC key from the shared secret."""
    return HKDF(shared_secret, 32, None, SHA256, context=TRANSFER_KEY_CONTEXT)


def compute_transfer_tag(shared_secret: bytes, data: bytes, offset: int) -> bytes:
    """Compute the HMAC-SHA256 tag authenticating a firmware write.

    The tag covers the target offset and length as well as the image bytes,
    so a valid image written to the wrong region does not verify.

    Args:
        shared_secret: Secret from KeyExchangeEngine.compute_shared_secret
        data: Firmware image bytes
        offset: Flash offset the image is written to

    Returns:
        32-byte tag
    """
    mac = HMAC.new(derive_transfer_key(shared_secret), digestmod=SHA256)
    mac.update(struct.pack("<II", offset, len(data)))
    mac.update(data)
    return mac.digest()

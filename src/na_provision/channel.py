"""Transports for the public key exchange with the device."""

import asyncio
import logging
from typing import Optional, Protocol

from .codec import decode_bytes, decode_message, encode_message
from .errors import DeviceTimeout, InvalidPeerKey, TransportFailure
from .flasher import DeviceHandle
from .keyexchange import PUBLIC_KEY_SIZE, KeyExchangeEngine, compute_transfer_tag

_LOGGER = logging.getLogger(__name__)

HOST_KEY_MESSAGE = "host_key"
DEVICE_KEY_MESSAGE = "device_key"
TRANSFER_TAG_MESSAGE = "transfer_tag"


class KeyExchangeChannel(Protocol):
    """Protocol for carrying handshake messages to and from the device."""

    async def send_public_key(self, handle: DeviceHandle, public_key: bytes) -> None:
        ...

    async def receive_public_key(self, handle: DeviceHandle) -> bytes:
        ...

    async def send_transfer_tag(
        self, handle: DeviceHandle, tag: bytes, offset: int, size: int
    ) -> None:
        ...


class SerialKeyExchangeChannel:
    """Exchanges JSON-line handshake messages over the device's byte stream.

    The handle's ``stream`` must offer pyserial-style ``write`` and
    ``readline`` methods.
    """

    def __init__(self, timeout_s: float = 10.0) -> None:
        self.timeout_s = timeout_s

    @staticmethod
    def _stream(handle: DeviceHandle):
        if handle.stream is None:
            raise TransportFailure(f"Device {handle.port} has no message stream")
        return handle.stream

    async def _write(self, handle: DeviceHandle, line: bytes) -> None:
        stream = self._stream(handle)
        try:
            await asyncio.to_thread(stream.write, line)
            await asyncio.to_thread(stream.flush)
        except OSError as e:
            raise TransportFailure(f"Write to {handle.port} failed: {e}") from e

    async def send_public_key(self, handle: DeviceHandle, public_key: bytes) -> None:
        await self._write(handle, encode_message(HOST_KEY_MESSAGE, key=public_key))

    async def receive_public_key(self, handle: DeviceHandle) -> bytes:
        stream = self._stream(handle)
        try:
            line = await asyncio.wait_for(
                asyncio.to_thread(stream.readline), timeout=self.timeout_s
            )
        except asyncio.TimeoutError as e:
            raise DeviceTimeout(
                f"No public key from device within {self.timeout_s:.1f}s",
                remediation="Check that the device firmware supports the secure handshake.",
            ) from e
        except OSError as e:
            raise TransportFailure(f"Read from {handle.port} failed: {e}") from e

        # pyserial returns an empty line when its own read timeout expires
        if not line:
            raise DeviceTimeout("Device did not answer the key exchange")

        try:
            message = decode_message(line, DEVICE_KEY_MESSAGE, "key")
            key = decode_bytes(message["key"])
        except ValueError as e:
            raise InvalidPeerKey(f"Malformed device key message: {e}") from e

        if len(key) != PUBLIC_KEY_SIZE:
            raise InvalidPeerKey(f"Device public key is {len(key)} bytes, expected {PUBLIC_KEY_SIZE}")
        return key

    async def send_transfer_tag(
        self, handle: DeviceHandle, tag: bytes, offset: int, size: int
    ) -> None:
        await self._write(
            handle, encode_message(TRANSFER_TAG_MESSAGE, tag=tag, offset=offset, size=size)
        )


class SimulatedPeerChannel:
    """Device side of the handshake, for dry runs and tests.

    Behaves like provisioning-capable firmware: it answers the host key with
    its own ephemeral key and keeps the secret to check transfer tags.
    """

    def __init__(self, device_reply: Optional[bytes] = None) -> None:
        self._engine = KeyExchangeEngine()
        self._device_public_key = self._engine.generate_key_pair()
        self._reply = device_reply  # Overrides the key sent back, e.g. a corrupt one
        self.shared_secret: Optional[bytes] = None
        self.received_tag: Optional[bytes] = None
        self.tag_offset: Optional[int] = None
        self.tag_size: Optional[int] = None

    @property
    def device_public_key(self) -> bytes:
        return self._device_public_key

    async def send_public_key(self, handle: DeviceHandle, public_key: bytes) -> None:
        self.shared_secret = self._engine.compute_shared_secret(public_key)

    async def receive_public_key(self, handle: DeviceHandle) -> bytes:
        if self._reply is not None:
            return self._reply
        return self._device_public_key

    async def send_transfer_tag(
        self, handle: DeviceHandle, tag: bytes, offset: int, size: int
    ) -> None:
        self.received_tag = tag
        self.tag_offset = offset
        self.tag_size = size

    def verify_tag(self, data: bytes) -> bool:
        """Check the received tag against the image the device ended up with."""
        if self.shared_secret is None or self.received_tag is None:
            return False
        expected = compute_transfer_tag(self.shared_secret, data, self.tag_offset)
        return expected == self.received_tag and self.tag_size == len(data)

"""Tests for the serial key exchange channel."""

import asyncio
import time

import pytest

from na_provision.channel import SerialKeyExchangeChannel
from na_provision.codec import decode_bytes, decode_message, encode_message
from na_provision.errors import DeviceTimeout, InvalidPeerKey, TransportFailure
from na_provision.flasher import DeviceHandle, SimulatedFlasher
from na_provision.keyexchange import KeyExchangeEngine, compute_transfer_tag
from na_provision.session import Session, SessionState


class FakeStream:
    """In-memory stand-in for a pyserial port."""

    def __init__(self, lines=(), read_delay_s: float = 0.0):
        self.lines = list(lines)
        self.read_delay_s = read_delay_s
        self.written = bytearray()

    def write(self, data: bytes) -> int:
        self.written += data
        return len(data)

    def flush(self) -> None:
        pass

    def readline(self) -> bytes:
        if self.read_delay_s:
            time.sleep(self.read_delay_s)
        return self.lines.pop(0) if self.lines else b""

    def sent_messages(self) -> list:
        return [line + b"\n" for line in bytes(self.written).splitlines()]


def device_key_line(public_key: bytes) -> bytes:
    return encode_message("device_key", key=public_key)


class TestSerialKeyExchangeChannel:
    """Tests for JSON-line message exchange."""

    def test_send_public_key(self):
        """Test the host key goes out as one host_key line."""
        stream = FakeStream()
        handle = DeviceHandle(port="/dev/ttyUSB0", stream=stream)
        asyncio.run(SerialKeyExchangeChannel().send_public_key(handle, b"\x07" * 64))

        (line,) = stream.sent_messages()
        message = decode_message(line, "host_key", "key")
        assert decode_bytes(message["key"]) == b"\x07" * 64

    def test_receive_public_key(self):
        """Test the device key is decoded from its line."""
        device_key = KeyExchangeEngine().generate_key_pair()
        handle = DeviceHandle(port="/dev/ttyUSB0", stream=FakeStream([device_key_line(device_key)]))
        received = asyncio.run(SerialKeyExchangeChannel().receive_public_key(handle))
        assert received == device_key

    def test_silent_device(self):
        """Test an empty read is a device timeout."""
        handle = DeviceHandle(port="/dev/ttyUSB0", stream=FakeStream())
        with pytest.raises(DeviceTimeout):
            asyncio.run(SerialKeyExchangeChannel().receive_public_key(handle))

    def test_slow_device(self):
        """Test the channel's own timeout applies."""
        stream = FakeStream([device_key_line(b"\x00" * 64)], read_delay_s=0.5)
        handle = DeviceHandle(port="/dev/ttyUSB0", stream=stream)
        with pytest.raises(DeviceTimeout):
            asyncio.run(SerialKeyExchangeChannel(timeout_s=0.05).receive_public_key(handle))

    @pytest.mark.parametrize(
        "line",
        [
            b"boot: ESP-ROM:esp32-20160606\n",
            encode_message("host_key", key=b"\x00" * 64),
            b'{"type":"device_key","key":"***"}\n',
            encode_message("device_key", key=b"\x00" * 32),
        ],
    )
    def test_malformed_reply(self, line: bytes):
        """Test unusable replies are invalid peer keys."""
        handle = DeviceHandle(port="/dev/ttyUSB0", stream=FakeStream([line]))
        with pytest.raises(InvalidPeerKey):
            asyncio.run(SerialKeyExchangeChannel().receive_public_key(handle))

    def test_missing_stream(self):
        """Test a handle without a stream cannot carry the handshake."""
        handle = DeviceHandle(port="/dev/ttyUSB0")
        with pytest.raises(TransportFailure):
            asyncio.run(SerialKeyExchangeChannel().send_public_key(handle, b"\x00" * 64))

    def test_send_transfer_tag(self):
        """Test the tag message carries offset and size."""
        stream = FakeStream()
        handle = DeviceHandle(port="/dev/ttyUSB0", stream=stream)
        asyncio.run(
            SerialKeyExchangeChannel().send_transfer_tag(handle, b"\x01" * 32, 0x10000, 1234)
        )
        (line,) = stream.sent_messages()
        message = decode_message(line, "transfer_tag", "tag", "offset", "size")
        assert decode_bytes(message["tag"]) == b"\x01" * 32
        assert message["offset"] == 0x10000
        assert message["size"] == 1234


class TestSessionOverSerialChannel:
    """End-to-end session run against a scripted device."""

    def test_device_can_verify_transfer(self, sample_image, fake_sleep):
        """Test the device derives the same secret and verifies the tag."""
        device = KeyExchangeEngine()
        stream = FakeStream([device_key_line(device.generate_key_pair())])
        flasher = SimulatedFlasher(chunk_size=50_000, stream=stream)
        session = Session(flasher, channel=SerialKeyExchangeChannel(), sleep=fake_sleep)

        async def scenario():
            await session.connect()
            await session.establish_secure_channel()
            await session.flash(sample_image)

        asyncio.run(scenario())
        assert session.state == SessionState.COMPLETED

        host_line, tag_line = stream.sent_messages()
        host_key = decode_bytes(decode_message(host_line, "host_key", "key")["key"])
        device_secret = device.compute_shared_secret(host_key)

        tag_message = decode_message(tag_line, "transfer_tag", "tag", "offset", "size")
        expected = compute_transfer_tag(device_secret, sample_image.data, tag_message["offset"])
        assert decode_bytes(tag_message["tag"]) == expected
        assert tag_message["size"] == sample_image.size

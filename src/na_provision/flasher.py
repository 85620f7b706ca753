"""Device I/O contracts consumed by the provisioning session.

The session never talks to a serial port directly. It goes through a
``Flasher`` that knows how to find a device, run the bootloader sync, write
flash and reset, and through an ``ImageSource`` that supplies firmware bytes.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from Crypto.Hash import SHA256

from .config import FlashConfig
from .errors import (
    DeviceTimeout,
    FlashWriteFailed,
    ImageUnavailable,
    NoDeviceSelected,
    TransportFailure,
)

_LOGGER = logging.getLogger(__name__)

DEFAULT_APP_OFFSET = 0x10000

ProgressCallback = Callable[[int, int], None]


@dataclass
class DeviceHandle:
    """An opened device, owned exclusively by one session."""

    port: str
    description: str = ""
    connection: Any = None
    stream: Any = None  # Byte stream used for handshake messages, if any


@dataclass(frozen=True)
class WriteOptions:
    """Options for a single flash write."""

    flash_size: str = "keep"
    flash_mode: str = "keep"
    flash_freq: str = "keep"
    erase_all: bool = False
    compress: bool = True
    verify: bool = True

    @classmethod
    def from_config(cls, config: FlashConfig) -> "WriteOptions":
        """Build write options from the flash configuration section."""
        return cls(
            flash_size=config.flash_size,
            flash_mode=config.flash_mode,
            flash_freq=config.flash_freq,
            erase_all=config.erase_all,
            compress=config.compress,
            verify=config.verify,
        )

    @property
    def keeps_header(self) -> bool:
        """Whether the image header metadata is left untouched."""
        return self.flash_size == self.flash_mode == self.flash_freq == "keep"


@runtime_checkable
class Flasher(Protocol):
    """Protocol for bootloader flasher implementations."""

    async def request_device(self) -> DeviceHandle:
        """Acquire a device handle. Raises NoDeviceSelected."""
        ...

    async def sync(self, handle: DeviceHandle) -> str:
        """Complete the bootloader handshake and return the chip identifier.

        Raises DeviceTimeout.
        """
        ...

    async def write_chunk(
        self,
        handle: DeviceHandle,
        data: bytes,
        offset: int,
        options: WriteOptions,
        on_progress: ProgressCallback,
    ) -> None:
        """Write data at offset, reporting (written, total) per chunk.

        Raises FlashWriteFailed.
        """
        ...

    async def hard_reset(self, handle: DeviceHandle) -> None:
        """Reset the device into its application firmware."""
        ...

    async def close(self, handle: DeviceHandle) -> None:
        """Release the device. Best effort."""
        ...


@dataclass(frozen=True)
class FirmwareImage:
    """Firmware bytes and the flash offset they belong at."""

    data: bytes
    offset: int = DEFAULT_APP_OFFSET
    name: str = "firmware.bin"

    @property
    def size(self) -> int:
        return len(self.data)

    def sha256(self) -> str:
        """Hex SHA-256 digest of the image."""
        return SHA256.new(self.data).hexdigest()


class ImageSource(Protocol):
    """Protocol for firmware image suppliers."""

    def fetch_image(self) -> FirmwareImage:
        """Return the image to flash. Raises ImageUnavailable."""
        ...


class FileImageSource:
    """Loads a firmware image from a local file."""

    def __init__(self, path: Path, offset: int = DEFAULT_APP_OFFSET) -> None:
        self.path = Path(path)
        self.offset = offset

    def fetch_image(self) -> FirmwareImage:
        """Read the image file.

        Raises:
            ImageUnavailable: If the file is missing, unreadable or empty
        """
        try:
            data = self.path.read_bytes()
        except OSError as e:
            raise ImageUnavailable(f"Cannot load firmware image {self.path}: {e}") from e

        if not data:
            raise ImageUnavailable(f"Firmware image {self.path} is empty")

        _LOGGER.debug("Loaded %s (%d bytes)", self.path, len(data))
        return FirmwareImage(data=data, offset=self.offset, name=self.path.name)


@dataclass
class SimulatedFlasher:
    """Simulated bootloader for testing and dry runs.

    Failure injection flags let tests drive every exit of the session.
    """

    chip_name: str = "ESP32-D0WD-V3 (revision v3.1)"
    chunk_size: int = 0x4000
    port: str = "/dev/ttySIM0"
    no_device: bool = False
    sync_timeout: bool = False
    fail_write_at: Optional[int] = None
    fail_reset: bool = False
    fail_close: bool = False
    write_delay_s: float = 0.0
    stream: Any = None
    memory: dict[int, bytes] = field(default_factory=dict)
    resets: int = 0
    closed: int = 0
    writes: int = 0

    async def request_device(self) -> DeviceHandle:
        if self.no_device:
            raise NoDeviceSelected("No port selected")
        return DeviceHandle(port=self.port, description="Simulated serial device")

    async def sync(self, handle: DeviceHandle) -> str:
        if self.sync_timeout:
            raise DeviceTimeout("Failed to connect to ESP32: Read timeout")
        handle.connection = self
        handle.stream = self.stream
        return self.chip_name

    async def write_chunk(
        self,
        handle: DeviceHandle,
        data: bytes,
        offset: int,
        options: WriteOptions,
        on_progress: ProgressCallback,
    ) -> None:
        if handle.connection is not self:
            raise FlashWriteFailed("Device not synchronized")

        self.writes += 1
        if options.erase_all:
            self.memory.clear()

        total = len(data)
        written = 0
        while written < total:
            end = min(written + self.chunk_size, total)
            if self.fail_write_at is not None and end > self.fail_write_at:
                raise FlashWriteFailed(f"Device disconnected at 0x{offset + written:08x}")
            if self.write_delay_s:
                await asyncio.sleep(self.write_delay_s)
            self.memory[offset + written] = data[written:end]
            written = end
            on_progress(written, total)

        if options.verify and self.read_back(offset, total) != data:
            raise FlashWriteFailed("MD5 of file does not match data in flash")

    def read_back(self, offset: int, size: int) -> bytes:
        """Reassemble previously written chunks starting at offset."""
        out = bytearray()
        address = offset
        while len(out) < size and address in self.memory:
            chunk = self.memory[address]
            out += chunk
            address += len(chunk)
        return bytes(out[:size])

    async def hard_reset(self, handle: DeviceHandle) -> None:
        if self.fail_reset:
            raise TransportFailure("Reset line not responding")
        self.resets += 1

    async def close(self, handle: DeviceHandle) -> None:
        if self.fail_close:
            raise OSError("Port already closed")
        handle.connection = None
        handle.stream = None
        self.closed += 1

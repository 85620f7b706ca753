"""ESP32 flasher built on the esptool loader.

esptool's loader API is blocking, so every call into it runs in a worker
thread and the session stays responsive on the event loop.
"""

import asyncio
import logging
import zlib
from dataclasses import dataclass
from typing import Any, Optional, Tuple

import serial
import serial.tools.list_ports
from Crypto.Hash import MD5
from esptool import __version__ as ESPTOOL_VERSION
from esptool.cmds import detect_chip
from esptool.util import FatalError

from .config import SerialConfig
from .errors import DeviceTimeout, FlashWriteFailed, NoDeviceSelected, TransportFailure
from .flasher import DeviceHandle, ProgressCallback, WriteOptions

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SerialPortInfo:
    """A serial port visible to the host."""

    device: str
    description: str
    hwid: str
    is_usb: bool


def list_serial_ports() -> list[SerialPortInfo]:
    """List serial ports, USB devices first."""
    ports = [
        SerialPortInfo(
            device=port.device,
            description=port.description or "",
            hwid=port.hwid or "",
            is_usb=port.vid is not None,
        )
        for port in serial.tools.list_ports.comports()
    ]
    return sorted(ports, key=lambda p: (not p.is_usb, p.device))


def select_port(requested: Optional[str], ports: list[SerialPortInfo]) -> SerialPortInfo:
    """Pick the port to provision.

    An explicit port always wins. Otherwise exactly one USB serial port must
    be present.

    Raises:
        NoDeviceSelected: If no single candidate port can be chosen
    """
    if requested:
        for port in ports:
            if port.device == requested:
                return port
        return SerialPortInfo(device=requested, description="", hwid="", is_usb=False)

    candidates = [port for port in ports if port.is_usb]
    if not candidates:
        raise NoDeviceSelected("No USB serial device found")
    if len(candidates) > 1:
        names = ", ".join(port.device for port in candidates)
        raise NoDeviceSelected(
            f"Several USB serial devices found ({names})",
            remediation="Pass --port to choose the device to provision.",
        )
    return candidates[0]


def esptool_connect_mode(mode: str) -> str:
    """Spell a connect mode the way the installed esptool expects it."""
    if int(ESPTOOL_VERSION.split(".")[0]) < 5:
        return mode.replace("-", "_")
    return mode


class EsptoolFlasher:
    """Flasher for Espressif chips over their ROM serial bootloader.

    The esptool stub only understands SLIP-framed loader commands, so it cannot
    take part in the key exchange. With ``app_handshake`` set, ``sync`` only
    identifies the chip, then resets the board back into its application
    firmware and exposes the port as ``handle.stream`` for handshake messages.
    The bootloader is re-entered right before the first write.
    """

    def __init__(self, config: Optional[SerialConfig] = None, app_handshake: bool = False) -> None:
        self.config = config or SerialConfig()
        self.app_handshake = app_handshake

    async def request_device(self) -> DeviceHandle:
        ports = await asyncio.to_thread(list_serial_ports)
        port = select_port(self.config.port, ports)
        return DeviceHandle(port=port.device, description=port.description)

    async def _open_loader(self, port: str) -> Tuple[Any, str]:
        """Enter the bootloader, upload the stub and return it with the chip name."""
        await asyncio.sleep(self.config.pre_sync_delay_s)
        try:
            loader = await asyncio.to_thread(
                detect_chip,
                port=port,
                baud=self.config.baud_rate,
                connect_mode=esptool_connect_mode(self.config.connect_mode),
                connect_attempts=self.config.connect_attempts,
            )
            try:
                chip = await asyncio.to_thread(loader.get_chip_description)
                loader = await asyncio.to_thread(loader.run_stub)
            except Exception:
                # detect_chip left the port open
                await asyncio.to_thread(loader._port.close)
                raise
        except FatalError as e:
            raise DeviceTimeout(f"Failed to connect to {port}: {e}") from e
        except serial.SerialException as e:
            raise TransportFailure(f"Cannot open {port}: {e}") from e

        loader._port.timeout = self.config.read_timeout_s
        return loader, chip

    def _open_app_stream(self, port: str) -> serial.Serial:
        stream = serial.Serial()
        stream.port = port
        stream.baudrate = self.config.app_baud_rate
        stream.timeout = self.config.read_timeout_s
        # Released DTR/RTS keep the auto-reset circuit from restarting the board
        stream.dtr = False
        stream.rts = False
        stream.open()
        return stream

    async def sync(self, handle: DeviceHandle) -> str:
        loader, chip = await self._open_loader(handle.port)
        if not self.app_handshake:
            handle.connection = loader
            handle.stream = None
            return chip

        try:
            await asyncio.to_thread(loader.hard_reset)
        except (FatalError, serial.SerialException) as e:
            raise TransportFailure(f"Cannot restart {handle.port} into its firmware: {e}") from e
        finally:
            await asyncio.to_thread(loader._port.close)

        _LOGGER.debug("Waiting %.1fs for the application firmware", self.config.app_boot_delay_s)
        await asyncio.sleep(self.config.app_boot_delay_s)
        try:
            stream = await asyncio.to_thread(self._open_app_stream, handle.port)
        except serial.SerialException as e:
            raise TransportFailure(f"Cannot reopen {handle.port}: {e}") from e
        handle.stream = stream
        # Drop the boot log so the first line read is the device's reply
        await asyncio.to_thread(stream.reset_input_buffer)
        return chip

    async def _reenter_bootloader(self, handle: DeviceHandle) -> None:
        stream, handle.stream = handle.stream, None
        await asyncio.to_thread(stream.close)
        _LOGGER.info("Re-entering the bootloader on %s", handle.port)
        handle.connection, _ = await self._open_loader(handle.port)

    async def write_chunk(
        self,
        handle: DeviceHandle,
        data: bytes,
        offset: int,
        options: WriteOptions,
        on_progress: ProgressCallback,
    ) -> None:
        if handle.connection is None and handle.stream is None:
            raise FlashWriteFailed(f"Device {handle.port} is not synchronized")
        if not options.keeps_header:
            raise FlashWriteFailed("Only 'keep' flash size, mode and frequency are supported")
        if handle.connection is None:
            await self._reenter_bootloader(handle)

        try:
            await asyncio.to_thread(
                self._write_blocking, handle.connection, data, offset, options, on_progress
            )
        except FatalError as e:
            raise FlashWriteFailed(str(e)) from e
        except serial.SerialException as e:
            raise FlashWriteFailed(f"Device disconnected: {e}") from e

    @staticmethod
    def _write_blocking(loader, data: bytes, offset: int, options: WriteOptions, on_progress):
        if options.erase_all:
            _LOGGER.info("Erasing entire flash")
            loader.erase_flash()

        total = len(data)
        block_size = loader.FLASH_WRITE_SIZE
        if options.compress:
            payload = zlib.compress(data, 9)
            loader.flash_defl_begin(total, len(payload), offset)
        else:
            payload = data + b"\xff" * (-len(data) % 4)
            loader.flash_begin(len(payload), offset)

        sent = 0
        seq = 0
        while sent < len(payload):
            block = payload[sent : sent + block_size]
            if options.compress:
                loader.flash_defl_block(block, seq)
            else:
                loader.flash_block(block + b"\xff" * (block_size - len(block)), seq)
            sent += len(block)
            seq += 1
            # Report uncompressed bytes so progress matches the image size
            on_progress(min(total, sent * total // len(payload)), total)

        if loader.IS_STUB:
            # Finishing through the ROM would start the app before verification
            loader.flash_begin(0, 0)
            if options.compress:
                loader.flash_defl_finish(False)
            else:
                loader.flash_finish(False)

        if options.verify:
            actual = loader.flash_md5sum(offset, total)
            expected = MD5.new(data).hexdigest()
            if actual != expected:
                raise FlashWriteFailed(
                    f"MD5 of file does not match data in flash ({actual} != {expected})"
                )
            _LOGGER.debug("Flash contents verified (md5 %s)", expected)

    async def hard_reset(self, handle: DeviceHandle) -> None:
        try:
            await asyncio.to_thread(handle.connection.hard_reset)
        except (FatalError, serial.SerialException) as e:
            raise TransportFailure(f"Hard reset failed: {e}") from e

    async def close(self, handle: DeviceHandle) -> None:
        loader, stream = handle.connection, handle.stream
        handle.connection = handle.stream = None
        if loader is not None:
            await asyncio.to_thread(loader._port.close)
        if stream is not None:
            await asyncio.to_thread(stream.close)

"""Provisioning session state machine.

A session drives one provisioning attempt end to end::

    IDLE -> CONNECTING -> CONNECTED -> FLASHING -> REBOOTING -> COMPLETED

Failures move the session to ERROR with a structured ``last_error``. Every
state change goes through the ``TRANSITIONS`` table, so the reachable states
and their exits can be read off in one place.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from .channel import KeyExchangeChannel
from .config import ProvisioningConfig
from .errors import (
    FlashWriteFailed,
    PreconditionViolation,
    ProvisioningError,
    SessionError,
    TransportFailure,
)
from .flasher import DeviceHandle, FirmwareImage, Flasher, WriteOptions
from .keyexchange import KeyExchangeEngine, compute_transfer_tag

_LOGGER = logging.getLogger(__name__)


class SessionState(Enum):
    """Lifecycle states of a provisioning session."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FLASHING = "flashing"
    REBOOTING = "rebooting"
    COMPLETED = "completed"
    ERROR = "error"


TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.CONNECTING}),
    SessionState.CONNECTING: frozenset({SessionState.CONNECTED, SessionState.ERROR}),
    SessionState.CONNECTED: frozenset(
        {SessionState.FLASHING, SessionState.IDLE, SessionState.ERROR}
    ),
    SessionState.FLASHING: frozenset({SessionState.REBOOTING, SessionState.ERROR}),
    SessionState.REBOOTING: frozenset({SessionState.COMPLETED, SessionState.ERROR}),
    SessionState.COMPLETED: frozenset(),
    SessionState.ERROR: frozenset({SessionState.CONNECTING, SessionState.IDLE}),
}


def compute_progress(written: int, total: int) -> int:
    """Percentage of total written, rounded half up and clamped to [0, 100]."""
    if total <= 0:
        return 100
    percent = (written * 200 + total) // (total * 2)
    return max(0, min(100, percent))


class Session:
    """One secure provisioning attempt against a single device.

    The session owns the device handle for its whole lifetime and releases it
    on reaching COMPLETED or ERROR, or on reset(). Only one operation may be
    in flight at a time.
    """

    def __init__(
        self,
        flasher: Flasher,
        config: Optional[ProvisioningConfig] = None,
        channel: Optional[KeyExchangeChannel] = None,
        on_state_change: Optional[Callable[[SessionState], None]] = None,
        on_progress: Optional[Callable[[int], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize session.

        Args:
            flasher: Device flasher used for all device I/O
            config: Provisioning configuration
            channel: Transport for the key exchange, if the device supports it
            on_state_change: Called after every state change
            on_progress: Called with each new progress percentage
            sleep: Awaitable used for the post-reset settling interval
        """
        self.flasher = flasher
        self.config = config or ProvisioningConfig()
        self.channel = channel
        self._on_state_change = on_state_change
        self._on_progress = on_progress
        self._sleep = sleep

        self._state = SessionState.IDLE
        self._handle: Optional[DeviceHandle] = None
        self._progress = 0
        self._written = 0
        self._last_error: Optional[SessionError] = None
        self._chip_identifier: Optional[str] = None
        self._shared_secret: Optional[bytes] = None
        self._busy = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def progress(self) -> int:
        return self._progress

    @property
    def last_error(self) -> Optional[SessionError]:
        return self._last_error

    @property
    def chip_identifier(self) -> Optional[str]:
        return self._chip_identifier

    @property
    def has_device(self) -> bool:
        return self._handle is not None

    @property
    def secure_channel_established(self) -> bool:
        return self._shared_secret is not None

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in TRANSITIONS[self._state]:
            raise PreconditionViolation(
                f"Invalid transition {self._state.value} -> {new_state.value}"
            )
        _LOGGER.info("Session %s -> %s", self._state.value, new_state.value)
        self._state = new_state
        if self._on_state_change:
            self._on_state_change(new_state)

    def _begin(self, operation: str, *allowed: SessionState) -> None:
        if self._busy:
            raise PreconditionViolation(f"Cannot {operation}: another operation is in progress")
        if self._state not in allowed:
            raise PreconditionViolation(
                f"Cannot {operation} while {self._state.value}"
            )
        self._busy = True

    async def _release_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            await self.flasher.close(handle)
        except Exception as e:
            _LOGGER.warning("Closing %s failed (ignored): %s", handle.port, e)

    async def _fail(self, error: ProvisioningError) -> None:
        self._last_error = SessionError.from_exception(error)
        self._shared_secret = None
        await self._release_handle()
        _LOGGER.error("Provisioning failed: %s", self._last_error)
        self._transition(SessionState.ERROR)

    async def connect(self) -> str:
        """Acquire a device and synchronize with its bootloader.

        Returns:
            The chip identifier reported by the device

        Raises:
            PreconditionViolation: If not IDLE or ERROR
            NoDeviceSelected: If no device could be acquired
            DeviceTimeout: If the bootloader sync did not complete
        """
        self._begin("connect", SessionState.IDLE, SessionState.ERROR)
        try:
            if self._handle is not None:
                raise PreconditionViolation("A device handle is already open")
            self._last_error = None
            self._chip_identifier = None
            self._progress = 0
            self._transition(SessionState.CONNECTING)

            try:
                self._handle = await self.flasher.request_device()
                _LOGGER.info("Synchronizing with bootloader on %s", self._handle.port)
                chip = await self.flasher.sync(self._handle)
            except ProvisioningError as e:
                await self._fail(e)
                raise
            except Exception as e:
                error = TransportFailure(f"Connection failed: {e}")
                await self._fail(error)
                raise error from e

            self._chip_identifier = chip
            self._transition(SessionState.CONNECTED)
            _LOGGER.info("Connected to %s", chip)
            return chip
        finally:
            self._busy = False

    async def establish_secure_channel(self) -> None:
        """Run the ephemeral key exchange with the device.

        A fresh key pair is generated for every call. On success the derived
        secret authenticates the next firmware transfer.

        Raises:
            PreconditionViolation: If not CONNECTED or no channel is configured
            KeyGenerationFailed, InvalidPeerKey, DeviceTimeout: On handshake failure
        """
        self._begin("establish secure channel", SessionState.CONNECTED)
        try:
            if self.channel is None:
                raise PreconditionViolation("No key exchange channel configured")

            engine = KeyExchangeEngine()
            try:
                public_key = engine.generate_key_pair()
                await self.channel.send_public_key(self._handle, public_key)
                peer_key = await self.channel.receive_public_key(self._handle)
                self._shared_secret = engine.compute_shared_secret(peer_key)
            except ProvisioningError as e:
                await self._fail(e)
                raise
            except Exception as e:
                error = TransportFailure(f"Key exchange failed: {e}")
                await self._fail(error)
                raise error from e
            _LOGGER.info("Secure channel established with %s", self._chip_identifier)
        finally:
            self._busy = False

    def _report_progress(self, written: int, total: int) -> None:
        self._written = written
        percent = compute_progress(written, total)
        if percent < self._progress:
            _LOGGER.debug("Ignoring regressed progress %d%% < %d%%", percent, self._progress)
            return
        self._progress = percent
        _LOGGER.debug("Flash progress %d%% (%d/%d bytes)", percent, written, total)
        if self._on_progress:
            self._on_progress(percent)

    async def flash(self, image: FirmwareImage) -> None:
        """Write the image, reset the device and wait for it to boot.

        The image must already have been fetched. On success the session ends
        COMPLETED with the device handle released.

        Raises:
            PreconditionViolation: If a flash is already running, the session
                is not CONNECTED, the image is empty, or a required secure
                channel is missing
            FlashWriteFailed: If the write or its verification fails
        """
        if self._state == SessionState.FLASHING:
            raise PreconditionViolation("A flash transfer is already in progress")
        self._begin("flash", SessionState.CONNECTED)
        try:
            if image.size == 0:
                raise PreconditionViolation(f"Firmware image {image.name} is empty")
            if self.config.security.require_secure_channel and self._shared_secret is None:
                raise PreconditionViolation("Secure channel required before flashing")

            self._progress = 0
            self._written = 0
            self._transition(SessionState.FLASHING)
            await self._write_image(image)

            self._shared_secret = None
            self._transition(SessionState.REBOOTING)
            await self._reboot()
        finally:
            self._busy = False

    async def _write_image(self, image: FirmwareImage) -> None:
        options = WriteOptions.from_config(self.config.flash)
        _LOGGER.info(
            "Writing %s (%d bytes) at 0x%08x", image.name, image.size, image.offset
        )
        try:
            if self._shared_secret is not None:
                tag = compute_transfer_tag(self._shared_secret, image.data, image.offset)
                await self.channel.send_transfer_tag(
                    self._handle, tag, image.offset, image.size
                )
            await self.flasher.write_chunk(
                self._handle, image.data, image.offset, options, self._report_progress
            )
            if self._written != image.size:
                raise FlashWriteFailed(
                    f"Incomplete write: {self._written} of {image.size} bytes"
                )
        except ProvisioningError as e:
            await self._fail(e)
            raise
        except Exception as e:
            error = FlashWriteFailed(f"Flash write failed: {e}")
            await self._fail(error)
            raise error from e

    async def _reboot(self) -> None:
        try:
            await self.flasher.hard_reset(self._handle)
        except ProvisioningError as e:
            await self._fail(e)
            raise
        except Exception as e:
            error = TransportFailure(f"Hard reset failed: {e}")
            await self._fail(error)
            raise error from e

        # Grace period for the application firmware to boot; the device sends
        # no boot acknowledgment on this channel.
        interval = self.config.flash.settle_interval_s
        _LOGGER.info("Waiting %.1fs for the device to boot", interval)
        await self._sleep(interval)

        await self._release_handle()
        self._transition(SessionState.COMPLETED)

    async def reset(self) -> None:
        """Return to IDLE, releasing any open device handle.

        Raises:
            PreconditionViolation: If not CONNECTED or ERROR
        """
        self._begin("reset", SessionState.CONNECTED, SessionState.ERROR)
        try:
            await self._release_handle()
            self._shared_secret = None
            self._chip_identifier = None
            self._last_error = None
            self._progress = 0
            self._written = 0
            self._transition(SessionState.IDLE)
        finally:
            self._busy = False

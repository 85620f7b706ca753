"""NA Firmware Provisioning Tool.

This package provisions firmware onto ESP32 boards over their serial
bootloader, including:
- Ephemeral P-256 key exchange with the device
- A provisioning session state machine (connect, flash, reboot)
- esptool-based flashing with compressed, verified writes
"""

__version__ = "0.1.0"
__author__ = "NA Firmware Team"

from .errors import ErrorKind, ProvisioningError, SessionError
from .flasher import FileImageSource, FirmwareImage, Flasher, SimulatedFlasher
from .keyexchange import KeyExchangeEngine
from .session import Session, SessionState

__all__ = [
    "ErrorKind",
    "ProvisioningError",
    "SessionError",
    "FileImageSource",
    "FirmwareImage",
    "Flasher",
    "SimulatedFlasher",
    "KeyExchangeEngine",
    "Session",
    "SessionState",
]

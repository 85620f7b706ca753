"""Structured errors raised during a provisioning session."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Kinds of failure a provisioning session can end with."""

    NO_DEVICE_SELECTED = "NoDeviceSelected"
    DEVICE_TIMEOUT = "DeviceTimeout"
    KEY_GENERATION_FAILED = "KeyGenerationFailed"
    NO_KEY_PAIR = "NoKeyPair"
    INVALID_PEER_KEY = "InvalidPeerKey"
    IMAGE_UNAVAILABLE = "ImageUnavailable"
    FLASH_WRITE_FAILED = "FlashWriteFailed"
    PRECONDITION_VIOLATION = "PreconditionViolation"
    TRANSPORT_FAILURE = "TransportFailure"


class ProvisioningError(Exception):
    """Base class for all provisioning failures."""

    kind: ErrorKind = ErrorKind.TRANSPORT_FAILURE
    default_remediation: Optional[str] = None

    def __init__(self, message: str, remediation: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.remediation = remediation or self.default_remediation


class NoDeviceSelected(ProvisioningError):
    kind = ErrorKind.NO_DEVICE_SELECTED
    default_remediation = "Connect the board over USB or pass --port explicitly."


class DeviceTimeout(ProvisioningError):
    kind = ErrorKind.DEVICE_TIMEOUT
    default_remediation = (
        "Hold the BOOT button while connecting to enter the bootloader "
        "manually, then retry with a new session."
    )


class KeyGenerationFailed(ProvisioningError):
    kind = ErrorKind.KEY_GENERATION_FAILED


class NoKeyPair(ProvisioningError):
    kind = ErrorKind.NO_KEY_PAIR


class InvalidPeerKey(ProvisioningError):
    kind = ErrorKind.INVALID_PEER_KEY


class ImageUnavailable(ProvisioningError):
    kind = ErrorKind.IMAGE_UNAVAILABLE


class FlashWriteFailed(ProvisioningError):
    kind = ErrorKind.FLASH_WRITE_FAILED


class PreconditionViolation(ProvisioningError):
    kind = ErrorKind.PRECONDITION_VIOLATION


class TransportFailure(ProvisioningError):
    kind = ErrorKind.TRANSPORT_FAILURE


@dataclass(frozen=True)
class SessionError:
    """Error recorded on a session when it enters the error state."""

    kind: ErrorKind
    message: str
    remediation: Optional[str] = None

    @classmethod
    def from_exception(cls, error: ProvisioningError) -> "SessionError":
        """Build a session error record from a raised provisioning error."""
        return cls(kind=error.kind, message=error.message, remediation=error.remediation)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"

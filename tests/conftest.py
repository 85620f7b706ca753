"""Pytest configuration and fixtures for na-provision tests."""

import os
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from na_provision.config import FlashConfig, ProvisioningConfig
from na_provision.flasher import FirmwareImage, SimulatedFlasher


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_firmware() -> bytes:
    """Sample 200,000-byte firmware image."""
    # ESP32 app images start with the 0xE9 magic byte
    return b"\xe9\x06\x02\x20" + os.urandom(200_000 - 4)


@pytest.fixture
def sample_image(sample_firmware: bytes) -> FirmwareImage:
    """Firmware image at the default application offset."""
    return FirmwareImage(data=sample_firmware)


@pytest.fixture
def firmware_file(temp_dir: Path, sample_firmware: bytes) -> Path:
    """Create a firmware file on disk."""
    path = temp_dir / "firmware.bin"
    path.write_bytes(sample_firmware)
    return path


@pytest.fixture
def flasher() -> SimulatedFlasher:
    """Simulated device writing 50,000-byte chunks."""
    return SimulatedFlasher(chunk_size=50_000)


@pytest.fixture
def default_settle_config() -> ProvisioningConfig:
    """Configuration with the default three second settling interval."""
    return ProvisioningConfig(flash=FlashConfig(settle_interval_s=3.0))


@pytest.fixture
def sleeps() -> list:
    """Durations passed to the session's sleep function."""
    return []


@pytest.fixture
def fake_sleep(sleeps: list):
    """Sleep replacement that records the interval and returns at once."""

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep

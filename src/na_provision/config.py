"""Configuration management for NA firmware provisioning."""

import json
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

ConnectMode = Literal["default-reset", "no-reset", "usb-reset", "no-reset-no-sync"]


class SerialConfig(BaseModel):
    """Serial link configuration."""

    port: Optional[str] = None
    baud_rate: int = 115200
    connect_mode: ConnectMode = "default-reset"
    connect_attempts: int = 7
    pre_sync_delay_s: float = 0.5  # Lets the board settle before the sync handshake
    read_timeout_s: float = 3.0
    app_baud_rate: int = 115200
    app_boot_delay_s: float = Field(default=1.0, ge=0.0)

    @field_validator("connect_mode", mode="before")
    @classmethod
    def _normalize_connect_mode(cls, value):
        # esptool 4 spells the modes with underscores
        if isinstance(value, str):
            return value.replace("_", "-")
        return value


class FlashConfig(BaseModel):
    """Flash write configuration."""

    offset: int = 0x10000
    flash_size: str = "keep"
    flash_mode: str = "keep"
    flash_freq: str = "keep"
    erase_all: bool = False
    compress: bool = True
    verify: bool = True
    settle_interval_s: float = Field(default=3.0, ge=0.0)


class SecurityConfig(BaseModel):
    """Key exchange configuration."""

    require_secure_channel: bool = False
    handshake_timeout_s: float = Field(default=10.0, gt=0.0)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"


class ProvisioningConfig(BaseModel):
    """Complete provisioning configuration."""

    serial: SerialConfig = SerialConfig()
    flash: FlashConfig = FlashConfig()
    security: SecurityConfig = SecurityConfig()
    logging: LoggingConfig = LoggingConfig()


def load_config(config_path: Path) -> ProvisioningConfig:
    """Load configuration from file.

    Supports YAML and JSON formats.

    Args:
        config_path: Path to configuration file

    Returns:
        ProvisioningConfig object
    """
    with open(config_path) as f:
        if config_path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(f)
        elif config_path.suffix == ".json":
            data = json.load(f)
        else:
            raise ValueError(f"Unsupported config format: {config_path.suffix}")

    return ProvisioningConfig(**(data or {}))


def save_config(config: ProvisioningConfig, config_path: Path) -> None:
    """Save configuration to file.

    Args:
        config: Configuration to save
        config_path: Output path
    """
    data = config.model_dump()

    with open(config_path, "w") as f:
        if config_path.suffix in (".yaml", ".yml"):
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        elif config_path.suffix == ".json":
            json.dump(data, f, indent=2)
        else:
            raise ValueError(f"Unsupported config format: {config_path.suffix}")


def generate_default_config(format: str = "yaml") -> str:
    """Generate default configuration content.

    Args:
        format: Output format ("yaml" or "json")

    Returns:
        Configuration file content as string
    """
    data = ProvisioningConfig().model_dump()

    if format == "yaml":
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    elif format == "json":
        return json.dumps(data, indent=2)
    else:
        raise ValueError(f"Unsupported format: {format}")


# Presets for bench work and for the production line
DEVELOPMENT_CONFIG = ProvisioningConfig(
    flash=FlashConfig(settle_interval_s=1.0),
    security=SecurityConfig(require_secure_channel=False),
    logging=LoggingConfig(level="DEBUG"),
)

PRODUCTION_CONFIG = ProvisioningConfig(
    flash=FlashConfig(verify=True),
    security=SecurityConfig(require_secure_channel=True),
)

"""Tests for the command-line interface."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from na_provision import cli
from na_provision.esp import SerialPortInfo


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


class TestFlashCommand:
    """Tests for the flash command in simulated mode."""

    def test_simulated_flash(self, runner: CliRunner, firmware_file: Path):
        """Test a full simulated run succeeds."""
        result = runner.invoke(
            cli.main, ["flash", "--image", str(firmware_file), "--simulate", "--settle", "0"]
        )
        assert result.exit_code == 0, result.output
        assert "Provisioning complete" in result.output
        assert "ESP32" in result.output

    def test_simulated_secure_flash(self, runner: CliRunner, firmware_file: Path):
        """Test the key exchange runs with --secure."""
        result = runner.invoke(
            cli.main,
            ["flash", "--image", str(firmware_file), "--simulate", "--secure", "--settle", "0"],
        )
        assert result.exit_code == 0, result.output
        assert "Secure channel" in result.output

    def test_missing_image(self, runner: CliRunner, temp_dir: Path):
        """Test a missing image fails before connecting."""
        result = runner.invoke(
            cli.main, ["flash", "--image", str(temp_dir / "missing.bin"), "--simulate"]
        )
        assert result.exit_code == 1
        assert "Cannot load firmware image" in result.output

    def test_invalid_offset(self, runner: CliRunner, firmware_file: Path):
        """Test a malformed offset is a usage error."""
        result = runner.invoke(
            cli.main, ["flash", "--image", str(firmware_file), "--offset", "0xZZ", "--simulate"]
        )
        assert result.exit_code == 2

    def test_hex_offset(self, runner: CliRunner, firmware_file: Path):
        """Test hex offsets are accepted."""
        result = runner.invoke(
            cli.main,
            ["flash", "--image", str(firmware_file), "--offset", "0x20000", "--simulate", "--settle", "0"],
        )
        assert result.exit_code == 0, result.output
        assert "0x20000" in result.output

    def test_device_timeout(self, runner: CliRunner, firmware_file: Path, monkeypatch):
        """Test a sync timeout prints the error and the BOOT hint."""
        original = cli.SimulatedFlasher

        def timing_out(**kwargs):
            return original(sync_timeout=True, **kwargs)

        monkeypatch.setattr(cli, "SimulatedFlasher", timing_out)
        result = runner.invoke(
            cli.main, ["flash", "--image", str(firmware_file), "--simulate", "--settle", "0"]
        )
        assert result.exit_code == 1
        assert "DeviceTimeout" in result.output
        assert "BOOT" in result.output

    def test_config_requires_secure(self, runner: CliRunner, firmware_file: Path, temp_dir: Path):
        """Test a config requiring the secure channel turns it on."""
        config_path = temp_dir / "config.json"
        config_path.write_text(json.dumps({"security": {"require_secure_channel": True}}))
        result = runner.invoke(
            cli.main,
            ["--config", str(config_path), "flash", "--image", str(firmware_file), "--simulate", "--settle", "0"],
        )
        assert result.exit_code == 0, result.output


class TestInitConfig:
    """Tests for the init-config command."""

    def test_yaml(self, runner: CliRunner, temp_dir: Path):
        """Test writing a YAML config."""
        output = temp_dir / "provision.yaml"
        result = runner.invoke(cli.main, ["init-config", "--output", str(output)])
        assert result.exit_code == 0
        assert "settle_interval_s" in output.read_text()

    def test_json(self, runner: CliRunner, temp_dir: Path):
        """Test writing a JSON config."""
        output = temp_dir / "provision.json"
        result = runner.invoke(cli.main, ["init-config", "-o", str(output), "--format", "json"])
        assert result.exit_code == 0
        assert json.loads(output.read_text())["serial"]["baud_rate"] == 115200


class TestListDevices:
    """Tests for the list-devices command."""

    def test_no_ports(self, runner: CliRunner, monkeypatch):
        """Test the empty listing."""
        monkeypatch.setattr(cli, "list_serial_ports", lambda: [])
        result = runner.invoke(cli.main, ["list-devices"])
        assert result.exit_code == 0
        assert "No serial ports found" in result.output

    def test_ports(self, runner: CliRunner, monkeypatch):
        """Test ports are listed."""
        ports = [SerialPortInfo("/dev/ttyUSB0", "CP2102", "USB VID:PID=10C4:EA60", True)]
        monkeypatch.setattr(cli, "list_serial_ports", lambda: ports)
        result = runner.invoke(cli.main, ["list-devices"])
        assert result.exit_code == 0
        assert "/dev/ttyUSB0" in result.output

"""Tests for the command-line entry point."""

from unittest.mock import patch

import pytest

from serial2ws import __main__ as cli
from serial2ws.bridge import PortInfo
from serial2ws.config import BridgeConfig


def test_invalid_arguments_exit_with_error(capsys):
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["--ws-port", "70000"])
    assert exc_info.value.code == 1
    assert "Error:" in capsys.readouterr().err


def test_list_ports(capsys):
    async def fake_ports():
        return [
            PortInfo(device="COM3", description="USB Serial Device", manufacturer="FTDI", vid=0x0403, pid=0x6001),
            PortInfo(device="COM1", description="Communications Port"),
        ]

    with patch.object(cli, "list_available_ports", fake_ports), patch.object(cli, "run_bridge") as run_bridge:
        cli.main(["--list-ports"])
    run_bridge.assert_not_called()
    out = capsys.readouterr().out
    assert "COM3\tUSB Serial Device\tFTDI [0403:6001]" in out
    assert "COM1\tCommunications Port" in out


def test_runs_bridge_with_parsed_config():
    with patch.object(cli, "run_bridge") as run_bridge:
        cli.main(["--port", "/dev/ttyUSB0", "--baud", "115200", "--ws-port", "9000", "--settle-delay", "0.5", "-v"])
    run_bridge.assert_called_once_with(
        BridgeConfig(device_path="/dev/ttyUSB0", baud_rate=115200, listen_port=9000),
        verbose=True,
        settings_path=None,
        settle_delay=0.5,
    )


def test_bad_settings_file_exits_with_error(tmp_path, capsys):
    path = tmp_path / "settings.json"
    path.write_text('{"baud_rate": "fast"}')
    with patch("serial2ws.service.BridgeService") as service:
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--settings", str(path)])
    service.assert_not_called()
    assert exc_info.value.code == 1
    assert "baud_rate" in capsys.readouterr().err

"""Unit tests for the ssh-port-forward CLI."""

import errno
import logging
import socket
from unittest.mock import patch

import paramiko
import pytest

from ssh_port_forward import cli
from ssh_port_forward.config import SSHTarget
from ssh_port_forward.errors import NoPortsAvailable


@pytest.fixture
def mock_forwarder():
    with patch("ssh_port_forward.cli.PortForwarder") as mock_class, patch(
        "ssh_port_forward.cli.resolve_target", return_value=SSHTarget("example.com", "app")
    ):
        yield mock_class


class TestMain:
    """Tests for the main entry point."""

    def test_cli_mode_exits_with_run_status(self, mock_forwarder):
        mock_forwarder.return_value.run.return_value = 0

        with pytest.raises(SystemExit) as exc_info:
            cli.main(["app@example.com", "--cli"])

        assert exc_info.value.code == 0
        mock_forwarder.return_value.run.assert_called_once_with(None)

    def test_dashboard_is_default(self, mock_forwarder):
        mock_forwarder.return_value.run.return_value = 0

        with pytest.raises(SystemExit):
            cli.main(["app@example.com"])

        mock_forwarder.return_value.run.assert_called_once_with(cli._dashboard_keep_alive)
        from ssh_port_forward.dashboard import LogHandler

        assert not any(isinstance(h, LogHandler) for h in cli.logger.handlers)

    def test_options_are_passed_through(self, mock_forwarder):
        mock_forwarder.return_value.run.return_value = 0

        with pytest.raises(SystemExit):
            cli.main(["app@example.com", "--cli", "--command", "list-ports", "-m", "9000"])

        args, kwargs = mock_forwarder.call_args
        assert args == (SSHTarget("example.com", "app"),)
        assert kwargs == {"command": "list-ports", "max_port": 9000}

    def test_fatal_error_exits_non_zero(self, mock_forwarder):
        mock_forwarder.return_value.run.side_effect = NoPortsAvailable("nothing to forward")

        with pytest.raises(SystemExit) as exc_info:
            cli.main(["app@example.com", "--cli"])

        assert exc_info.value.code == 1

    def test_ssh_error_exits_non_zero(self, mock_forwarder):
        mock_forwarder.return_value.run.side_effect = paramiko.SSHException("banner error")

        with pytest.raises(SystemExit) as exc_info:
            cli.main(["app@example.com", "--cli"])

        assert exc_info.value.code == 1

    def test_unknown_host_exits_non_zero(self, mock_forwarder, caplog):
        mock_forwarder.return_value.run.side_effect = socket.gaierror(-2, "Name or service not known")

        with pytest.raises(SystemExit) as exc_info:
            cli.main(["app@nonexistent.invalid", "--cli"])

        assert exc_info.value.code == 1
        assert "Connection failed: [Errno -2] Name or service not known" in caplog.text

    def test_unreachable_network_exits_non_zero(self, mock_forwarder):
        mock_forwarder.return_value.run.side_effect = OSError(errno.ENETUNREACH, "Network is unreachable")

        with pytest.raises(SystemExit) as exc_info:
            cli.main(["app@example.com", "--cli"])

        assert exc_info.value.code == 1

    def test_interrupt_during_discovery_exits_cleanly(self, mock_forwarder):
        mock_forwarder.return_value.run.side_effect = KeyboardInterrupt

        with pytest.raises(SystemExit) as exc_info:
            cli.main(["app@example.com", "--cli"])

        assert exc_info.value.code == 0

    @pytest.mark.parametrize("max_port", ["0", "70000"])
    def test_invalid_max_port(self, mock_forwarder, max_port):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["app@example.com", "-m", max_port])

        assert exc_info.value.code == 1
        mock_forwarder.assert_not_called()

    def test_invalid_destination(self):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["ssh://"])

        assert exc_info.value.code == 1


class TestDashboardKeepAlive:
    """Tests for running the dashboard as the keep-alive wait."""

    def test_console_handlers_are_restored(self):
        root = logging.getLogger()
        before = list(root.handlers)

        with patch("ssh_port_forward.dashboard.run_dashboard") as mock_run:
            cli._dashboard_keep_alive("forwarder")

        mock_run.assert_called_once_with("forwarder")
        assert set(root.handlers) == set(before)

"""CLI entry point for ssh-port-forward."""

import argparse
import logging
import sys

import paramiko

from ssh_port_forward.__version__ import __version__
from ssh_port_forward.binding import MAX_PORT
from ssh_port_forward.config import resolve_target
from ssh_port_forward.discovery import DISCOVERY_COMMAND
from ssh_port_forward.errors import PortForwardError
from ssh_port_forward.forwarder import PortForwarder

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("ssh-port-forward")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Forward the ports a remote application exposes to your machine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ssh-port-forward ssh://5a2b@myapp-ns.example.com  # Launch dashboard (default)
  ssh-port-forward myapp --cli                      # Plain output, ctrl + c to stop
  ssh-port-forward user@host -v                     # Enable verbose logging
  ssh-port-forward myapp --command list-ports       # Use another discovery command
        """,
    )
    parser.add_argument("destination", help="ssh:// URL, user@host, or host alias from SSH config")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("-c", "--config", help="Path to SSH config file")
    parser.add_argument(
        "--command",
        default=DISCOVERY_COMMAND,
        help=f"Remote command that lists forwardable ports (default: {DISCOVERY_COMMAND})",
    )
    parser.add_argument(
        "-m",
        "--max-port",
        type=int,
        default=MAX_PORT,
        metavar="PORT",
        help=f"Highest local port to try when a port is in use (default: {MAX_PORT})",
    )
    parser.add_argument(
        "--cli",
        action="store_true",
        help="Keep tunnels open without the dashboard",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _dashboard_keep_alive(forwarder: PortForwarder) -> None:
    """Route logs into the dashboard while it runs."""
    from ssh_port_forward.dashboard import run_dashboard

    root = logging.getLogger()
    console_handlers = [
        h for h in root.handlers if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
    ]
    for handler in console_handlers:
        root.removeHandler(handler)
    try:
        run_dashboard(forwarder)
    finally:
        for handler in console_handlers:
            root.addHandler(handler)


def main(argv=None):
    args = build_parser().parse_args(argv)

    if args.verbose:
        logger.setLevel(logging.DEBUG)
        logging.getLogger("paramiko").setLevel(logging.DEBUG)

    if not 0 < args.max_port <= MAX_PORT:
        logger.error(f"Invalid max port. Use a port between 1 and {MAX_PORT}")
        sys.exit(1)

    try:
        target = resolve_target(args.destination, args.config)
    except ValueError as e:
        logger.error(str(e))
        sys.exit(1)
    logger.debug(f"Using {target}:{target.port}...")

    forwarder = PortForwarder(target, command=args.command, max_port=args.max_port)
    keep_alive = None
    log_handler = None
    if not args.cli:
        from ssh_port_forward.dashboard import LogHandler

        # Buffer discovery and binding logs so the dashboard can replay them
        log_handler = LogHandler()
        log_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%H:%M:%S"))
        logger.addHandler(log_handler)
        keep_alive = _dashboard_keep_alive

    try:
        status = forwarder.run(keep_alive)
    except PortForwardError as e:
        logger.error(str(e))
        sys.exit(1)
    except (paramiko.SSHException, OSError) as e:
        logger.error(f"Connection failed: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
        sys.exit(0)
    finally:
        if log_handler is not None:
            logger.removeHandler(log_handler)
    sys.exit(status)


if __name__ == "__main__":
    main()

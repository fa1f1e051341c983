"""Parsing of the remote port listing into forwarding specs."""

import enum
import logging
import re
from typing import Iterable, List, Optional, Tuple

from ssh_port_forward.errors import NoPortsAvailable, PermissionDenied
from ssh_port_forward.specs import ForwardingSpec, ForwardingStyle

logger = logging.getLogger("ssh-port-forward")

# Command run on the remote host to list the ports it will forward
DISCOVERY_COMMAND = "rhc-list-ports"

UP_TO_255 = r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)"
UP_TO_65535 = r"(?:6553[0-5]|655[0-2][0-9]|65[0-4][0-9]{2}|6[0-4][0-9]{3}|[0-5]?[0-9]{1,4})"
IP_AND_PORT = rf"\b({UP_TO_255}(?:\.{UP_TO_255}){{3}}):({UP_TO_65535})\b"

SERVICE_LINE_RE = re.compile(rf"^\s*(\S+) -> {IP_AND_PORT}")
PERMISSION_DENIED_RE = re.compile(r"permission denied", re.IGNORECASE)


class Stream(enum.Enum):
    """Which output stream of the remote command a line came from."""

    STDOUT = "stdout"
    STDERR = "stderr"


def parse_discovery_line(
    line: str,
    stream: Stream = Stream.STDERR,
    style: Optional[ForwardingStyle] = None,
) -> Optional[ForwardingSpec]:
    """Turn one line of discovery output into a spec, or None.

    The port listing is written to stderr; stdout is never parsed. A
    permission-denied message anywhere on stderr aborts discovery.
    """
    if stream is not Stream.STDERR:
        return None

    line = line.rstrip("\r\n")
    if PERMISSION_DENIED_RE.search(line):
        raise PermissionDenied("Permission denied.")

    match = SERVICE_LINE_RE.match(line)
    if not match:
        return None
    service, remote_host, port = match.groups()
    return ForwardingSpec(service, remote_host, int(port), style=style)


class DiscoveryParser:
    """Collects specs from the discovery stream as lines arrive."""

    def __init__(self, style: Optional[ForwardingStyle] = None):
        self.style = style
        self.specs: List[ForwardingSpec] = []

    def feed(self, stream: Stream, line: str) -> Optional[ForwardingSpec]:
        spec = parse_discovery_line(line, stream, self.style)
        if spec is not None:
            logger.debug(repr(spec))
            logger.info(spec.describe())
            self.specs.append(spec)
        elif stream is Stream.STDERR and line.strip():
            logger.debug(line.rstrip())
        return spec

    def finish(self) -> List[ForwardingSpec]:
        if not self.specs:
            raise NoPortsAvailable(
                "There are no available ports to forward for this application. "
                "Your application may be stopped."
            )
        return self.specs


def parse_discovery_output(
    lines: Iterable[Tuple[Stream, str]],
    style: Optional[ForwardingStyle] = None,
) -> List[ForwardingSpec]:
    """Parse a whole discovery stream of (stream, line) pairs."""
    parser = DiscoveryParser(style)
    for stream, line in lines:
        parser.feed(stream, line)
    return parser.finish()

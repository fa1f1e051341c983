"""Sequential binding of forwarding specs with classified retry."""

import enum
import errno
import logging
import socket
from typing import Callable, List, Optional, Sequence

import paramiko
from paramiko.ssh_exception import NoValidConnectionsError

from ssh_port_forward.errors import PortForwardFailed
from ssh_port_forward.specs import DEFAULT_SSH_PORT, ForwardingSpec, build_fallback_command

logger = logging.getLogger("ssh-port-forward")

# Highest port we will bump to when the preferred one is taken
MAX_PORT = 65535


class BindFailure(enum.Enum):
    ADDRESS_IN_USE = "address in use"
    ADDRESS_UNAVAILABLE = "address unavailable"
    HOST_UNREACHABLE = "host unreachable"
    CONNECTION_REFUSED = "connection refused"
    TIMEOUT = "timeout"
    AUTH_FAILED = "authentication failed"


# Failures that make us give up on a single spec and move on to the next one
GIVE_UP_FAILURES = frozenset(
    {
        BindFailure.ADDRESS_UNAVAILABLE,
        BindFailure.HOST_UNREACHABLE,
        BindFailure.CONNECTION_REFUSED,
        BindFailure.TIMEOUT,
        BindFailure.AUTH_FAILED,
    }
)

_ERRNO_FAILURES = {
    errno.EADDRINUSE: BindFailure.ADDRESS_IN_USE,
    errno.EADDRNOTAVAIL: BindFailure.ADDRESS_UNAVAILABLE,
    errno.EHOSTUNREACH: BindFailure.HOST_UNREACHABLE,
    errno.ECONNREFUSED: BindFailure.CONNECTION_REFUSED,
    errno.ETIMEDOUT: BindFailure.TIMEOUT,
}


def classify_bind_error(exc: BaseException) -> Optional[BindFailure]:
    """Map an exception raised while binding or connecting to a known failure.

    Returns None for anything we do not know how to recover from.
    """
    if isinstance(exc, paramiko.AuthenticationException):
        return BindFailure.AUTH_FAILED
    if isinstance(exc, NoValidConnectionsError):
        return BindFailure.CONNECTION_REFUSED
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return BindFailure.TIMEOUT
    if isinstance(exc, ConnectionRefusedError):
        return BindFailure.CONNECTION_REFUSED
    if isinstance(exc, OSError):
        return _ERRNO_FAILURES.get(exc.errno)
    return None


class BindingEngine:
    """Binds specs one at a time through an injected bind primitive.

    ``attempt_bind`` is called with ``spec.to_fwd_args()`` and must raise on
    failure. A port that is already in use is retried one port higher; the
    transient network failures in GIVE_UP_FAILURES abandon that spec with a
    warning; anything else aborts the run with PortForwardFailed.
    """

    def __init__(
        self,
        attempt_bind: Callable[..., object],
        user: str,
        host: str,
        port: int = DEFAULT_SSH_PORT,
        max_port: int = MAX_PORT,
    ):
        self.attempt_bind = attempt_bind
        self.user = user
        self.host = host
        self.port = port
        self.max_port = max_port

    def fallback_command(self, specs: Sequence[ForwardingSpec]) -> str:
        return build_fallback_command(specs, self.user, self.host, self.port)

    def bind(self, spec: ForwardingSpec) -> bool:
        """Bind a single spec. Returns True once bound, False if given up.

        Unclassified errors from ``attempt_bind`` propagate unchanged.
        """
        while not spec.bound and not spec.given_up:
            args = spec.to_fwd_args()
            logger.debug(repr(args))
            try:
                self.attempt_bind(*args)
            except Exception as e:
                failure = classify_bind_error(e)
                if failure is None:
                    raise
                self._handle_failure(spec, failure)
            else:
                spec.bound = True
        return spec.bound

    def _handle_failure(self, spec: ForwardingSpec, failure: BindFailure) -> None:
        if failure is BindFailure.ADDRESS_IN_USE:
            if spec.port_from >= self.max_port:
                logger.debug(f"No local port left above {spec.port_from} for {spec.service}")
                self._give_up(spec)
                return
            spec.port_from += 1
            logger.debug(f"trying local port {spec.port_from}")
        else:
            logger.debug(f"{spec.service}: {failure.value}")
            self._give_up(spec)

    def _give_up(self, spec: ForwardingSpec) -> None:
        spec.given_up = True
        logger.warning(
            f"Error forwarding {spec}. You can try to forward manually by running:\n"
            f"{self.fallback_command([spec])}"
        )

    def bind_all(self, specs: Sequence[ForwardingSpec]) -> List[ForwardingSpec]:
        """Bind every spec in order and return the ones that ended up bound."""
        for index, spec in enumerate(specs):
            try:
                self.bind(spec)
            except Exception as e:
                raise port_forward_failed(e, self.fallback_command(specs[: index + 1])) from e
        return [spec for spec in specs if spec.bound]


def port_forward_failed(error: BaseException, ssh_cmd: str) -> PortForwardFailed:
    """Build the fatal error for a failed forward, with the command to do it by hand."""
    detail = f"{error}\n" if logger.isEnabledFor(logging.DEBUG) else ""
    return PortForwardFailed(
        f"{detail}Error trying to forward ports. You can try to forward manually by running:\n{ssh_cmd}",
        fallback_command=ssh_cmd,
    )

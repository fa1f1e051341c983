"""Forwarding specs and the platform-dependent ways of rendering them."""

import abc
import functools
import sys
from typing import Iterable, List, Optional, Tuple

LOOPBACK = "127.0.0.1"
DEFAULT_SSH_PORT = 22


class ForwardingStyle(abc.ABC):
    """How a spec is turned into SSH arguments on this platform."""

    @abc.abstractmethod
    def forward_target(self, spec: "ForwardingSpec") -> str: ...

    @abc.abstractmethod
    def success_prefix(self, spec: "ForwardingSpec") -> str: ...

    @abc.abstractmethod
    def cmd_arg(self, spec: "ForwardingSpec") -> str: ...

    @abc.abstractmethod
    def fwd_args(self, spec: "ForwardingSpec") -> tuple: ...

    @abc.abstractmethod
    def bind_host(self, spec: "ForwardingSpec") -> str: ...


class LocalForwardStyle(ForwardingStyle):
    """Bind a port on the local loopback address and tunnel it to the remote host."""

    def forward_target(self, spec):
        return f"local port {spec.port_from} to {spec.remote_host}:{spec.port_to}"

    def success_prefix(self, spec):
        return f"local port {spec.port_from} to "

    def cmd_arg(self, spec):
        return f" -L {spec.port_from}:{spec.remote_host}:{spec.port_to} "

    def fwd_args(self, spec):
        return (spec.port_from, spec.remote_host, spec.port_to)

    def bind_host(self, spec):
        return LOOPBACK


class RemoteBindStyle(ForwardingStyle):
    """Bind the remote host's own address locally, so the service keeps its address."""

    def forward_target(self, spec):
        return f"remote port {spec.remote_host}:{spec.port_to}"

    def success_prefix(self, spec):
        return ""

    def cmd_arg(self, spec):
        return f" -L {spec.remote_host}:{spec.port_from}:{spec.remote_host}:{spec.port_to} "

    def fwd_args(self, spec):
        return (spec.remote_host, spec.port_from, spec.remote_host, spec.port_to)

    def bind_host(self, spec):
        return spec.remote_host


def detect_forwarding_style(platform: str = sys.platform) -> ForwardingStyle:
    """Pick the forwarding style for a platform.

    macOS cannot bind arbitrary 127.x.y.z addresses, so it forwards from a
    local port instead of reusing the remote address.
    """
    if platform == "darwin":
        return LocalForwardStyle()
    return RemoteBindStyle()


PLATFORM_STYLE = detect_forwarding_style()


class ForwardingSpec:
    """One remote service port and the local port we are trying to forward it from."""

    def __init__(
        self,
        service: str,
        remote_host: str,
        port_to: int,
        port_from: Optional[int] = None,
        style: Optional[ForwardingStyle] = None,
    ):
        self._service = service
        self._remote_host = remote_host
        self._port_to = port_to
        # Match ports if possible
        self.port_from = port_to if port_from is None else port_from
        self.bound = False
        self.given_up = False
        self.style = style or PLATFORM_STYLE

    @property
    def service(self) -> str:
        return self._service

    @property
    def remote_host(self) -> str:
        return self._remote_host

    @property
    def port_to(self) -> int:
        return self._port_to

    def describe(self) -> str:
        """General description, including whether the spec is bound."""
        bound_msg = "bound" if self.bound else "not bound"
        return f"{self.service}: forwarding {self.style.forward_target(self)}; {bound_msg}"

    def message(self) -> str:
        """Announcement for a spec whose forwarding is up."""
        prefix = self.style.success_prefix(self)
        return f"{self.service}: now forwarding {prefix}remote port {self.remote_host}:{self.port_to}"

    def to_cmd_arg(self) -> str:
        """`-L` option for a manual ssh command line, padded with spaces."""
        return self.style.cmd_arg(self)

    def to_fwd_args(self) -> tuple:
        """Arguments for a local-forward bind request."""
        return self.style.fwd_args(self)

    def bind_address(self) -> Tuple[str, int]:
        return (self.style.bind_host(self), self.port_from)

    def __str__(self):
        return self.describe()

    def __repr__(self):
        return (
            f"ForwardingSpec({self.service!r}, {self.remote_host!r}, {self.port_to!r}, "
            f"port_from={self.port_from!r}, bound={self.bound!r})"
        )


def _order_by_attrs(a: ForwardingSpec, b: ForwardingSpec, *attrs: str) -> int:
    for attr in attrs:
        left, right = getattr(a, attr), getattr(b, attr)
        if left != right:
            return -1 if left < right else 1
    return 0


def compare_specs(a: ForwardingSpec, b: ForwardingSpec) -> int:
    """Report order: bound specs first, then by service, remote host and local port."""
    if a.bound and not b.bound:
        return -1
    if b.bound and not a.bound:
        return 1
    return _order_by_attrs(a, b, "service", "remote_host", "port_from")


REPORT_ORDER = functools.cmp_to_key(compare_specs)


def sort_for_report(specs: Iterable[ForwardingSpec]) -> List[ForwardingSpec]:
    return sorted(specs, key=REPORT_ORDER)


def build_fallback_command(
    specs: Iterable[ForwardingSpec],
    user: str,
    host: str,
    port: int = DEFAULT_SSH_PORT,
) -> str:
    """Render an ssh command the user can run by hand to set up the same forwards."""
    cmd = "ssh -N "
    if port != DEFAULT_SSH_PORT:
        cmd += f"-p {port} "
    for spec in specs:
        cmd += spec.to_cmd_arg()
    return cmd + f"{user}@{host}"

"""SSH sessions, local tunnels and the port forwarding run itself."""

import logging
import os
import select
import socket
import threading
import time
from typing import Callable, Dict, Iterator, List, Optional, Tuple

import paramiko
from paramiko import SSHClient

from ssh_port_forward.binding import MAX_PORT, BindingEngine, classify_bind_error, port_forward_failed
from ssh_port_forward.config import SSHTarget
from ssh_port_forward.discovery import DISCOVERY_COMMAND, DiscoveryParser, Stream
from ssh_port_forward.specs import (
    LOOPBACK,
    ForwardingSpec,
    ForwardingStyle,
    build_fallback_command,
    sort_for_report,
)

logger = logging.getLogger("ssh-port-forward")

BUFFER_SIZE = 65536


class LocalTunnel:
    """A local listening socket whose connections are relayed over SSH."""

    def __init__(self, transport, bind_host: str, local_port: int, remote_host: str, remote_port: int):
        self.transport = transport
        self.bind_host = bind_host
        self.local_port = local_port
        self.remote_host = remote_host
        self.remote_port = remote_port
        self.server_socket = None
        self.forward_thread = None
        self.active = False

        # Traffic monitoring
        self.bytes_sent = 0  # bytes sent to remote (upstream)
        self.bytes_received = 0  # bytes received from remote (downstream)
        self.last_activity = 0.0
        self._prev_bytes_sent = 0
        self._prev_bytes_received = 0
        self._prev_snapshot_time = 0.0

    def start(self):
        """Bind the local socket and start accepting in a background thread.

        Bind errors are raised so the caller can decide whether to retry on
        another port; the socket is closed first.
        """
        self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self.server_socket.bind((self.bind_host, self.local_port))
            self.server_socket.listen(5)
            self.server_socket.settimeout(1.0)  # Non-blocking accept
        except OSError:
            self.server_socket.close()
            self.server_socket = None
            raise

        self.active = True
        self.forward_thread = threading.Thread(
            target=self._forward_loop,
            daemon=True,
            name=f"Tunnel-{self.bind_host}:{self.local_port}->{self.remote_host}:{self.remote_port}",
        )
        self.forward_thread.start()
        logger.debug(
            f"✓ Tunnel active: {self.bind_host}:{self.local_port} -> {self.remote_host}:{self.remote_port}"
        )

    def _forward_loop(self):
        """Accept connections and hand each one to its own thread."""
        server_socket = self.server_socket
        while self.active:
            try:
                client_sock, addr = server_socket.accept()
                threading.Thread(
                    target=self._handler,
                    args=(client_sock,),
                    daemon=True,
                ).start()
            except socket.timeout:
                continue
            except OSError as e:
                if self.active:
                    logger.debug(f"Error accepting connection: {e}")

    def _handler(self, client_sock):
        """Relay a single accepted connection through a direct-tcpip channel."""
        chan = None
        try:
            chan = self.transport.open_channel(
                "direct-tcpip",
                (self.remote_host, self.remote_port),
                client_sock.getpeername(),
            )
            self._pipe(client_sock, chan)
        except (paramiko.SSHException, OSError) as e:
            logger.debug(f"Connection error: {e}")
        finally:
            client_sock.close()
            if chan is not None:
                chan.close()

    def _pipe(self, sock, chan):
        """Pipe data between socket and SSH channel until either side closes."""
        while self.active:
            if chan.closed or chan.eof_received:
                break

            r, w, x = select.select([sock, chan], [], [], 1.0)
            if sock in r:
                data = sock.recv(BUFFER_SIZE)
                if not data:
                    break
                chan.sendall(data)
                self.bytes_sent += len(data)
                self.last_activity = time.monotonic()
            if chan in r:
                data = chan.recv(BUFFER_SIZE)
                if not data:
                    break
                sock.sendall(data)
                self.bytes_received += len(data)
                self.last_activity = time.monotonic()

    def get_stats(self):
        """Return current traffic stats and compute recent speed."""
        now = time.monotonic()
        dt = now - self._prev_snapshot_time if self._prev_snapshot_time else 0.0

        if dt > 0:
            send_speed = (self.bytes_sent - self._prev_bytes_sent) / dt
            recv_speed = (self.bytes_received - self._prev_bytes_received) / dt
        else:
            send_speed = 0.0
            recv_speed = 0.0

        self._prev_bytes_sent = self.bytes_sent
        self._prev_bytes_received = self.bytes_received
        self._prev_snapshot_time = now

        idle_secs = now - self.last_activity if self.last_activity else None
        return {
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "send_speed": send_speed,
            "recv_speed": recv_speed,
            "idle_secs": idle_secs,
        }

    def stop(self):
        """Stop the tunnel."""
        self.active = False
        if self.server_socket is not None:
            try:
                self.server_socket.close()
            except OSError as e:
                logger.debug(f"Error closing server socket: {e}")
            self.server_socket = None
        logger.debug(f"✗ Tunnel stopped: {self.bind_host}:{self.local_port} -> {self.remote_host}:{self.remote_port}")


class _LineBuffer:
    """Splits a byte stream into decoded lines, keeping partial lines between reads."""

    def __init__(self):
        self._pending = b""

    def feed(self, data: bytes) -> List[str]:
        self._pending += data
        *lines, self._pending = self._pending.split(b"\n")
        return [line.decode("utf-8", errors="replace").rstrip("\r") for line in lines]

    def flush(self) -> List[str]:
        rest, self._pending = self._pending, b""
        return [rest.decode("utf-8", errors="replace").rstrip("\r")] if rest else []


class SSHSession:
    """One authenticated SSH connection to the target."""

    def __init__(self, target: SSHTarget):
        self.target = target
        self.client: Optional[SSHClient] = None
        self.tunnels: Dict[Tuple[str, int], LocalTunnel] = {}

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def _load_keys(self, key_path: str) -> list:
        """Load a private key file, trying different key formats."""
        for key_type in (paramiko.RSAKey, paramiko.ECDSAKey, paramiko.Ed25519Key):
            try:
                key = key_type.from_private_key_file(key_path)
            except (paramiko.SSHException, OSError, ValueError):
                continue
            logger.debug(f"Loaded key type: {key_type.__name__}")
            return [key]
        return []

    def _get_agent_keys(self) -> list:
        """Get keys from SSH agent."""
        try:
            keys = list(paramiko.Agent().get_keys())
        except paramiko.SSHException as e:
            logger.debug(f"SSH agent not available: {e}")
            return []
        logger.debug(f"Found {len(keys)} key(s) in SSH agent")
        return keys

    def _find_identity_keys(self) -> list:
        """Find identity keys from SSH config or default locations."""
        if self.target.identityfile:
            key_path = os.path.expanduser(self.target.identityfile)
            if os.path.exists(key_path):
                keys = self._load_keys(key_path)
                if keys:
                    return keys

        for key_path in ("~/.ssh/id_rsa", "~/.ssh/id_ed25519", "~/.ssh/id_ecdsa"):
            expanded = os.path.expanduser(key_path)
            if os.path.exists(expanded):
                keys = self._load_keys(expanded)
                if keys:
                    logger.debug(f"Loaded key from {key_path}")
                    return keys
        return []

    def open(self):
        """Connect and authenticate. Connection errors propagate to the caller."""
        self.client = SSHClient()
        self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        logger.debug(f"Connecting to {self.target}:{self.target.port}...")
        connect_kwargs = {
            "hostname": self.target.hostname,
            "port": self.target.port,
            "username": self.target.user,
            "timeout": 10,
            "allow_agent": False,
        }

        agent_keys = self._get_agent_keys()
        if agent_keys:
            logger.debug(f"Trying SSH agent authentication ({len(agent_keys)} key(s))...")
            connect_kwargs["pkey"] = agent_keys[0]
        else:
            identity_keys = self._find_identity_keys()
            if identity_keys:
                logger.debug("Trying identity file authentication...")
                connect_kwargs["pkey"] = identity_keys[0]
            else:
                logger.debug("Trying with default authentication...")
                connect_kwargs["allow_agent"] = True

        try:
            self.client.connect(**connect_kwargs)
        except Exception:
            self.client.close()
            self.client = None
            raise
        logger.debug("✓ Connected")

    def run_command(self, command: str) -> Iterator[Tuple[Stream, str]]:
        """Run a command and yield its output line by line, tagged by stream."""
        chan = self.client.get_transport().open_session()
        buffers = {Stream.STDOUT: _LineBuffer(), Stream.STDERR: _LineBuffer()}
        try:
            chan.exec_command(command)
            while True:
                if chan.recv_ready():
                    for line in buffers[Stream.STDOUT].feed(chan.recv(BUFFER_SIZE)):
                        yield Stream.STDOUT, line
                elif chan.recv_stderr_ready():
                    for line in buffers[Stream.STDERR].feed(chan.recv_stderr(BUFFER_SIZE)):
                        yield Stream.STDERR, line
                elif chan.exit_status_ready():
                    break
                else:
                    # stderr data does not wake select, so keep the timeout short
                    select.select([chan], [], [], 0.1)
            for stream, buf in buffers.items():
                for line in buf.flush():
                    yield stream, line
        finally:
            chan.close()

    def forward_local(self, *args) -> LocalTunnel:
        """Forward a local port, given (bind_host?, local_port, remote_host, remote_port).

        Without a bind host the tunnel listens on the loopback address.
        """
        if len(args) == 3:
            bind_host = LOOPBACK
            local_port, remote_host, remote_port = args
        elif len(args) == 4:
            bind_host, local_port, remote_host, remote_port = args
        else:
            raise TypeError(f"forward_local() takes 3 or 4 arguments ({len(args)} given)")

        tunnel = LocalTunnel(self.client.get_transport(), bind_host, local_port, remote_host, remote_port)
        tunnel.start()
        self.tunnels[(bind_host, local_port)] = tunnel
        return tunnel

    def tunnel_for(self, spec: ForwardingSpec) -> Optional[LocalTunnel]:
        return self.tunnels.get(spec.bind_address())

    def is_connected(self) -> bool:
        """Check if the SSH connection is still alive."""
        if self.client is None:
            return False
        transport = self.client.get_transport()
        return transport is not None and transport.is_active()

    def wait_forever(self, interval: float = 1.0):
        """Block while the connection is up, keeping the tunnels alive."""
        while self.is_connected():
            time.sleep(interval)
        logger.warning("SSH connection closed")

    def close(self):
        """Stop all tunnels and close the connection."""
        for key in list(self.tunnels):
            self.tunnels.pop(key).stop()
        if self.client is not None:
            self.client.close()
            self.client = None
            logger.debug("✓ Disconnected")


class PortForwarder:
    """Discovers the ports a host offers and forwards them until interrupted."""

    def __init__(
        self,
        target: SSHTarget,
        command: str = DISCOVERY_COMMAND,
        style: Optional[ForwardingStyle] = None,
        max_port: int = MAX_PORT,
        session_factory: Callable[[SSHTarget], SSHSession] = SSHSession,
    ):
        self.target = target
        self.command = command
        self.style = style
        self.max_port = max_port
        self.session_factory = session_factory

        self.specs: List[ForwardingSpec] = []
        self.session: Optional[SSHSession] = None

    def fallback_command(self) -> str:
        return build_fallback_command(self.specs, self.target.user, self.target.hostname, self.target.port)

    def discover(self) -> List[ForwardingSpec]:
        """Run the discovery command and parse the ports it reports."""
        logger.info("Checking available ports...")
        parser = DiscoveryParser(self.style)
        with self.session_factory(self.target) as session:
            for stream, line in session.run_command(self.command):
                parser.feed(stream, line)
        self.specs = parser.finish()
        return self.specs

    def bind(self, session: SSHSession) -> List[ForwardingSpec]:
        engine = BindingEngine(
            session.forward_local,
            self.target.user,
            self.target.hostname,
            self.target.port,
            max_port=self.max_port,
        )
        return engine.bind_all(self.specs)

    def report(self):
        """Announce every spec, bound ones first."""
        for spec in sort_for_report(self.specs):
            if spec.bound:
                logger.info(f"✓ {spec.message()}")
            else:
                logger.warning(spec.describe())

    def forward(self, keep_alive: Optional[Callable[["PortForwarder"], None]] = None) -> int:
        """Bind the discovered specs on a fresh session and keep them up.

        ``keep_alive`` blocks while the tunnels should stay open; it defaults
        to waiting on the SSH connection.
        """
        try:
            with self.session_factory(self.target) as session:
                self.session = session
                logger.info("Forwarding ports, use ctrl + c to stop")
                self.bind(session)
                self.report()

                if not any(spec.bound for spec in self.specs):
                    logger.warning("No ports have been bound")
                    return 0

                if keep_alive is None:
                    session.wait_forever()
                else:
                    keep_alive(self)
        except KeyboardInterrupt:
            pass
        finally:
            self.session = None
        logger.info("Ending port forward")
        return 0

    def run(self, keep_alive: Optional[Callable[["PortForwarder"], None]] = None) -> int:
        """Discover and forward. Returns the process exit status.

        Connection failures that also appear when binding (refused,
        unreachable, timeout, authentication) become PortForwardFailed with
        a command to forward by hand.
        """
        try:
            self.discover()
            return self.forward(keep_alive)
        except Exception as e:
            if classify_bind_error(e) is None:
                raise
            raise port_forward_failed(e, self.fallback_command()) from e

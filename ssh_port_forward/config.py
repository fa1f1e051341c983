"""Resolving an SSH destination into the host and user to connect to."""

import logging
import os
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from ssh_port_forward.specs import DEFAULT_SSH_PORT

logger = logging.getLogger("ssh-port-forward")


@dataclass
class SSHTarget:
    """Where the SSH sessions connect to."""

    hostname: str
    user: Optional[str]
    port: int = DEFAULT_SSH_PORT
    identityfile: Optional[str] = None

    def __str__(self):
        return f"{self.user}@{self.hostname}"


def find_ssh_config() -> str:
    """Find the SSH config file."""
    return os.path.join(os.path.expanduser("~"), ".ssh", "config")


def _host_matches(pattern: str, host: str) -> bool:
    """Check if an ssh_config Host pattern matches the target host."""
    regex = pattern.replace(".", r"\.").replace("*", ".*").replace("?", ".")
    return re.fullmatch(regex, host) is not None


def load_ssh_config(host_alias: str, ssh_config_path: Optional[str] = None) -> dict:
    """Load configuration for a host from an SSH config file.

    The first value found for a key wins, as it does for ssh itself.
    """
    config = {
        "hostname": host_alias,
        "user": os.getenv("USER") or os.getenv("USERNAME"),
        "port": DEFAULT_SSH_PORT,
        "identityfile": None,
    }
    path = ssh_config_path or find_ssh_config()

    if not os.path.exists(path):
        logger.debug(f"SSH config not found at {path}, using defaults")
        return config

    seen = set()
    matching = False
    with open(path, "r") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue

            parts = line.split(maxsplit=1)
            if len(parts) < 2:
                continue

            key, value = parts[0].lower(), parts[1].strip()

            if key == "host":
                matching = any(_host_matches(p, host_alias) for p in value.split())
                continue
            if not matching or key in seen:
                continue

            if key == "hostname":
                config["hostname"] = value
            elif key == "user":
                config["user"] = value
            elif key == "port":
                config["port"] = int(value)
            elif key == "identityfile":
                # Remove quotes if present
                config["identityfile"] = value.strip('"').strip("'")
            else:
                continue
            seen.add(key)

    logger.debug(f"Loaded config for '{host_alias}': {config['user']}@{config['hostname']}:{config['port']}")
    return config


def resolve_target(destination: str, ssh_config_path: Optional[str] = None) -> SSHTarget:
    """Resolve an ssh:// URL, user@host or SSH config alias into a target.

    Values spelled out in the destination take precedence over the SSH config.
    """
    user = None
    port = None
    if "://" in destination:
        uri = urlparse(destination)
        if not uri.hostname:
            raise ValueError(f"No host in SSH URL: {destination}")
        host, user, port = uri.hostname, uri.username, uri.port
    elif "@" in destination:
        user, host = destination.rsplit("@", 1)
    else:
        host = destination

    config = load_ssh_config(host, ssh_config_path)
    return SSHTarget(
        hostname=config["hostname"],
        user=user or config["user"],
        port=port or config["port"],
        identityfile=config["identityfile"],
    )

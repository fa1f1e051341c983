"""Negotiate SSH port forwarding for the services a remote host exposes."""

from ssh_port_forward.__version__ import __version__

__all__ = ["__version__"]

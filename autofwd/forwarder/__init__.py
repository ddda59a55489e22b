"""Socket relays and SSH forward management."""

from autofwd.forwarder.socket import SocketForwarder, SocketForwardingOptions
from autofwd.forwarder.ssh import (
    ForwardingKey,
    ForwardingMatch,
    ForwardingRequest,
    SSHForwarder,
    add_ssh_forwarding,
    delete_ssh_forwarding,
    list_ssh_forwardings,
)

__all__ = [
    "ForwardingKey",
    "ForwardingMatch",
    "ForwardingRequest",
    "SSHForwarder",
    "SocketForwarder",
    "SocketForwardingOptions",
    "add_ssh_forwarding",
    "delete_ssh_forwarding",
    "list_ssh_forwardings",
]

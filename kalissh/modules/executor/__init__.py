"""
Executor Module - Black Box Interface

Purpose: Run operator-approved commands on the remote host
Interface: RemoteChannel (connect, execute, cancel_current, disconnect, is_connected)
Hidden: ssh/sshpass invocation, proxy hop, process lifecycle, deadlines

Can be replaced with a different transport (paramiko, asyncssh, local shell).
"""

from .remote import (
    NO_OUTPUT,
    PROBE_MARKER,
    ConnectionState,
    ProgressSink,
    RemoteChannel,
    SSHRemoteExecutor,
)

__all__ = [
    "NO_OUTPUT",
    "PROBE_MARKER",
    "ConnectionState",
    "ProgressSink",
    "RemoteChannel",
    "SSHRemoteExecutor",
]

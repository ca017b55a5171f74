"""Public tunnel supervision."""

from ipfsbridge.tunnel.output import UrlExtractor, extract_public_url
from ipfsbridge.tunnel.supervisor import (
    Launcher,
    ProcessHandle,
    RestartPolicy,
    TunnelProcess,
    TunnelState,
    TunnelSupervisor,
    spawn_process,
)

__all__ = [
    "UrlExtractor",
    "extract_public_url",
    "Launcher",
    "ProcessHandle",
    "RestartPolicy",
    "TunnelProcess",
    "TunnelState",
    "TunnelSupervisor",
    "spawn_process",
]

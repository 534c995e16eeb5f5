"""Reaching the coordination service from inside a sandbox."""

from flotilla.bridge.connect import Bridge, BridgeConnection, TransportMode
from flotilla.bridge.service import CoordinationService, ServiceStatus, find_free_port
from flotilla.bridge.socat import BridgeHandle, SocketBridge

__all__ = [
    "Bridge",
    "BridgeConnection",
    "BridgeHandle",
    "CoordinationService",
    "ServiceStatus",
    "SocketBridge",
    "TransportMode",
    "find_free_port",
]

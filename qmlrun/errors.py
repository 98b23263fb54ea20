"""Exception hierarchy shared by every qmlrun stage."""

from __future__ import annotations


class QMLRunError(Exception):
    """Base error for discovery, serving and launch failures."""


class DeviceNotFoundError(QMLRunError):
    """Raised when discovery finishes without finding a device."""


class DeviceConnectionError(QMLRunError):
    """Raised when the device or one of its streams is network-unreachable."""


class ListenError(QMLRunError):
    """Raised when the local bundle server cannot bind."""


class JSONRPCError(QMLRunError):
    """Raised when the device answers with a JSON-RPC error object."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(f"JSONRPC error: {message}")
        self.message = message
        self.code = code

"""Failure taxonomy shared by the fetch, storage and config layers."""

from typing import Optional


class MonitorError(Exception):
    """Base class for every error raised by rpc_monitor."""


class FetchFailure(MonitorError):
    """A single RPC exchange failed. Recoverable by trying the next tier."""


class TransportError(FetchFailure):
    """Connect, DNS, TLS or timeout failure before a response was read."""


class ProtocolError(FetchFailure):
    """The server answered with a non-success HTTP status."""

    def __init__(self, status_code: int, detail: str = ""):
        self.status_code = status_code
        message = f"HTTP {status_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class RpcError(FetchFailure):
    """Well-formed JSON-RPC envelope carrying an application-level error."""

    def __init__(self, code: Optional[int], message: str):
        self.code = code
        self.message = message
        super().__init__(f"RPC error {code}: {message}")


class DecodeError(FetchFailure):
    """Malformed or unexpected response body."""


class StorageError(MonitorError):
    """I/O failure in the observation store."""


class ConfigError(MonitorError):
    """Invalid or unreadable configuration. Fatal at startup."""

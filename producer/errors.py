"""Error taxonomy for the producer console.

Every error surfaces to the nearest caller. Failures are isolated by device
id: one device's command or preview never touches another device's state.
"""

from __future__ import annotations


class ConsoleError(Exception):
    """Base error for all console failures."""


class TransportConnectionError(ConsoleError):
    """Raised when connecting or publishing to the transport fails."""


class NotConnectedError(ConsoleError):
    """Raised when an operation needs a live transport session."""


class PresenceError(ConsoleError):
    """Raised when the presence member list cannot be fetched."""


class NegotiationError(ConsoleError):
    """Raised when a preview offer/answer exchange fails.

    ``status`` carries the HTTP status of the playback endpoint when the
    failure came from a non-success response.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class UnknownDeviceError(ConsoleError, KeyError):
    """Raised when no registry knows the requested device id."""

    def __init__(self, device_id: str) -> None:
        super().__init__(device_id)
        self.device_id = device_id

    def __str__(self) -> str:
        return f"Unknown device: {self.device_id}"


class CommandTimeout(ConsoleError):
    """Soft signal: a dispatched command saw no confirmation in time.

    The dispatcher never raises this. It is logged and handed to timeout
    callbacks so an operator surface can show it.
    """

    def __init__(self, device_id: str, command: str, timeout: float) -> None:
        super().__init__(f"Command timeout: {command} for {device_id} after {timeout:g}s")
        self.device_id = device_id
        self.command = command
        self.timeout = timeout

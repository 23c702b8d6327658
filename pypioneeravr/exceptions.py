"""Errors handed back to callers of the receiver verbs."""

from typing import Optional


class AVRError(Exception):
    """Base class for pypioneeravr errors."""


class NotConnectedError(AVRError):
    """The command could not be written, or was dropped because the link went down."""


class CommandTimeoutError(AVRError):
    """No matching response arrived before the response-key lock expired."""

    def __init__(self, message: str, response_key: Optional[str] = None):
        super().__init__(f"No response to {message!r} (waiting for {response_key!r})")
        self.message = message
        self.response_key = response_key


class DeviceError(AVRError):
    """The receiver answered a query with an ``E..`` error line."""

    def __init__(self, line: str, response_key: Optional[str] = None):
        super().__init__(f"Device error {line!r} (for {response_key!r})")
        self.line = line
        self.response_key = response_key

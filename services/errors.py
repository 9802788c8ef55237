"""Error taxonomy shared by the ledger, projection, custody and settlement layers."""

from __future__ import annotations


class AgriTraceError(Exception):
    """Base exception for backend errors."""


class ValidationFailed(AgriTraceError):
    """Raised when a request is rejected before any ledger interaction."""


class NotFound(AgriTraceError):
    """Raised when a batch or queue item id does not exist."""


class InvalidLedgerTarget(AgriTraceError):
    """Raised when the configured contract address is malformed or has no code."""

    def __init__(self, message: str, address: str = ""):
        super().__init__(message)
        self.address = address


class TransitionDenied(AgriTraceError):
    """Raised when a custody or pricing guard fails."""


class WriteRejected(AgriTraceError):
    """Raised when the ledger refuses or fails a write."""


class SignalRejected(ValidationFailed):
    """Raised for a malformed settlement signal."""


class RelayerNotConfigured(AgriTraceError):
    """Raised when a write is attempted without a signing key."""


class LedgerReadFailed(AgriTraceError):
    """Raised when a ledger read cannot be completed (RPC failure, missing function)."""

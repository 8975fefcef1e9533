"""Error taxonomy for relay audits.

Connection, transport and ledger store failures end a run early.
Malformed frames and rejected events are expected noise on an open
relay and are counted.
"""

from __future__ import annotations


class RelayAuditError(Exception):
    """Base class for relay audit errors."""


class RelayConnectionError(RelayAuditError):
    """The relay endpoint could not be reached. Nothing was read."""


class TransportError(RelayAuditError):
    """The relay connection failed mid-stream."""


class LedgerStoreError(RelayAuditError):
    """The ledger could not be saved. Records already merged stay in memory."""


class MalformedFrame(RelayAuditError):
    """An inbound frame was not valid JSON or not a valid relay message."""


class ExtractionRejected(RelayAuditError):
    """An event did not match the extractor's schema."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InvariantViolation(RelayAuditError):
    """Internal consistency check failed. Indicates a bug, not bad input."""


__all__ = [
    "ExtractionRejected",
    "InvariantViolation",
    "LedgerStoreError",
    "MalformedFrame",
    "RelayAuditError",
    "RelayConnectionError",
    "TransportError",
]

from __future__ import annotations


class HelpdeskError(RuntimeError):
    """Base error for ticket engine issues."""


class NotFoundError(HelpdeskError):
    """Raised when a ticket, agent or group could not be located."""


class NoEligibleAgentError(HelpdeskError):
    """Raised when automatic assignment finds no active candidate."""


class AgentUnavailableError(HelpdeskError):
    """Raised when a manual assignment targets an agent that is not active."""


class NoPendingTransferError(HelpdeskError):
    """Raised when approving a transfer on a ticket without a proposal."""


class ConcurrentModificationError(HelpdeskError):
    """Raised when a record changed since the caller's snapshot was loaded."""


class InvalidRecordError(HelpdeskError):
    """Raised when a stored record carries a value outside its closed set."""


class TransientRepositoryError(RuntimeError):
    """Raised when the backing store is temporarily unreachable."""

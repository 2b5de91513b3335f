from __future__ import annotations

from enum import Enum
from typing import TypeVar

from .errors import InvalidRecordError

E = TypeVar("E", bound=Enum)


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    OPEN = "open"
    PENDING_AGENT = "pending_agent"
    IN_PROGRESS = "in_progress"
    WAITING_CUSTOMER = "waiting_customer"
    RESOLVED = "resolved"


class TicketPriority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"


class MessageType(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"
    INTERNAL_NOTE = "internal_note"


class AgentRole(str, Enum):
    ADMIN = "admin"
    AGENT = "agent"


class AgentStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class TicketStateMachine:
    """Compute the next status for each lifecycle event.

    Every transition is total: it is defined for all states and never raises.
    """

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.OPEN

    @classmethod
    def on_assigned(cls, current: TicketStatus) -> TicketStatus:
        return TicketStatus.IN_PROGRESS

    @classmethod
    def on_outgoing_message(cls, current: TicketStatus) -> TicketStatus:
        if current == TicketStatus.RESOLVED:
            return current
        return TicketStatus.IN_PROGRESS

    @classmethod
    def on_resolve(
        cls, current: TicketStatus, previous: TicketStatus | None
    ) -> tuple[TicketStatus, TicketStatus | None]:
        """Return ``(status, previous_status)`` after resolving."""

        if current == TicketStatus.RESOLVED:
            return current, previous
        return TicketStatus.RESOLVED, current

    @classmethod
    def on_reopen(
        cls, current: TicketStatus, previous: TicketStatus | None
    ) -> tuple[TicketStatus, TicketStatus | None]:
        """Return ``(status, previous_status)`` after reopening."""

        if current != TicketStatus.RESOLVED:
            return current, previous
        return previous or TicketStatus.IN_PROGRESS, None

    @classmethod
    def on_released(cls, current: TicketStatus) -> TicketStatus:
        if current == TicketStatus.RESOLVED:
            return current
        return TicketStatus.OPEN


def parse_enum(enum_type: type[E], value: object) -> E:
    """Coerce a stored value into ``enum_type``, rejecting unknown values."""

    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(str(value))
    except ValueError as exc:
        raise InvalidRecordError(f"Unknown {enum_type.__name__} value: {value!r}") from exc

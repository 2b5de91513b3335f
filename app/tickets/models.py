from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Sequence
from uuid import UUID

from .state import AgentRole, AgentStatus, MessageType, TicketPriority, TicketStatus


@dataclass(slots=True, frozen=True)
class Message:
    """Single entry in a ticket's conversation. Immutable once created."""

    id: UUID
    type: MessageType
    content: str
    created_at: datetime
    author: str | None = None
    has_attachment: bool = False


@dataclass(slots=True, frozen=True)
class TransferProposal:
    """Pending hand-off of a ticket to a named peer."""

    target_agent_id: str
    requested_at: datetime


@dataclass(slots=True)
class Ticket:
    """Aggregate representing a support ticket entry.

    Engine operations never mutate a ticket in place; they return a new
    snapshot built with :func:`dataclasses.replace`. ``version`` is the
    optimistic-concurrency counter, ``0`` meaning not yet persisted.
    """

    id: UUID
    number: int
    subject: str
    requester: str
    status: TicketStatus
    priority: TicketPriority
    created_at: datetime
    updated_at: datetime
    category: str | None = None
    previous_status: TicketStatus | None = None
    assigned_at: datetime | None = None
    agent_id: str | None = None
    group_id: str | None = None
    help_needed: bool = False
    messages: Sequence[Message] = ()
    transfer_proposal: TransferProposal | None = None
    version: int = 0


@dataclass(slots=True)
class Agent:
    """Staff member that may own tickets."""

    id: str
    name: str
    email: str
    role: AgentRole = AgentRole.AGENT
    status: AgentStatus = AgentStatus.ACTIVE
    group_ids: frozenset[str] = frozenset()
    last_assigned_at: datetime | None = None
    avatar_url: str | None = None
    version: int = 0

    @property
    def is_assignable(self) -> bool:
        return self.role == AgentRole.AGENT and self.status == AgentStatus.ACTIVE


@dataclass(slots=True, frozen=True)
class Group:
    """Named pool of agents used to scope automatic assignment."""

    id: str
    name: str
    description: str = ""


@dataclass(slots=True)
class TicketAuditEntry:
    """History entry describing state or ownership changes for a ticket."""

    id: UUID
    ticket_id: UUID
    action: str
    actor: str
    from_status: TicketStatus | None
    to_status: TicketStatus | None
    created_at: datetime
    metadata: Mapping[str, Any] = field(default_factory=dict)

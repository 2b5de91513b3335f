from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import HTTPException
from pydantic import BaseModel, ConfigDict, Field

from app.tickets.assignment import AssignmentKind, AssignmentResult
from app.tickets.errors import (
    AgentUnavailableError,
    ConcurrentModificationError,
    HelpdeskError,
    InvalidRecordError,
    NoEligibleAgentError,
    NoPendingTransferError,
    NotFoundError,
    TransientRepositoryError,
)
from app.tickets.models import Agent, Ticket
from app.tickets.state import AgentRole, AgentStatus, MessageType, TicketPriority, TicketStatus


class VersionedRequest(BaseModel):
    version: int | None = Field(default=None, ge=0, description="Version the caller last saw")


class TicketCreateRequest(BaseModel):
    subject: str = Field(..., min_length=1, max_length=255)
    requester: str = Field(..., min_length=1, max_length=255)
    priority: TicketPriority = TicketPriority.NORMAL
    category: str | None = Field(default=None, max_length=100)
    group_id: str | None = None
    content: str | None = None
    auto_assign: bool = False


class TicketUpdateRequest(VersionedRequest):
    priority: TicketPriority | None = None
    category: str | None = Field(default=None, min_length=1, max_length=100)

    def ensure_payload(self) -> None:
        if self.priority is None and self.category is None:
            raise HTTPException(status_code=400, detail="No fields provided for update")


class AssignRequest(VersionedRequest):
    kind: AssignmentKind
    id: str = Field(..., min_length=1)


class MessageCreateRequest(VersionedRequest):
    type: MessageType = MessageType.OUTBOUND
    content: str = Field(..., min_length=1)
    help_needed: bool = False
    has_attachment: bool = False


class TransferRequest(VersionedRequest):
    target_agent_id: str = Field(..., min_length=1)


class AgentUpsertRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., min_length=3, max_length=255)
    role: AgentRole = AgentRole.AGENT
    group_ids: list[str] = Field(default_factory=list)
    avatar_url: str | None = None
    version: int = Field(default=0, ge=0)


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    author: str | None
    type: MessageType
    content: str
    has_attachment: bool
    created_at: datetime


class TransferProposalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    target_agent_id: str
    requested_at: datetime


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    number: int
    subject: str
    requester: str
    status: TicketStatus
    previous_status: TicketStatus | None
    priority: TicketPriority
    category: str | None
    created_at: datetime
    updated_at: datetime
    assigned_at: datetime | None
    agent_id: str | None
    group_id: str | None
    help_needed: bool
    messages: list[MessageResponse]
    transfer_proposal: TransferProposalResponse | None
    version: int


class AssignmentResponse(BaseModel):
    ticket: TicketResponse
    agent_id: str | None
    queued: bool


class AgentResponse(BaseModel):
    id: str
    name: str
    email: str
    role: AgentRole
    status: AgentStatus
    group_ids: list[str]
    last_assigned_at: datetime | None
    avatar_url: str | None
    version: int


class GroupResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str


class TicketAuditResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    ticket_id: UUID
    action: str
    actor: str
    from_status: TicketStatus | None
    to_status: TicketStatus | None
    metadata: dict[str, object]
    created_at: datetime


def ticket_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse.model_validate(ticket)


def assignment_response(result: AssignmentResult) -> AssignmentResponse:
    return AssignmentResponse(
        ticket=ticket_response(result.ticket),
        agent_id=result.agent.id if result.agent is not None else None,
        queued=result.queued,
    )


def agent_response(agent: Agent) -> AgentResponse:
    return AgentResponse(
        id=agent.id,
        name=agent.name,
        email=agent.email,
        role=agent.role,
        status=agent.status,
        group_ids=sorted(agent.group_ids),
        last_assigned_at=agent.last_assigned_at,
        avatar_url=agent.avatar_url,
        version=agent.version,
    )


_STATUS_CODES: tuple[tuple[type[Exception], int], ...] = (
    (NotFoundError, 404),
    (NoEligibleAgentError, 409),
    (AgentUnavailableError, 409),
    (NoPendingTransferError, 409),
    (ConcurrentModificationError, 409),
    (InvalidRecordError, 500),
)


def http_error(exc: HelpdeskError | TransientRepositoryError) -> HTTPException:
    """Map engine errors onto HTTP status codes."""

    if isinstance(exc, TransientRepositoryError):
        return HTTPException(status_code=503, detail="Storage temporarily unavailable")
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))

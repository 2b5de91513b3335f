"""Ticket assignment and lifecycle engine."""

from .assignment import AssignmentEngine, AssignmentKind, AssignmentResult, AssignmentTarget, select_agent
from .directory import AgentDirectory, fairness_key
from .errors import (
    AgentUnavailableError,
    ConcurrentModificationError,
    HelpdeskError,
    InvalidRecordError,
    NoEligibleAgentError,
    NoPendingTransferError,
    NotFoundError,
    TransientRepositoryError,
)
from .lifecycle import LifecycleController
from .memory import InMemoryHelpdeskRepository
from .models import Agent, Group, Message, Ticket, TicketAuditEntry, TransferProposal
from .repository import HelpdeskRepository, RetryingRepository
from .service import HelpdeskService
from .state import AgentRole, AgentStatus, MessageType, TicketPriority, TicketStateMachine, TicketStatus
from .transfer import TransferCoordinator

__all__ = [
    "Agent",
    "AgentDirectory",
    "AgentRole",
    "AgentStatus",
    "AgentUnavailableError",
    "AssignmentEngine",
    "AssignmentKind",
    "AssignmentResult",
    "AssignmentTarget",
    "ConcurrentModificationError",
    "Group",
    "HelpdeskError",
    "HelpdeskRepository",
    "HelpdeskService",
    "InMemoryHelpdeskRepository",
    "InvalidRecordError",
    "LifecycleController",
    "Message",
    "MessageType",
    "NoEligibleAgentError",
    "NoPendingTransferError",
    "NotFoundError",
    "RetryingRepository",
    "Ticket",
    "TicketAuditEntry",
    "TicketPriority",
    "TicketStateMachine",
    "TicketStatus",
    "TransferCoordinator",
    "TransferProposal",
    "TransientRepositoryError",
    "fairness_key",
    "select_agent",
]

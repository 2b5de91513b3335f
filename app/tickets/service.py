from __future__ import annotations

from dataclasses import replace
from typing import Sequence
from uuid import UUID, uuid4

from .assignment import AssignmentEngine, AssignmentResult, AssignmentTarget
from .directory import AgentDirectory, Clock, utcnow
from .errors import ConcurrentModificationError, NotFoundError
from .lifecycle import LifecycleController
from .locks import KeyedLock
from .models import Agent, Group, Message, Ticket, TicketAuditEntry
from .repository import HelpdeskRepository
from .state import MessageType, TicketPriority, TicketStatus
from .transfer import TransferCoordinator


class HelpdeskService:
    """High level orchestration for id-based ticket and agent operations.

    Every mutating call accepts the ``expected_version`` the caller last saw;
    a mismatch raises ``ConcurrentModificationError`` before anything changes.
    """

    def __init__(self, repository: HelpdeskRepository, *, clock: Clock = utcnow) -> None:
        locks = KeyedLock()
        self._repository = repository
        self._clock = clock
        self.locks = locks
        self.directory = AgentDirectory(repository, clock=clock)
        self.assignment = AssignmentEngine(self.directory, repository, locks=locks, clock=clock)
        self.lifecycle = LifecycleController(self.assignment, repository, locks=locks, clock=clock)
        self.transfers = TransferCoordinator(self.directory, repository, locks=locks, clock=clock)

    async def create_ticket(
        self,
        *,
        subject: str,
        requester: str,
        actor: str,
        priority: TicketPriority = TicketPriority.NORMAL,
        category: str | None = None,
        group_id: str | None = None,
        content: str | None = None,
        auto_assign: bool = False,
    ) -> Ticket:
        if group_id is not None:
            await self.directory.get_group(group_id)
        return await self.lifecycle.create(
            subject=subject,
            requester=requester,
            priority=priority,
            category=category,
            group_id=group_id,
            content=content,
            auto_assign=auto_assign,
            actor=actor,
        )

    async def get_ticket(self, ticket_id: UUID) -> Ticket:
        return await self.lifecycle.get(ticket_id)

    async def list_tickets(self, *, status: TicketStatus | None = None) -> Sequence[Ticket]:
        return await self._repository.list_tickets(status=status)

    async def delete_ticket(self, ticket_id: UUID) -> None:
        deleted = await self._repository.delete_ticket(ticket_id)
        if not deleted:
            raise NotFoundError(f"Ticket {ticket_id} not found")

    async def get_audit_log(self, ticket_id: UUID) -> Sequence[TicketAuditEntry]:
        await self.get_ticket(ticket_id)
        return await self._repository.get_audit_log(ticket_id)

    async def auto_assign(
        self, ticket_id: UUID, *, actor: str, expected_version: int | None = None
    ) -> AssignmentResult:
        ticket = await self._snapshot(ticket_id, expected_version)
        return await self.assignment.auto_assign(ticket, actor=actor)

    async def manual_assign(
        self,
        ticket_id: UUID,
        target: AssignmentTarget,
        *,
        actor: str,
        expected_version: int | None = None,
    ) -> AssignmentResult:
        ticket = await self._snapshot(ticket_id, expected_version)
        return await self.assignment.manual_assign(ticket, target, actor=actor)

    async def add_message(
        self,
        ticket_id: UUID,
        *,
        type: MessageType,
        content: str,
        author: str | None,
        help_needed: bool = False,
        has_attachment: bool = False,
        expected_version: int | None = None,
    ) -> Ticket:
        ticket = await self._snapshot(ticket_id, expected_version)
        if type == MessageType.OUTBOUND:
            return await self.lifecycle.record_outgoing_message(
                ticket,
                content,
                author=author or "system",
                help_needed=help_needed,
                has_attachment=has_attachment,
            )
        message = Message(
            id=uuid4(),
            type=type,
            content=content,
            author=author,
            has_attachment=has_attachment,
            created_at=self._clock(),
        )
        return await self.lifecycle.record_inbound_or_note(ticket, message)

    async def resolve(self, ticket_id: UUID, *, actor: str, expected_version: int | None = None) -> Ticket:
        ticket = await self._snapshot(ticket_id, expected_version)
        return await self.lifecycle.resolve(ticket, actor=actor)

    async def reopen(self, ticket_id: UUID, *, actor: str, expected_version: int | None = None) -> Ticket:
        ticket = await self._snapshot(ticket_id, expected_version)
        return await self.lifecycle.reopen(ticket, actor=actor)

    async def update_ticket(
        self,
        ticket_id: UUID,
        *,
        actor: str,
        priority: TicketPriority | None = None,
        category: str | None = None,
        expected_version: int | None = None,
    ) -> Ticket:
        ticket = await self._snapshot(ticket_id, expected_version)
        if priority is not None and priority != ticket.priority:
            ticket = await self.lifecycle.update_priority(ticket, priority, actor=actor)
        if category is not None and category != ticket.category:
            ticket = await self.lifecycle.update_category(ticket, category, actor=actor)
        return ticket

    async def request_transfer(
        self,
        ticket_id: UUID,
        target_agent_id: str,
        *,
        actor: str,
        expected_version: int | None = None,
    ) -> Ticket:
        ticket = await self._snapshot(ticket_id, expected_version)
        return await self.transfers.request(ticket, target_agent_id, actor=actor)

    async def approve_transfer(
        self, ticket_id: UUID, *, actor: str, expected_version: int | None = None
    ) -> Ticket:
        ticket = await self._snapshot(ticket_id, expected_version)
        return await self.transfers.approve(ticket, actor=actor)

    async def tickets_owned_by(self, agent_id: str) -> list[Ticket]:
        await self.directory.get_agent(agent_id)
        return await self.lifecycle.tickets_owned_by(agent_id)

    async def tickets_queued_for(self, group_id: str) -> list[Ticket]:
        await self.directory.get_group(group_id)
        return await self.lifecycle.tickets_queued_for(group_id)

    async def list_agents(self) -> list[Agent]:
        return await self.directory.list_agents()

    async def list_groups(self) -> list[Group]:
        return await self.directory.list_groups()

    async def save_agent(self, agent: Agent) -> Agent:
        """Create or edit an agent. Edits keep the stored fairness clock and status."""

        current = await self._repository.load_agent(agent.id)
        if current is None:
            return await self.directory.save_agent(replace(agent, version=0))
        if agent.version != current.version:
            raise ConcurrentModificationError(
                f"Agent {agent.id} is at version {current.version}, caller has {agent.version}"
            )
        return await self.directory.save_agent(
            replace(agent, status=current.status, last_assigned_at=current.last_assigned_at)
        )

    async def deactivate_agent(self, agent_id: str) -> Agent:
        return await self.directory.deactivate(agent_id)

    async def suspend_agent(self, agent_id: str) -> Agent:
        return await self.directory.suspend(agent_id)

    async def activate_agent(self, agent_id: str) -> Agent:
        return await self.directory.activate(agent_id)

    async def _snapshot(self, ticket_id: UUID, expected_version: int | None) -> Ticket:
        ticket = await self.get_ticket(ticket_id)
        if expected_version is not None and expected_version != ticket.version:
            raise ConcurrentModificationError(
                f"Ticket {ticket_id} is at version {ticket.version}, caller has {expected_version}"
            )
        return ticket

from __future__ import annotations

import logging
from dataclasses import replace
from uuid import UUID, uuid4

from .assignment import AssignmentEngine
from .directory import Clock, utcnow
from .errors import ConcurrentModificationError, NoEligibleAgentError, NotFoundError
from .locks import KeyedLock
from .models import Message, Ticket
from .repository import HelpdeskRepository, commit_ticket
from .state import MessageType, TicketPriority, TicketStateMachine, TicketStatus

logger = logging.getLogger(__name__)


class LifecycleController:
    """Own the ticket status state machine and conversation log.

    Transitions are total: none of them fails because of the ticket's current
    status. Each returns the persisted snapshot and leaves the argument as is.
    """

    def __init__(
        self,
        assignment: AssignmentEngine,
        repository: HelpdeskRepository,
        *,
        locks: KeyedLock | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._assignment = assignment
        self._repository = repository
        self._locks = locks if locks is not None else KeyedLock()
        self._clock = clock
        assignment.directory.on_deactivate(self.release_agent_tickets)

    @property
    def locks(self) -> KeyedLock:
        return self._locks

    async def create(
        self,
        *,
        subject: str,
        requester: str,
        priority: TicketPriority = TicketPriority.NORMAL,
        category: str | None = None,
        group_id: str | None = None,
        content: str | None = None,
        auto_assign: bool = False,
        actor: str = "system",
    ) -> Ticket:
        """Open a new ticket, optionally seeded with the requester's first message.

        With ``auto_assign`` the ticket is routed right away; when nobody is
        eligible it simply stays OPEN in its group queue.
        """

        now = self._clock()
        number = await self._repository.next_ticket_number()
        messages: tuple[Message, ...] = ()
        if content:
            messages = (Message(id=uuid4(), type=MessageType.INBOUND, content=content, created_at=now),)
        ticket = Ticket(
            id=uuid4(),
            number=number,
            subject=subject,
            requester=requester,
            status=TicketStateMachine.initial_state(),
            priority=priority,
            category=category,
            group_id=group_id,
            messages=messages,
            created_at=now,
            updated_at=now,
        )
        saved = await commit_ticket(
            self._repository,
            ticket,
            ticket,
            action="created",
            actor=actor,
            metadata={"number": number},
            messages=messages,
        )
        logger.info("Ticket #%s created for %s", number, requester)
        if auto_assign:
            try:
                saved = (await self._assignment.auto_assign(saved, actor=actor)).ticket
            except NoEligibleAgentError:
                logger.info("Ticket #%s left in queue, no eligible agent", number)
        return saved

    async def record_outgoing_message(
        self,
        ticket: Ticket,
        content: str,
        *,
        author: str,
        help_needed: bool = False,
        has_attachment: bool = False,
    ) -> Ticket:
        """Append an agent reply; moves any unresolved ticket to IN_PROGRESS."""

        now = self._clock()
        message = Message(
            id=uuid4(),
            type=MessageType.OUTBOUND,
            content=content,
            author=author,
            has_attachment=has_attachment,
            created_at=now,
        )
        async with self._locks.hold(ticket.id):
            updated = replace(
                ticket,
                status=TicketStateMachine.on_outgoing_message(ticket.status),
                help_needed=help_needed,
                messages=(*ticket.messages, message),
                updated_at=now,
            )
            saved = await commit_ticket(
                self._repository,
                ticket,
                updated,
                action="replied",
                actor=author,
                metadata={"help_needed": help_needed},
                messages=(message,),
            )
        return saved

    async def record_inbound_or_note(self, ticket: Ticket, message: Message) -> Ticket:
        """Append an inbound message or internal note without touching status."""

        async with self._locks.hold(ticket.id):
            await self._repository.append_message(ticket.id, message)
        return replace(ticket, messages=(*ticket.messages, message))

    async def resolve(self, ticket: Ticket, *, actor: str = "system") -> Ticket:
        if ticket.status == TicketStatus.RESOLVED:
            return ticket
        status, previous = TicketStateMachine.on_resolve(ticket.status, ticket.previous_status)
        return await self._transition(ticket, status, previous, action="resolved", actor=actor)

    async def reopen(self, ticket: Ticket, *, actor: str = "system") -> Ticket:
        if ticket.status != TicketStatus.RESOLVED:
            return ticket
        status, previous = TicketStateMachine.on_reopen(ticket.status, ticket.previous_status)
        return await self._transition(ticket, status, previous, action="reopened", actor=actor)

    async def update_priority(
        self, ticket: Ticket, priority: TicketPriority, *, actor: str = "system"
    ) -> Ticket:
        async with self._locks.hold(ticket.id):
            updated = replace(ticket, priority=priority, updated_at=self._clock())
            return await commit_ticket(
                self._repository,
                ticket,
                updated,
                action="priority_changed",
                actor=actor,
                metadata={"priority": priority.value},
            )

    async def update_category(self, ticket: Ticket, category: str | None, *, actor: str = "system") -> Ticket:
        async with self._locks.hold(ticket.id):
            updated = replace(ticket, category=category, updated_at=self._clock())
            return await commit_ticket(
                self._repository,
                ticket,
                updated,
                action="category_changed",
                actor=actor,
                metadata={"category": category or ""},
            )

    async def release_agent_tickets(self, agent_id: str, *, attempts: int = 3) -> list[Ticket]:
        """Send every unresolved ticket owned by ``agent_id`` back to OPEN.

        Invoked when the agent is deactivated. A ticket that changes under us
        is reloaded and released again; one that moved to another owner or got
        resolved in the meantime is left alone.
        """

        released: list[Ticket] = []
        for ticket in await self._repository.list_tickets(agent_id=agent_id):
            current: Ticket | None = ticket
            for attempt in range(1, attempts + 1):
                if current is None or current.agent_id != agent_id or current.status == TicketStatus.RESOLVED:
                    break
                try:
                    released.append(await self._release(current))
                    break
                except ConcurrentModificationError:
                    if attempt == attempts:
                        raise
                    current = await self._repository.load_ticket(ticket.id)
        if released:
            logger.info("Released %d ticket(s) from deactivated agent %s", len(released), agent_id)
        return released

    async def tickets_owned_by(self, agent_id: str) -> list[Ticket]:
        return list(await self._repository.list_tickets(agent_id=agent_id))

    async def tickets_queued_for(self, group_id: str) -> list[Ticket]:
        """Unowned OPEN tickets waiting in ``group_id``, oldest first."""

        tickets = await self._repository.list_tickets(status=TicketStatus.OPEN, group_id=group_id)
        return [ticket for ticket in tickets if ticket.agent_id is None]

    async def get(self, ticket_id: UUID) -> Ticket:
        ticket = await self._repository.load_ticket(ticket_id)
        if ticket is None:
            raise NotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    async def _release(self, ticket: Ticket) -> Ticket:
        async with self._locks.hold(ticket.id):
            updated = replace(
                ticket,
                agent_id=None,
                assigned_at=None,
                status=TicketStateMachine.on_released(ticket.status),
                updated_at=self._clock(),
            )
            return await commit_ticket(
                self._repository,
                ticket,
                updated,
                action="released",
                actor="system",
                metadata={"agent_id": ticket.agent_id or ""},
            )

    async def _transition(
        self,
        ticket: Ticket,
        status: TicketStatus,
        previous: TicketStatus | None,
        *,
        action: str,
        actor: str,
    ) -> Ticket:
        async with self._locks.hold(ticket.id):
            updated = replace(ticket, status=status, previous_status=previous, updated_at=self._clock())
            saved = await commit_ticket(self._repository, ticket, updated, action=action, actor=actor)
        logger.info("Ticket #%s %s: %s -> %s", saved.number, action, ticket.status.value, status.value)
        return saved

from __future__ import annotations

import copy
import itertools
from dataclasses import replace
from typing import Iterable, Sequence
from uuid import UUID

from .errors import ConcurrentModificationError, NotFoundError
from .models import Agent, Group, Message, Ticket, TicketAuditEntry
from .state import TicketStatus


class InMemoryHelpdeskRepository:
    """Process-local repository keeping deep copies of every record.

    Each method body runs without awaiting, so on a single event loop every
    call is atomic with respect to other coroutines.
    """

    def __init__(
        self,
        *,
        agents: Iterable[Agent] = (),
        groups: Iterable[Group] = (),
    ) -> None:
        self._tickets: dict[UUID, Ticket] = {}
        self._agents: dict[str, Agent] = {}
        self._groups: dict[str, Group] = {group.id: group for group in groups}
        self._audit: dict[UUID, list[TicketAuditEntry]] = {}
        self._sequence = itertools.count(1)
        for agent in agents:
            self._agents[agent.id] = replace(agent, version=max(agent.version, 1))

    async def load_ticket(self, ticket_id: UUID) -> Ticket | None:
        ticket = self._tickets.get(ticket_id)
        return copy.deepcopy(ticket) if ticket is not None else None

    async def save_ticket(self, ticket: Ticket, *, messages: Sequence[Message] = ()) -> Ticket:
        current = self._tickets.get(ticket.id)
        current_version = current.version if current is not None else 0
        if ticket.version != current_version:
            raise ConcurrentModificationError(
                f"Ticket {ticket.id} is at version {current_version}, snapshot has {ticket.version}"
            )
        stored = tuple(current.messages) if current is not None else ()
        known = {message.id for message in stored}
        stored += tuple(copy.deepcopy(message) for message in messages if message.id not in known)
        saved = replace(ticket, version=current_version + 1)
        self._tickets[ticket.id] = replace(copy.deepcopy(saved), messages=stored)
        return saved

    async def list_tickets(
        self,
        *,
        status: TicketStatus | None = None,
        agent_id: str | None = None,
        group_id: str | None = None,
    ) -> Sequence[Ticket]:
        matches = [
            ticket
            for ticket in self._tickets.values()
            if (status is None or ticket.status == status)
            and (agent_id is None or ticket.agent_id == agent_id)
            and (group_id is None or ticket.group_id == group_id)
        ]
        matches.sort(key=lambda ticket: (ticket.created_at, ticket.number))
        return [copy.deepcopy(ticket) for ticket in matches]

    async def next_ticket_number(self) -> int:
        return next(self._sequence)

    async def delete_ticket(self, ticket_id: UUID) -> bool:
        self._audit.pop(ticket_id, None)
        return self._tickets.pop(ticket_id, None) is not None

    async def append_message(self, ticket_id: UUID, message: Message) -> None:
        ticket = self._tickets.get(ticket_id)
        if ticket is None:
            raise NotFoundError(f"Ticket {ticket_id} not found")
        if any(existing.id == message.id for existing in ticket.messages):
            return
        ticket.messages = (*ticket.messages, message)

    async def load_agent(self, agent_id: str) -> Agent | None:
        agent = self._agents.get(agent_id)
        return copy.deepcopy(agent) if agent is not None else None

    async def list_agents(self) -> Sequence[Agent]:
        return [copy.deepcopy(agent) for agent in sorted(self._agents.values(), key=lambda a: a.id)]

    async def save_agent(self, agent: Agent) -> Agent:
        current = self._agents.get(agent.id)
        current_version = current.version if current is not None else 0
        if agent.version != current_version:
            raise ConcurrentModificationError(
                f"Agent {agent.id} is at version {current_version}, snapshot has {agent.version}"
            )
        saved = replace(agent, version=current_version + 1)
        self._agents[agent.id] = copy.deepcopy(saved)
        return saved

    async def list_groups(self) -> Sequence[Group]:
        return sorted(self._groups.values(), key=lambda group: group.id)

    async def save_group(self, group: Group) -> Group:
        self._groups[group.id] = group
        return group

    async def add_audit_entry(self, entry: TicketAuditEntry) -> None:
        entries = self._audit.setdefault(entry.ticket_id, [])
        if all(existing.id != entry.id for existing in entries):
            entries.append(copy.deepcopy(entry))

    async def get_audit_log(self, ticket_id: UUID) -> Sequence[TicketAuditEntry]:
        return [copy.deepcopy(entry) for entry in self._audit.get(ticket_id, [])]

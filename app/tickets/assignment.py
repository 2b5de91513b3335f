from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Sequence

from .directory import AgentDirectory, Clock, fairness_key, utcnow
from .errors import AgentUnavailableError, NoEligibleAgentError
from .locks import KeyedLock
from .models import Agent, Ticket
from .repository import HelpdeskRepository, commit_ticket
from .state import AgentStatus, TicketStateMachine, TicketStatus

logger = logging.getLogger(__name__)


class AssignmentKind(str, Enum):
    AGENT = "agent"
    GROUP = "group"


@dataclass(slots=True, frozen=True)
class AssignmentTarget:
    """Destination of a manual assignment: a named agent or a group queue."""

    kind: AssignmentKind
    id: str

    @classmethod
    def agent(cls, agent_id: str) -> AssignmentTarget:
        return cls(AssignmentKind.AGENT, agent_id)

    @classmethod
    def group(cls, group_id: str) -> AssignmentTarget:
        return cls(AssignmentKind.GROUP, group_id)


@dataclass(slots=True)
class AssignmentResult:
    """Outcome of an assignment. ``queued`` means no agent was free yet."""

    ticket: Ticket
    agent: Agent | None = None
    queued: bool = False


def select_agent(candidates: Sequence[Agent]) -> Agent:
    if not candidates:
        raise NoEligibleAgentError("No eligible agent available")
    return min(candidates, key=fairness_key)


class AssignmentEngine:
    """Pick ticket owners under the round-robin fairness policy."""

    def __init__(
        self,
        directory: AgentDirectory,
        repository: HelpdeskRepository,
        *,
        locks: KeyedLock | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._directory = directory
        self._repository = repository
        self._locks = locks if locks is not None else KeyedLock()
        self._clock = clock

    @property
    def directory(self) -> AgentDirectory:
        return self._directory

    @property
    def locks(self) -> KeyedLock:
        return self._locks

    async def auto_assign(self, ticket: Ticket, *, actor: str = "system") -> AssignmentResult:
        """Assign the ticket to the fairest eligible agent of its group.

        Raises ``NoEligibleAgentError`` and leaves the ticket untouched when
        nobody is eligible.
        """

        async with self._locks.hold(ticket.id):
            async with self._directory.assignment_lock:
                candidates = await self._directory.list_eligible(ticket.group_id)
                try:
                    agent = select_agent(candidates)
                except NoEligibleAgentError:
                    logger.info("No eligible agent for ticket #%s (group=%s)", ticket.number, ticket.group_id)
                    raise
                return await self._assign_selected(ticket, ticket, agent, action="auto_assigned", actor=actor)

    async def manual_assign(
        self, ticket: Ticket, target: AssignmentTarget, *, actor: str = "system"
    ) -> AssignmentResult:
        if target.kind == AssignmentKind.AGENT:
            return await self._assign_to_agent(ticket, target.id, actor=actor)
        return await self._assign_to_group(ticket, target.id, actor=actor)

    async def _assign_to_agent(self, ticket: Ticket, agent_id: str, *, actor: str) -> AssignmentResult:
        async with self._locks.hold(ticket.id):
            async with self._directory.assignment_lock:
                agent = await self._directory.get_agent(agent_id)
                if agent.status != AgentStatus.ACTIVE:
                    raise AgentUnavailableError(f"Agent {agent_id} is {agent.status.value}")
                updated = self._take_ownership(ticket, agent.id, self._clock())
                saved = await commit_ticket(
                    self._repository,
                    ticket,
                    updated,
                    action="assigned",
                    actor=actor,
                    metadata={"agent_id": agent.id},
                )
        logger.info("Ticket #%s assigned to agent %s by %s", saved.number, agent.id, actor)
        return AssignmentResult(ticket=saved, agent=agent)

    async def _assign_to_group(self, ticket: Ticket, group_id: str, *, actor: str) -> AssignmentResult:
        await self._directory.get_group(group_id)

        async with self._locks.hold(ticket.id):
            async with self._directory.assignment_lock:
                scoped = replace(ticket, group_id=group_id)
                candidates = await self._directory.list_eligible(group_id)
                if candidates:
                    agent = select_agent(candidates)
                    return await self._assign_selected(ticket, scoped, agent, action="group_assigned", actor=actor)

                queued = replace(
                    scoped,
                    agent_id=None,
                    status=TicketStatus.OPEN,
                    previous_status=None,
                    updated_at=self._clock(),
                )
                saved = await commit_ticket(
                    self._repository,
                    ticket,
                    queued,
                    action="queued",
                    actor=actor,
                    metadata={"group_id": group_id},
                )
        logger.info("Ticket #%s queued for group %s, no active agent", saved.number, group_id)
        return AssignmentResult(ticket=saved, queued=True)

    async def _assign_selected(
        self, before: Ticket, ticket: Ticket, agent: Agent, *, action: str, actor: str
    ) -> AssignmentResult:
        # Caller holds the ticket lock and the pool assignment lock.
        updated = self._take_ownership(ticket, agent.id, self._clock())
        saved = await commit_ticket(
            self._repository,
            before,
            updated,
            action=action,
            actor=actor,
            metadata={"agent_id": agent.id, "group_id": ticket.group_id or ""},
        )
        recorded = await self._directory.record_assignment(agent.id)
        logger.info("Ticket #%s assigned to agent %s (%s)", saved.number, agent.id, action)
        return AssignmentResult(ticket=saved, agent=recorded)

    @staticmethod
    def _take_ownership(ticket: Ticket, agent_id: str, now: datetime) -> Ticket:
        return replace(
            ticket,
            agent_id=agent_id,
            status=TicketStateMachine.on_assigned(ticket.status),
            previous_status=None,
            assigned_at=ticket.assigned_at or now,
            updated_at=now,
        )

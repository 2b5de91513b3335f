from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Awaitable, Callable

from .errors import ConcurrentModificationError, NotFoundError
from .models import Agent, Group
from .repository import HelpdeskRepository
from .state import AgentStatus

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
DeactivationCallback = Callable[[str], Awaitable[object]]


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def fairness_key(agent: Agent) -> tuple[bool, datetime, str]:
    """Never-assigned agents first, then oldest assignment, then agent id."""

    return (
        agent.last_assigned_at is not None,
        agent.last_assigned_at or _EPOCH,
        agent.id,
    )


class AgentDirectory:
    """Agent roster: eligibility queries and fairness bookkeeping."""

    def __init__(self, repository: HelpdeskRepository, *, clock: Clock = utcnow) -> None:
        self._repository = repository
        self._clock = clock
        self._deactivation_callbacks: list[DeactivationCallback] = []
        # Held across selection, ticket commit and record_assignment, and by
        # agent status changes. Acquired after a ticket lock, never before.
        self.assignment_lock = asyncio.Lock()

    def on_deactivate(self, callback: DeactivationCallback) -> None:
        self._deactivation_callbacks.append(callback)

    async def list_agents(self) -> list[Agent]:
        return list(await self._repository.list_agents())

    async def list_groups(self) -> list[Group]:
        return list(await self._repository.list_groups())

    async def get_agent(self, agent_id: str) -> Agent:
        agent = await self._repository.load_agent(agent_id)
        if agent is None:
            raise NotFoundError(f"Agent {agent_id} not found")
        return agent

    async def get_group(self, group_id: str) -> Group:
        for group in await self._repository.list_groups():
            if group.id == group_id:
                return group
        raise NotFoundError(f"Group {group_id} not found")

    async def list_eligible(self, group_id: str | None = None) -> list[Agent]:
        """Return active non-admin agents of ``group_id`` (any group when None), fairest first."""

        agents = await self._repository.list_agents()
        eligible = [
            agent
            for agent in agents
            if agent.is_assignable and (group_id is None or group_id in agent.group_ids)
        ]
        return sorted(eligible, key=fairness_key)

    async def record_assignment(self, agent_id: str, *, attempts: int = 3) -> Agent:
        """Stamp the agent's fairness clock with the current time.

        The stamp is re-applied on a fresh snapshot when another writer edited
        the agent in between; the value written does not depend on the old one.
        """

        for attempt in range(1, attempts + 1):
            agent = await self.get_agent(agent_id)
            try:
                saved = await self._repository.save_agent(replace(agent, last_assigned_at=self._clock()))
            except ConcurrentModificationError:
                if attempt == attempts:
                    raise
                logger.debug("Agent %s changed while recording assignment, reloading", agent_id)
                continue
            logger.debug("Recorded assignment for agent %s at %s", agent_id, saved.last_assigned_at)
            return saved
        raise ConcurrentModificationError(f"Agent {agent_id} could not be updated")

    async def save_agent(self, agent: Agent) -> Agent:
        """Create or edit an agent record on behalf of an administrator."""

        known = {group.id for group in await self._repository.list_groups()}
        unknown = sorted(set(agent.group_ids) - known)
        if unknown:
            raise NotFoundError(f"Unknown group(s): {', '.join(unknown)}")
        return await self._repository.save_agent(agent)

    async def suspend(self, agent_id: str) -> Agent:
        return await self._set_status(agent_id, AgentStatus.SUSPENDED)

    async def activate(self, agent_id: str) -> Agent:
        return await self._set_status(agent_id, AgentStatus.ACTIVE)

    async def deactivate(self, agent_id: str) -> Agent:
        """Mark the agent INACTIVE and release every unresolved ticket it owns.

        The status change waits for in-flight assignments, so any ticket they
        hand to this agent is already committed when the release runs.
        """

        agent = await self._set_status(agent_id, AgentStatus.INACTIVE)
        for callback in self._deactivation_callbacks:
            await callback(agent_id)
        return agent

    async def _set_status(self, agent_id: str, status: AgentStatus) -> Agent:
        # Serialised with selection and commit of in-flight assignments.
        async with self.assignment_lock:
            agent = await self.get_agent(agent_id)
            if agent.status == status:
                return agent
            saved = await self._repository.save_agent(replace(agent, status=status))
        logger.info("Agent %s status changed %s -> %s", agent_id, agent.status.value, status.value)
        return saved

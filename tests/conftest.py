from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.tickets.memory import InMemoryHelpdeskRepository
from app.tickets.models import Agent, Group
from app.tickets.service import HelpdeskService
from app.tickets.state import AgentRole, AgentStatus

T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock advancing one second per reading."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        value = self.current
        self.current = value + timedelta(seconds=1)
        return value


def make_agent(
    agent_id: str,
    *,
    groups: tuple[str, ...] = ("support",),
    status: AgentStatus = AgentStatus.ACTIVE,
    role: AgentRole = AgentRole.AGENT,
    last_assigned_at: datetime | None = None,
) -> Agent:
    return Agent(
        id=agent_id,
        name=agent_id.title(),
        email=f"{agent_id}@helpdesk.test",
        role=role,
        status=status,
        group_ids=frozenset(groups),
        last_assigned_at=last_assigned_at,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def groups() -> list[Group]:
    return [
        Group(id="support", name="Support", description="First line"),
        Group(id="billing", name="Billing"),
        Group(id="empty", name="Nobody home"),
    ]


@pytest.fixture
def agents() -> list[Agent]:
    return [
        make_agent("agent-a", last_assigned_at=T0),
        make_agent("agent-b"),
        make_agent("agent-c"),
    ]


@pytest.fixture
def repository(agents, groups) -> InMemoryHelpdeskRepository:
    return InMemoryHelpdeskRepository(agents=agents, groups=groups)


@pytest.fixture
def service(repository, clock) -> HelpdeskService:
    return HelpdeskService(repository, clock=clock)

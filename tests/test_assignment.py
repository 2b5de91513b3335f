from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import T0, make_agent

from app.tickets.assignment import AssignmentTarget, fairness_key, select_agent
from app.tickets.errors import AgentUnavailableError, NoEligibleAgentError, NotFoundError
from app.tickets.memory import InMemoryHelpdeskRepository
from app.tickets.service import HelpdeskService
from app.tickets.state import AgentRole, AgentStatus, TicketStatus


def test_select_agent_orders_never_assigned_first_then_oldest_then_id():
    candidates = [
        make_agent("zeta", last_assigned_at=T0 + timedelta(hours=1)),
        make_agent("omega", last_assigned_at=T0),
        make_agent("beta"),
        make_agent("alpha"),
        make_agent("gamma", last_assigned_at=T0),
    ]

    ordered = sorted(candidates, key=fairness_key)

    assert [agent.id for agent in ordered] == ["alpha", "beta", "gamma", "omega", "zeta"]
    assert select_agent(candidates).id == "alpha"


def test_select_agent_requires_candidates():
    with pytest.raises(NoEligibleAgentError):
        select_agent([])


@pytest.mark.asyncio
async def test_round_robin_assigns_b_then_c_then_a(service):
    tickets = [
        await service.lifecycle.create(subject=f"Issue {n}", requester="r@example.com", group_id="support")
        for n in range(3)
    ]

    owners = []
    for ticket in tickets:
        result = await service.assignment.auto_assign(ticket)
        owners.append(result.agent.id)

    assert owners == ["agent-b", "agent-c", "agent-a"]


@pytest.mark.asyncio
async def test_auto_assign_sets_owner_and_fairness_clock(service, repository):
    ticket = await service.lifecycle.create(subject="Printer", requester="r@example.com", group_id="support")

    result = await service.assignment.auto_assign(ticket)

    assert result.ticket.status == TicketStatus.IN_PROGRESS
    assert result.ticket.agent_id == "agent-b"
    assert result.ticket.assigned_at == result.ticket.updated_at
    assert result.ticket.version == ticket.version + 1
    agent = await repository.load_agent("agent-b")
    assert agent.last_assigned_at is not None
    assert agent.last_assigned_at >= result.ticket.assigned_at
    # the caller's snapshot is never mutated
    assert ticket.agent_id is None
    assert ticket.status == TicketStatus.OPEN


@pytest.mark.asyncio
async def test_auto_assign_keeps_first_assigned_at(service):
    ticket = await service.lifecycle.create(subject="VPN", requester="r@example.com", group_id="support")
    first = await service.assignment.auto_assign(ticket)

    second = await service.assignment.auto_assign(first.ticket)

    assert second.ticket.assigned_at == first.ticket.assigned_at
    assert second.ticket.agent_id != first.ticket.agent_id


@pytest.mark.asyncio
async def test_auto_assign_without_candidates_leaves_ticket_unchanged(service, repository):
    ticket = await service.lifecycle.create(subject="Invoice", requester="r@example.com", group_id="empty")

    with pytest.raises(NoEligibleAgentError):
        await service.assignment.auto_assign(ticket)

    stored = await repository.load_ticket(ticket.id)
    assert stored == ticket


@pytest.mark.asyncio
async def test_ungrouped_ticket_can_go_to_any_active_agent(repository, clock):
    await repository.save_agent(make_agent("agent-x", groups=()))
    service = HelpdeskService(repository, clock=clock)
    ticket = await service.lifecycle.create(subject="Anything", requester="r@example.com")

    result = await service.assignment.auto_assign(ticket)

    assert result.agent.id == "agent-b"


@pytest.mark.asyncio
async def test_admins_suspended_and_inactive_agents_are_not_eligible(groups, clock):
    repository = InMemoryHelpdeskRepository(
        agents=[
            make_agent("admin", role=AgentRole.ADMIN),
            make_agent("away", status=AgentStatus.SUSPENDED),
            make_agent("gone", status=AgentStatus.INACTIVE),
            make_agent("worker", last_assigned_at=T0),
        ],
        groups=groups,
    )
    service = HelpdeskService(repository, clock=clock)

    eligible = await service.directory.list_eligible("support")

    assert [agent.id for agent in eligible] == ["worker"]


@pytest.mark.asyncio
async def test_manual_assign_to_agent(service):
    ticket = await service.lifecycle.create(subject="Laptop", requester="r@example.com")

    result = await service.assignment.manual_assign(ticket, AssignmentTarget.agent("agent-a"))

    assert result.ticket.agent_id == "agent-a"
    assert result.ticket.status == TicketStatus.IN_PROGRESS
    assert result.ticket.assigned_at is not None
    assert not result.queued


@pytest.mark.asyncio
async def test_manual_assign_rejects_inactive_agent(service, repository):
    await service.directory.suspend("agent-c")
    ticket = await service.lifecycle.create(subject="Laptop", requester="r@example.com")

    with pytest.raises(AgentUnavailableError):
        await service.assignment.manual_assign(ticket, AssignmentTarget.agent("agent-c"))

    assert await repository.load_ticket(ticket.id) == ticket


@pytest.mark.asyncio
async def test_manual_assign_to_unknown_targets(service):
    ticket = await service.lifecycle.create(subject="Laptop", requester="r@example.com")

    with pytest.raises(NotFoundError):
        await service.assignment.manual_assign(ticket, AssignmentTarget.agent("nobody"))
    with pytest.raises(NotFoundError):
        await service.assignment.manual_assign(ticket, AssignmentTarget.group("nowhere"))


@pytest.mark.asyncio
async def test_group_assignment_without_agents_is_queued(service):
    ticket = await service.lifecycle.create(subject="Refund", requester="r@example.com")
    assigned = await service.assignment.manual_assign(ticket, AssignmentTarget.agent("agent-a"))

    result = await service.assignment.manual_assign(assigned.ticket, AssignmentTarget.group("empty"))

    assert result.queued
    assert result.agent is None
    assert result.ticket.status == TicketStatus.OPEN
    assert result.ticket.group_id == "empty"
    assert result.ticket.agent_id is None
    assert await service.lifecycle.tickets_queued_for("empty") == [result.ticket]


@pytest.mark.asyncio
async def test_group_assignment_picks_fairest_member(service, repository):
    ticket = await service.lifecycle.create(subject="Refund", requester="r@example.com")

    result = await service.assignment.manual_assign(ticket, AssignmentTarget.group("support"))

    assert not result.queued
    assert result.ticket.group_id == "support"
    assert result.ticket.agent_id == "agent-b"
    assert (await repository.load_agent("agent-b")).last_assigned_at is not None


@pytest.mark.asyncio
async def test_concurrent_auto_assign_spreads_tickets(service):
    tickets = [
        await service.lifecycle.create(subject=f"Burst {n}", requester="r@example.com", group_id="support")
        for n in range(3)
    ]

    results = await asyncio.gather(*(service.assignment.auto_assign(ticket) for ticket in tickets))

    assert sorted(result.agent.id for result in results) == ["agent-a", "agent-b", "agent-c"]


class YieldingRepository(InMemoryHelpdeskRepository):
    """Lets other tasks run between agent reads and the ticket write."""

    async def list_agents(self):
        agents = await super().list_agents()
        await asyncio.sleep(0)
        return agents

    async def load_agent(self, agent_id):
        agent = await super().load_agent(agent_id)
        await asyncio.sleep(0)
        return agent

    async def save_ticket(self, ticket, *, messages=()):
        for _ in range(3):
            await asyncio.sleep(0)
        return await super().save_ticket(ticket, messages=messages)


@pytest.mark.asyncio
@pytest.mark.parametrize("deactivate_first", [False, True])
@pytest.mark.parametrize("target", [None, AssignmentTarget.agent("agent-x")])
async def test_deactivation_racing_assignment_leaves_no_inactive_owner(groups, clock, target, deactivate_first):
    repository = YieldingRepository(agents=[make_agent("agent-x")], groups=groups)
    service = HelpdeskService(repository, clock=clock)
    ticket = await service.create_ticket(
        subject="Race", requester="r@example.com", actor="system", group_id="support"
    )

    if target is None:
        assign = service.auto_assign(ticket.id, actor="system")
    else:
        assign = service.manual_assign(ticket.id, target, actor="system")
    deactivate = service.deactivate_agent("agent-x")
    calls = [deactivate, assign] if deactivate_first else [assign, deactivate]
    outcomes = await asyncio.gather(*calls, return_exceptions=True)

    unexpected = [
        outcome
        for outcome in outcomes
        if isinstance(outcome, Exception) and not isinstance(outcome, (NoEligibleAgentError, AgentUnavailableError))
    ]
    assert unexpected == []
    assert (await repository.load_agent("agent-x")).status == AgentStatus.INACTIVE
    stored = await repository.load_ticket(ticket.id)
    assert stored.agent_id is None
    assert stored.status == TicketStatus.OPEN

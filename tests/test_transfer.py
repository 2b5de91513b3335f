from __future__ import annotations

import pytest

from app.tickets.assignment import AssignmentTarget
from app.tickets.errors import AgentUnavailableError, NoPendingTransferError, NotFoundError
from app.tickets.state import TicketStatus


@pytest.fixture
def transfers(service):
    return service.transfers


async def _owned_by_a(service):
    ticket = await service.lifecycle.create(subject="Escalate", requester="r@example.com", group_id="support")
    return (await service.assignment.manual_assign(ticket, AssignmentTarget.agent("agent-a"))).ticket


@pytest.mark.asyncio
async def test_approve_without_request_fails_and_changes_nothing(service, repository, transfers):
    ticket = await _owned_by_a(service)

    with pytest.raises(NoPendingTransferError):
        await transfers.approve(ticket)

    assert await repository.load_ticket(ticket.id) == ticket


@pytest.mark.asyncio
async def test_request_records_proposal_without_moving_ownership(service, transfers):
    ticket = await _owned_by_a(service)

    requested = await transfers.request(ticket, "agent-b", actor="agent-a")

    assert requested.agent_id == "agent-a"
    assert requested.transfer_proposal.target_agent_id == "agent-b"
    assert requested.transfer_proposal.requested_at == requested.updated_at


@pytest.mark.asyncio
async def test_second_request_supersedes_first(service, transfers):
    ticket = await _owned_by_a(service)
    first = await transfers.request(ticket, "agent-b")

    second = await transfers.request(first, "agent-c")
    approved = await transfers.approve(second)

    assert approved.agent_id == "agent-c"
    assert approved.transfer_proposal is None


@pytest.mark.asyncio
async def test_approve_hands_over_and_resets_assigned_at(service, repository, transfers):
    ticket = await _owned_by_a(service)
    requested = await transfers.request(ticket, "agent-b")

    approved = await transfers.approve(requested, actor="admin")

    assert approved.agent_id == "agent-b"
    assert approved.status == TicketStatus.IN_PROGRESS
    assert approved.assigned_at > ticket.assigned_at
    assert approved.assigned_at == approved.updated_at
    audit = await repository.get_audit_log(ticket.id)
    assert audit[-1].action == "transfer_approved"
    assert audit[-1].metadata == {"from_agent_id": "agent-a", "to_agent_id": "agent-b"}


@pytest.mark.asyncio
async def test_approving_resolved_ticket_reopens_it_for_new_owner(service, transfers):
    resolved = await service.lifecycle.resolve(await _owned_by_a(service))
    requested = await transfers.request(resolved, "agent-c")

    approved = await transfers.approve(requested)

    assert approved.status == TicketStatus.IN_PROGRESS
    assert approved.previous_status is None


@pytest.mark.asyncio
async def test_approve_to_deactivated_target_keeps_proposal_pending(service, repository, transfers):
    ticket = await _owned_by_a(service)
    requested = await transfers.request(ticket, "agent-c")
    await service.directory.deactivate("agent-c")

    with pytest.raises(AgentUnavailableError):
        await transfers.approve(requested)

    stored = await repository.load_ticket(ticket.id)
    assert stored == requested
    assert stored.agent_id == "agent-a"
    assert stored.transfer_proposal.target_agent_id == "agent-c"


@pytest.mark.asyncio
async def test_request_to_unknown_agent(service, transfers):
    ticket = await _owned_by_a(service)

    with pytest.raises(NotFoundError):
        await transfers.request(ticket, "ghost")

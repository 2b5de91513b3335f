from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock

from app.dependencies import tickets as ticket_deps
from app.dependencies.auth import Role, StaffUser
from app.main import create_app
from app.tickets.errors import TransientRepositoryError


@pytest.fixture
def ticket_client(service):
    app = create_app()

    user_admin = StaffUser("admin", (Role.ADMIN, Role.AGENT, Role.VIEWER))
    user_agent = StaffUser("agent-a", (Role.AGENT, Role.VIEWER))
    user_viewer = StaffUser("viewer", (Role.VIEWER,))

    async def override_service():
        return service

    app.dependency_overrides[ticket_deps.get_helpdesk_service] = override_service
    app.dependency_overrides[ticket_deps.require_admin] = lambda: user_admin
    app.dependency_overrides[ticket_deps.require_agent] = lambda: user_agent
    app.dependency_overrides[ticket_deps.require_viewer] = lambda: user_viewer

    client = TestClient(app)
    try:
        yield client
    finally:
        app.dependency_overrides.clear()


def _create(client, **extra):
    payload = {"subject": "Cannot log in", "requester": "customer@example.com", "group_id": "support"}
    payload.update(extra)
    response = client.post("/tickets", json=payload)
    assert response.status_code == 201
    return response.json()


def test_create_ticket_endpoint_returns_created(ticket_client):
    body = _create(ticket_client, content="Password reset loops")

    assert body["status"] == "open"
    assert body["version"] == 1
    assert body["agent_id"] is None
    assert body["messages"][0]["type"] == "inbound"


def test_create_ticket_with_unknown_group_is_not_found(ticket_client):
    response = ticket_client.post(
        "/tickets", json={"subject": "x", "requester": "r@example.com", "group_id": "nowhere"}
    )

    assert response.status_code == 404


def test_get_unknown_ticket_returns_404(ticket_client):
    response = ticket_client.get(f"/tickets/{uuid4()}")

    assert response.status_code == 404


def test_auto_assign_then_reply(ticket_client):
    ticket = _create(ticket_client)

    assigned = ticket_client.post(f"/tickets/{ticket['id']}/assign/auto", json={"version": 1})
    assert assigned.status_code == 200
    assert assigned.json()["agent_id"] == "agent-b"
    assert assigned.json()["ticket"]["status"] == "in_progress"

    reply = ticket_client.post(
        f"/tickets/{ticket['id']}/messages",
        json={"content": "On it", "help_needed": True},
    )
    assert reply.status_code == 201
    assert reply.json()["help_needed"] is True
    assert reply.json()["messages"][-1]["author"] == "agent-a"


def test_stale_version_is_rejected_with_conflict(ticket_client):
    ticket = _create(ticket_client)
    ticket_client.post(f"/tickets/{ticket['id']}/resolve")

    response = ticket_client.post(f"/tickets/{ticket['id']}/reopen", json={"version": 1})

    assert response.status_code == 409


def test_assign_to_empty_group_is_queued(ticket_client):
    ticket = _create(ticket_client)

    response = ticket_client.post(f"/tickets/{ticket['id']}/assign", json={"kind": "group", "id": "empty"})

    assert response.status_code == 200
    assert response.json()["queued"] is True
    queue = ticket_client.get("/groups/empty/queue").json()
    assert [item["id"] for item in queue] == [ticket["id"]]


def test_auto_assign_without_agents_is_conflict(ticket_client):
    ticket = _create(ticket_client, group_id="billing")

    response = ticket_client.post(f"/tickets/{ticket['id']}/assign/auto")

    assert response.status_code == 409


def test_approve_without_transfer_is_conflict(ticket_client):
    ticket = _create(ticket_client)

    response = ticket_client.post(f"/tickets/{ticket['id']}/transfer/approve")

    assert response.status_code == 409


def test_transfer_flow(ticket_client):
    ticket = _create(ticket_client)
    ticket_client.post(f"/tickets/{ticket['id']}/assign", json={"kind": "agent", "id": "agent-a"})

    requested = ticket_client.post(f"/tickets/{ticket['id']}/transfer", json={"target_agent_id": "agent-c"})
    assert requested.json()["transfer_proposal"]["target_agent_id"] == "agent-c"

    approved = ticket_client.post(f"/tickets/{ticket['id']}/transfer/approve")
    assert approved.status_code == 200
    assert approved.json()["agent_id"] == "agent-c"
    assert approved.json()["transfer_proposal"] is None

    audit = ticket_client.get(f"/tickets/{ticket['id']}/audit").json()
    assert [entry["action"] for entry in audit][-2:] == ["transfer_requested", "transfer_approved"]


def test_update_requires_fields(ticket_client):
    ticket = _create(ticket_client)

    response = ticket_client.patch(f"/tickets/{ticket['id']}", json={})

    assert response.status_code == 400


def test_deactivate_agent_releases_tickets(ticket_client):
    ticket = _create(ticket_client)
    ticket_client.post(f"/tickets/{ticket['id']}/assign", json={"kind": "agent", "id": "agent-a"})

    response = ticket_client.post("/agents/agent-a/deactivate")

    assert response.status_code == 200
    assert response.json()["status"] == "inactive"
    released = ticket_client.get(f"/tickets/{ticket['id']}").json()
    assert released["status"] == "open"
    assert released["agent_id"] is None
    assert ticket_client.get("/agents/agent-a/tickets").json() == []


def test_upsert_agent_with_unknown_group_is_not_found(ticket_client):
    response = ticket_client.put(
        "/agents/agent-z", json={"name": "Zed", "email": "zed@example.com", "group_ids": ["nowhere"]}
    )

    assert response.status_code == 404


def test_upsert_agent_creates_record(ticket_client):
    response = ticket_client.put(
        "/agents/agent-z", json={"name": "Zed", "email": "zed@example.com", "group_ids": ["billing"]}
    )

    assert response.status_code == 200
    assert response.json()["group_ids"] == ["billing"]
    assert "agent-z" in [agent["id"] for agent in ticket_client.get("/agents").json()]


def test_transient_storage_failure_maps_to_503():
    app = create_app()
    service = AsyncMock()
    service.list_groups = AsyncMock(side_effect=TransientRepositoryError("down"))

    async def override_service():
        return service

    app.dependency_overrides[ticket_deps.get_helpdesk_service] = override_service
    app.dependency_overrides[ticket_deps.require_viewer] = lambda: StaffUser("viewer", (Role.VIEWER,))
    try:
        response = TestClient(app).get("/groups")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 503

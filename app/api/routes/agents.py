from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from app.api.routes.schemas import (
    AgentResponse,
    AgentUpsertRequest,
    GroupResponse,
    TicketResponse,
    agent_response,
    http_error,
    ticket_response,
)
from app.dependencies.tickets import AdminUser, ViewerUser, get_helpdesk_service
from app.tickets.errors import HelpdeskError, TransientRepositoryError
from app.tickets.models import Agent
from app.tickets.service import HelpdeskService

router = APIRouter(prefix="/agents", tags=["agents"])
groups_router = APIRouter(prefix="/groups", tags=["groups"])

HelpdeskServiceDep = Annotated[HelpdeskService, Depends(get_helpdesk_service)]


@router.get("", response_model=list[AgentResponse])
async def list_agents(service: HelpdeskServiceDep, _: ViewerUser) -> list[AgentResponse]:
    try:
        agents = await service.list_agents()
    except (HelpdeskError, TransientRepositoryError) as exc:
        raise http_error(exc) from exc
    return [agent_response(agent) for agent in agents]


@router.put("/{agent_id}", response_model=AgentResponse)
async def upsert_agent(
    agent_id: str,
    payload: AgentUpsertRequest,
    service: HelpdeskServiceDep,
    _: AdminUser,
) -> AgentResponse:
    agent = Agent(
        id=agent_id,
        name=payload.name,
        email=payload.email,
        role=payload.role,
        group_ids=frozenset(payload.group_ids),
        avatar_url=payload.avatar_url,
        version=payload.version,
    )
    try:
        saved = await service.save_agent(agent)
    except (HelpdeskError, TransientRepositoryError) as exc:
        raise http_error(exc) from exc
    return agent_response(saved)


@router.post("/{agent_id}/deactivate", response_model=AgentResponse)
async def deactivate_agent(agent_id: str, service: HelpdeskServiceDep, _: AdminUser) -> AgentResponse:
    try:
        agent = await service.deactivate_agent(agent_id)
    except (HelpdeskError, TransientRepositoryError) as exc:
        raise http_error(exc) from exc
    return agent_response(agent)


@router.post("/{agent_id}/suspend", response_model=AgentResponse)
async def suspend_agent(agent_id: str, service: HelpdeskServiceDep, _: AdminUser) -> AgentResponse:
    try:
        agent = await service.suspend_agent(agent_id)
    except (HelpdeskError, TransientRepositoryError) as exc:
        raise http_error(exc) from exc
    return agent_response(agent)


@router.post("/{agent_id}/activate", response_model=AgentResponse)
async def activate_agent(agent_id: str, service: HelpdeskServiceDep, _: AdminUser) -> AgentResponse:
    try:
        agent = await service.activate_agent(agent_id)
    except (HelpdeskError, TransientRepositoryError) as exc:
        raise http_error(exc) from exc
    return agent_response(agent)


@router.get("/{agent_id}/tickets", response_model=list[TicketResponse])
async def agent_tickets(agent_id: str, service: HelpdeskServiceDep, _: ViewerUser) -> list[TicketResponse]:
    try:
        tickets = await service.tickets_owned_by(agent_id)
    except (HelpdeskError, TransientRepositoryError) as exc:
        raise http_error(exc) from exc
    return [ticket_response(ticket) for ticket in tickets]


@groups_router.get("", response_model=list[GroupResponse])
async def list_groups(service: HelpdeskServiceDep, _: ViewerUser) -> list[GroupResponse]:
    try:
        groups = await service.list_groups()
    except (HelpdeskError, TransientRepositoryError) as exc:
        raise http_error(exc) from exc
    return [GroupResponse.model_validate(group) for group in groups]


@groups_router.get("/{group_id}/queue", response_model=list[TicketResponse])
async def group_queue(group_id: str, service: HelpdeskServiceDep, _: ViewerUser) -> list[TicketResponse]:
    try:
        tickets = await service.tickets_queued_for(group_id)
    except (HelpdeskError, TransientRepositoryError) as exc:
        raise http_error(exc) from exc
    return [ticket_response(ticket) for ticket in tickets]

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from app.api.routes.schemas import (
    AssignmentResponse,
    AssignRequest,
    MessageCreateRequest,
    TicketAuditResponse,
    TicketCreateRequest,
    TicketResponse,
    TicketUpdateRequest,
    TransferRequest,
    VersionedRequest,
    assignment_response,
    http_error,
    ticket_response,
)
from app.dependencies.tickets import AgentUser, ViewerUser, get_helpdesk_service
from app.tickets.assignment import AssignmentTarget
from app.tickets.errors import HelpdeskError, TransientRepositoryError
from app.tickets.service import HelpdeskService
from app.tickets.state import MessageType, TicketStatus

router = APIRouter(prefix="/tickets", tags=["tickets"])

HelpdeskServiceDep = Annotated[HelpdeskService, Depends(get_helpdesk_service)]


def _version(payload: VersionedRequest | None) -> int | None:
    return payload.version if payload is not None else None


@router.post("", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    payload: TicketCreateRequest,
    service: HelpdeskServiceDep,
    user: AgentUser,
) -> TicketResponse:
    try:
        ticket = await service.create_ticket(
            subject=payload.subject,
            requester=payload.requester,
            priority=payload.priority,
            category=payload.category,
            group_id=payload.group_id,
            content=payload.content,
            auto_assign=payload.auto_assign,
            actor=user.username,
        )
    except (HelpdeskError, TransientRepositoryError) as exc:
        raise http_error(exc) from exc
    return ticket_response(ticket)


@router.get("", response_model=list[TicketResponse])
async def list_tickets(
    service: HelpdeskServiceDep,
    _: ViewerUser,
    status_filter: TicketStatus | None = Query(default=None, alias="status"),
) -> list[TicketResponse]:
    try:
        tickets = await service.list_tickets(status=status_filter)
    except (HelpdeskError, TransientRepositoryError) as exc:
        raise http_error(exc) from exc
    return [ticket_response(ticket) for ticket in tickets]


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(ticket_id: UUID, service: HelpdeskServiceDep, _: ViewerUser) -> TicketResponse:
    try:
        ticket = await service.get_ticket(ticket_id)
    except (HelpdeskError, TransientRepositoryError) as exc:
        raise http_error(exc) from exc
    return ticket_response(ticket)


@router.patch("/{ticket_id}", response_model=TicketResponse)
async def update_ticket(
    ticket_id: UUID,
    payload: TicketUpdateRequest,
    service: HelpdeskServiceDep,
    user: AgentUser,
) -> TicketResponse:
    payload.ensure_payload()
    try:
        ticket = await service.update_ticket(
            ticket_id,
            priority=payload.priority,
            category=payload.category,
            actor=user.username,
            expected_version=payload.version,
        )
    except (HelpdeskError, TransientRepositoryError) as exc:
        raise http_error(exc) from exc
    return ticket_response(ticket)


@router.delete("/{ticket_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_ticket(ticket_id: UUID, service: HelpdeskServiceDep, _: AgentUser) -> None:
    try:
        await service.delete_ticket(ticket_id)
    except (HelpdeskError, TransientRepositoryError) as exc:
        raise http_error(exc) from exc


@router.post("/{ticket_id}/assign/auto", response_model=AssignmentResponse)
async def auto_assign_ticket(
    ticket_id: UUID,
    service: HelpdeskServiceDep,
    user: AgentUser,
    payload: VersionedRequest | None = None,
) -> AssignmentResponse:
    try:
        result = await service.auto_assign(ticket_id, actor=user.username, expected_version=_version(payload))
    except (HelpdeskError, TransientRepositoryError) as exc:
        raise http_error(exc) from exc
    return assignment_response(result)


@router.post("/{ticket_id}/assign", response_model=AssignmentResponse)
async def assign_ticket(
    ticket_id: UUID,
    payload: AssignRequest,
    service: HelpdeskServiceDep,
    user: AgentUser,
) -> AssignmentResponse:
    try:
        result = await service.manual_assign(
            ticket_id,
            AssignmentTarget(payload.kind, payload.id),
            actor=user.username,
            expected_version=payload.version,
        )
    except (HelpdeskError, TransientRepositoryError) as exc:
        raise http_error(exc) from exc
    return assignment_response(result)


@router.post("/{ticket_id}/messages", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
async def add_message(
    ticket_id: UUID,
    payload: MessageCreateRequest,
    service: HelpdeskServiceDep,
    user: AgentUser,
) -> TicketResponse:
    # Inbound traffic is relayed on the requester's behalf and carries no staff author.
    author = None if payload.type == MessageType.INBOUND else user.username
    try:
        ticket = await service.add_message(
            ticket_id,
            type=payload.type,
            content=payload.content,
            author=author,
            help_needed=payload.help_needed,
            has_attachment=payload.has_attachment,
            expected_version=payload.version,
        )
    except (HelpdeskError, TransientRepositoryError) as exc:
        raise http_error(exc) from exc
    return ticket_response(ticket)


@router.post("/{ticket_id}/resolve", response_model=TicketResponse)
async def resolve_ticket(
    ticket_id: UUID,
    service: HelpdeskServiceDep,
    user: AgentUser,
    payload: VersionedRequest | None = None,
) -> TicketResponse:
    try:
        ticket = await service.resolve(ticket_id, actor=user.username, expected_version=_version(payload))
    except (HelpdeskError, TransientRepositoryError) as exc:
        raise http_error(exc) from exc
    return ticket_response(ticket)


@router.post("/{ticket_id}/reopen", response_model=TicketResponse)
async def reopen_ticket(
    ticket_id: UUID,
    service: HelpdeskServiceDep,
    user: AgentUser,
    payload: VersionedRequest | None = None,
) -> TicketResponse:
    try:
        ticket = await service.reopen(ticket_id, actor=user.username, expected_version=_version(payload))
    except (HelpdeskError, TransientRepositoryError) as exc:
        raise http_error(exc) from exc
    return ticket_response(ticket)


@router.post("/{ticket_id}/transfer", response_model=TicketResponse)
async def request_transfer(
    ticket_id: UUID,
    payload: TransferRequest,
    service: HelpdeskServiceDep,
    user: AgentUser,
) -> TicketResponse:
    try:
        ticket = await service.request_transfer(
            ticket_id,
            payload.target_agent_id,
            actor=user.username,
            expected_version=payload.version,
        )
    except (HelpdeskError, TransientRepositoryError) as exc:
        raise http_error(exc) from exc
    return ticket_response(ticket)


@router.post("/{ticket_id}/transfer/approve", response_model=TicketResponse)
async def approve_transfer(
    ticket_id: UUID,
    service: HelpdeskServiceDep,
    user: AgentUser,
    payload: VersionedRequest | None = None,
) -> TicketResponse:
    try:
        ticket = await service.approve_transfer(
            ticket_id, actor=user.username, expected_version=_version(payload)
        )
    except (HelpdeskError, TransientRepositoryError) as exc:
        raise http_error(exc) from exc
    return ticket_response(ticket)


@router.get("/{ticket_id}/audit", response_model=list[TicketAuditResponse])
async def get_ticket_audit(
    ticket_id: UUID, service: HelpdeskServiceDep, _: ViewerUser
) -> list[TicketAuditResponse]:
    try:
        entries = await service.get_audit_log(ticket_id)
    except (HelpdeskError, TransientRepositoryError) as exc:
        raise http_error(exc) from exc
    return [TicketAuditResponse.model_validate(entry) for entry in entries]

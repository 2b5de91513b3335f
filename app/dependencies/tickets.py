from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from app.dependencies.auth import Role, StaffUser, role_required
from app.tickets.service import HelpdeskService

require_agent = role_required(Role.AGENT)
require_viewer = role_required(Role.VIEWER)
require_admin = role_required(Role.ADMIN)

AgentUser = Annotated[StaffUser, Depends(require_agent)]
ViewerUser = Annotated[StaffUser, Depends(require_viewer)]
AdminUser = Annotated[StaffUser, Depends(require_admin)]


async def get_helpdesk_service(request: Request) -> HelpdeskService:
    service = getattr(request.app.state, "helpdesk_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Helpdesk service is not configured")
    return service

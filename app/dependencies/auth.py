from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Annotated

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import get_settings


class Role(str, Enum):
    """Staff roles recognised by the HTTP layer."""

    ADMIN = "admin"
    AGENT = "agent"
    VIEWER = "viewer"


@dataclass(frozen=True)
class StaffUser:
    """Authenticated staff member acting on the ticket pool."""

    username: str
    roles: tuple[Role, ...]

    def has_role(self, role: Role) -> bool:
        return role in self.roles


ANONYMOUS = StaffUser(username="anonymous", roles=(Role.VIEWER,))

bearer_scheme = HTTPBearer(auto_error=False)


def parse_token_table(raw: dict[str, str]) -> dict[str, StaffUser]:
    """Turn ``{token: "username:role,role"}`` settings into staff users."""

    table: dict[str, StaffUser] = {}
    for token, entry in raw.items():
        username, _, role_list = entry.partition(":")
        roles = tuple(Role(value.strip()) for value in role_list.split(",") if value.strip())
        table[token] = StaffUser(username=username.strip(), roles=roles or (Role.VIEWER,))
    return table


def resolve_user_from_token(token: str | None) -> StaffUser:
    if token is None:
        return ANONYMOUS
    users = parse_token_table(get_settings().api_tokens)
    if token not in users:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")
    return users[token]


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)]
) -> StaffUser:
    """Static bearer-token lookup; identity proper is handled upstream."""

    return resolve_user_from_token(credentials.credentials if credentials is not None else None)


def role_required(role: Role) -> Callable[[StaffUser], StaffUser]:
    """Dependency factory ensuring the current user has the requested role."""

    async def dependency(user: Annotated[StaffUser, Depends(get_current_user)]) -> StaffUser:
        if not user.has_role(role):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user

    return dependency


CurrentUser = Annotated[StaffUser, Depends(get_current_user)]

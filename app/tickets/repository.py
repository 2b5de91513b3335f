from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence, TypeVar
from uuid import UUID, uuid4

from .errors import TransientRepositoryError
from .models import Agent, Group, Message, Ticket, TicketAuditEntry
from .state import TicketStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


class HelpdeskRepository(Protocol):
    """Storage contract consumed by the assignment and lifecycle engine.

    ``save_ticket`` and ``save_agent`` are compare-and-swap writes: they raise
    ``ConcurrentModificationError`` when the stored version differs from the
    snapshot's and return the snapshot with its version bumped otherwise.
    ``save_ticket`` persists ticket fields and appends ``messages`` in the
    same atomic write, so a failed or rejected save stores neither. Messages
    that do not change the ticket go through ``append_message``. Both are
    idempotent by message id.
    """

    async def load_ticket(self, ticket_id: UUID) -> Ticket | None:
        ...

    async def save_ticket(self, ticket: Ticket, *, messages: Sequence[Message] = ()) -> Ticket:
        ...

    async def list_tickets(
        self,
        *,
        status: TicketStatus | None = None,
        agent_id: str | None = None,
        group_id: str | None = None,
    ) -> Sequence[Ticket]:
        ...

    async def next_ticket_number(self) -> int:
        ...

    async def delete_ticket(self, ticket_id: UUID) -> bool:
        ...

    async def append_message(self, ticket_id: UUID, message: Message) -> None:
        ...

    async def load_agent(self, agent_id: str) -> Agent | None:
        ...

    async def list_agents(self) -> Sequence[Agent]:
        ...

    async def save_agent(self, agent: Agent) -> Agent:
        ...

    async def list_groups(self) -> Sequence[Group]:
        ...

    async def save_group(self, group: Group) -> Group:
        ...

    async def add_audit_entry(self, entry: TicketAuditEntry) -> None:
        ...

    async def get_audit_log(self, ticket_id: UUID) -> Sequence[TicketAuditEntry]:
        ...


class RetryingRepository:
    """Wrap a repository and retry transient failures with exponential backoff.

    Only ``TransientRepositoryError`` is retried. Domain errors such as
    ``ConcurrentModificationError`` pass straight through, so a write that
    actually landed before the connection dropped surfaces as a conflict
    instead of silently overwriting.
    """

    def __init__(
        self,
        inner: HelpdeskRepository,
        *,
        attempts: int = 3,
        base_delay: float = 0.05,
        max_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._inner = inner
        self._attempts = max(1, attempts)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._sleep = sleep

    @property
    def inner(self) -> HelpdeskRepository:
        return self._inner

    async def _call(self, operation: str, factory: Callable[[], Awaitable[T]]) -> T:
        attempt = 1
        while True:
            try:
                return await factory()
            except TransientRepositoryError as exc:
                if attempt >= self._attempts:
                    logger.error("Repository %s failed after %d attempts: %s", operation, attempt, exc)
                    raise
                delay = min(self._max_delay, self._base_delay * (2 ** (attempt - 1)))
                logger.warning(
                    "Repository %s failed (attempt %d/%d), retrying in %.3fs: %s",
                    operation,
                    attempt,
                    self._attempts,
                    delay,
                    exc,
                )
                await self._sleep(delay)
                attempt += 1

    async def load_ticket(self, ticket_id: UUID) -> Ticket | None:
        return await self._call("load_ticket", lambda: self._inner.load_ticket(ticket_id))

    async def save_ticket(self, ticket: Ticket, *, messages: Sequence[Message] = ()) -> Ticket:
        return await self._call("save_ticket", lambda: self._inner.save_ticket(ticket, messages=messages))

    async def list_tickets(
        self,
        *,
        status: TicketStatus | None = None,
        agent_id: str | None = None,
        group_id: str | None = None,
    ) -> Sequence[Ticket]:
        return await self._call(
            "list_tickets",
            lambda: self._inner.list_tickets(status=status, agent_id=agent_id, group_id=group_id),
        )

    async def next_ticket_number(self) -> int:
        # A lost response only burns a number; numbers are allowed to skip.
        return await self._call("next_ticket_number", self._inner.next_ticket_number)

    async def delete_ticket(self, ticket_id: UUID) -> bool:
        return await self._call("delete_ticket", lambda: self._inner.delete_ticket(ticket_id))

    async def append_message(self, ticket_id: UUID, message: Message) -> None:
        await self._call("append_message", lambda: self._inner.append_message(ticket_id, message))

    async def load_agent(self, agent_id: str) -> Agent | None:
        return await self._call("load_agent", lambda: self._inner.load_agent(agent_id))

    async def list_agents(self) -> Sequence[Agent]:
        return await self._call("list_agents", self._inner.list_agents)

    async def save_agent(self, agent: Agent) -> Agent:
        return await self._call("save_agent", lambda: self._inner.save_agent(agent))

    async def list_groups(self) -> Sequence[Group]:
        return await self._call("list_groups", self._inner.list_groups)

    async def save_group(self, group: Group) -> Group:
        return await self._call("save_group", lambda: self._inner.save_group(group))

    async def add_audit_entry(self, entry: TicketAuditEntry) -> None:
        await self._call("add_audit_entry", lambda: self._inner.add_audit_entry(entry))

    async def get_audit_log(self, ticket_id: UUID) -> Sequence[TicketAuditEntry]:
        return await self._call("get_audit_log", lambda: self._inner.get_audit_log(ticket_id))


async def commit_ticket(
    repository: HelpdeskRepository,
    before: Ticket,
    after: Ticket,
    *,
    action: str,
    actor: str,
    metadata: Mapping[str, Any] | None = None,
    messages: Sequence[Message] = (),
) -> Ticket:
    """Persist ``after`` against ``before``'s version and append an audit entry.

    ``messages`` are stored atomically with the ticket fields.
    """

    saved = await repository.save_ticket(after, messages=messages)
    await repository.add_audit_entry(
        TicketAuditEntry(
            id=uuid4(),
            ticket_id=saved.id,
            action=action,
            actor=actor,
            from_status=before.status if before.version else None,
            to_status=saved.status,
            metadata=dict(metadata or {}),
            created_at=saved.updated_at,
        )
    )
    return saved

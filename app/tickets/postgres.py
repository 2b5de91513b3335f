from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Mapping, Sequence
from uuid import UUID

import asyncpg

from .errors import ConcurrentModificationError, NotFoundError, TransientRepositoryError
from .models import Agent, Group, Message, Ticket, TicketAuditEntry, TransferProposal
from .state import AgentRole, AgentStatus, MessageType, TicketPriority, TicketStatus, parse_enum

_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncio.TimeoutError,
    OSError,
)

_TICKET_COLUMNS = """
id, number, subject, requester, status, previous_status, priority, category,
created_at, updated_at, assigned_at, agent_id, group_id, help_needed,
transfer_target_agent_id, transfer_requested_at, version
"""


class PostgresHelpdeskRepository:
    """asyncpg-backed storage for tickets, agents, groups and audit logs."""

    _CREATE_SEQUENCE_SQL = """
    CREATE SEQUENCE IF NOT EXISTS ticket_numbers START 1
    """

    _CREATE_GROUPS_SQL = """
    CREATE TABLE IF NOT EXISTS agent_groups (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT ''
    )
    """

    _CREATE_AGENTS_SQL = """
    CREATE TABLE IF NOT EXISTS agents (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL,
        role TEXT NOT NULL,
        status TEXT NOT NULL,
        group_ids TEXT[] NOT NULL DEFAULT '{}',
        last_assigned_at TIMESTAMPTZ NULL,
        avatar_url TEXT NULL,
        version INTEGER NOT NULL
    )
    """

    _CREATE_TICKETS_SQL = """
    CREATE TABLE IF NOT EXISTS tickets (
        id UUID PRIMARY KEY,
        number BIGINT NOT NULL UNIQUE,
        subject TEXT NOT NULL,
        requester TEXT NOT NULL,
        status TEXT NOT NULL,
        previous_status TEXT NULL,
        priority TEXT NOT NULL,
        category TEXT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        assigned_at TIMESTAMPTZ NULL,
        agent_id TEXT NULL,
        group_id TEXT NULL,
        help_needed BOOLEAN NOT NULL DEFAULT FALSE,
        transfer_target_agent_id TEXT NULL,
        transfer_requested_at TIMESTAMPTZ NULL,
        version INTEGER NOT NULL
    )
    """

    _CREATE_MESSAGES_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_messages (
        seq BIGSERIAL PRIMARY KEY,
        id UUID NOT NULL UNIQUE,
        ticket_id UUID NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        author TEXT NULL,
        type TEXT NOT NULL,
        content TEXT NOT NULL,
        has_attachment BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL
    )
    """

    _CREATE_AUDIT_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_audit_logs (
        id UUID PRIMARY KEY,
        ticket_id UUID NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        action TEXT NOT NULL,
        actor TEXT NOT NULL,
        from_status TEXT NULL,
        to_status TEXT NULL,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL
    )
    """

    _INSERT_TICKET_SQL = f"""
    INSERT INTO tickets ({_TICKET_COLUMNS})
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, 1)
    ON CONFLICT (id) DO NOTHING
    RETURNING version
    """

    _UPDATE_TICKET_SQL = """
    UPDATE tickets
    SET subject = $3,
        requester = $4,
        status = $5,
        previous_status = $6,
        priority = $7,
        category = $8,
        updated_at = $9,
        assigned_at = $10,
        agent_id = $11,
        group_id = $12,
        help_needed = $13,
        transfer_target_agent_id = $14,
        transfer_requested_at = $15,
        version = version + 1
    WHERE id = $1 AND version = $2
    RETURNING version
    """

    _SELECT_TICKET_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE id = $1
    """

    _SELECT_MESSAGES_SQL = """
    SELECT id, ticket_id, author, type, content, has_attachment, created_at
    FROM ticket_messages
    WHERE ticket_id = ANY($1::uuid[])
    ORDER BY seq ASC
    """

    _INSERT_MESSAGE_SQL = """
    INSERT INTO ticket_messages (id, ticket_id, author, type, content, has_attachment, created_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7)
    ON CONFLICT (id) DO NOTHING
    """

    _NEXT_NUMBER_SQL = """
    SELECT nextval('ticket_numbers') AS number
    """

    _DELETE_TICKET_SQL = """
    DELETE FROM tickets WHERE id = $1 RETURNING id
    """

    _SELECT_AGENT_SQL = """
    SELECT id, name, email, role, status, group_ids, last_assigned_at, avatar_url, version
    FROM agents
    WHERE id = $1
    """

    _SELECT_AGENTS_SQL = """
    SELECT id, name, email, role, status, group_ids, last_assigned_at, avatar_url, version
    FROM agents
    ORDER BY id ASC
    """

    _INSERT_AGENT_SQL = """
    INSERT INTO agents (id, name, email, role, status, group_ids, last_assigned_at, avatar_url, version)
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, 1)
    ON CONFLICT (id) DO NOTHING
    RETURNING version
    """

    _UPDATE_AGENT_SQL = """
    UPDATE agents
    SET name = $3,
        email = $4,
        role = $5,
        status = $6,
        group_ids = $7,
        last_assigned_at = $8,
        avatar_url = $9,
        version = version + 1
    WHERE id = $1 AND version = $2
    RETURNING version
    """

    _SELECT_GROUPS_SQL = """
    SELECT id, name, description FROM agent_groups ORDER BY id ASC
    """

    _UPSERT_GROUP_SQL = """
    INSERT INTO agent_groups (id, name, description)
    VALUES ($1, $2, $3)
    ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name, description = EXCLUDED.description
    """

    _INSERT_AUDIT_SQL = """
    INSERT INTO ticket_audit_logs (id, ticket_id, action, actor, from_status, to_status, metadata, created_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8)
    ON CONFLICT (id) DO NOTHING
    """

    _SELECT_AUDIT_SQL = """
    SELECT id, ticket_id, action, actor, from_status, to_status, metadata, created_at
    FROM ticket_audit_logs
    WHERE ticket_id = $1
    ORDER BY created_at ASC
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        try:
            async with self._pool.acquire() as connection:
                yield connection
        except _TRANSIENT_ERRORS as exc:
            raise TransientRepositoryError(f"Postgres unavailable: {exc}") from exc

    async def ensure_schema(self) -> None:
        async with self._connection() as connection:
            await connection.execute(self._CREATE_SEQUENCE_SQL)
            await connection.execute(self._CREATE_GROUPS_SQL)
            await connection.execute(self._CREATE_AGENTS_SQL)
            await connection.execute(self._CREATE_TICKETS_SQL)
            await connection.execute(self._CREATE_MESSAGES_SQL)
            await connection.execute(self._CREATE_AUDIT_SQL)

    async def load_ticket(self, ticket_id: UUID) -> Ticket | None:
        async with self._connection() as connection:
            row = await connection.fetchrow(self._SELECT_TICKET_SQL, ticket_id)
            if row is None:
                return None
            message_rows = await connection.fetch(self._SELECT_MESSAGES_SQL, [ticket_id])
        return self._row_to_ticket(row, [self._row_to_message(item) for item in message_rows])

    async def save_ticket(self, ticket: Ticket, *, messages: Sequence[Message] = ()) -> Ticket:
        proposal = ticket.transfer_proposal
        async with self._connection() as connection:
            async with connection.transaction():
                if ticket.version == 0:
                    row = await connection.fetchrow(
                        self._INSERT_TICKET_SQL,
                        ticket.id,
                        ticket.number,
                        ticket.subject,
                        ticket.requester,
                        ticket.status.value,
                        _enum_value(ticket.previous_status),
                        ticket.priority.value,
                        ticket.category,
                        ticket.created_at,
                        ticket.updated_at,
                        ticket.assigned_at,
                        ticket.agent_id,
                        ticket.group_id,
                        ticket.help_needed,
                        proposal.target_agent_id if proposal else None,
                        proposal.requested_at if proposal else None,
                    )
                else:
                    row = await connection.fetchrow(
                        self._UPDATE_TICKET_SQL,
                        ticket.id,
                        ticket.version,
                        ticket.subject,
                        ticket.requester,
                        ticket.status.value,
                        _enum_value(ticket.previous_status),
                        ticket.priority.value,
                        ticket.category,
                        ticket.updated_at,
                        ticket.assigned_at,
                        ticket.agent_id,
                        ticket.group_id,
                        ticket.help_needed,
                        proposal.target_agent_id if proposal else None,
                        proposal.requested_at if proposal else None,
                    )
                if row is None:
                    raise ConcurrentModificationError(f"Ticket {ticket.id} changed since version {ticket.version}")
                for message in messages:
                    await self._insert_message(connection, ticket.id, message)
        return _with_version(ticket, int(row["version"]))

    async def list_tickets(
        self,
        *,
        status: TicketStatus | None = None,
        agent_id: str | None = None,
        group_id: str | None = None,
    ) -> Sequence[Ticket]:
        conditions: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("status", status.value if status is not None else None),
            ("agent_id", agent_id),
            ("group_id", group_id),
        ):
            if value is None:
                continue
            params.append(value)
            conditions.append(f"{column} = ${len(params)}")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        query = f"SELECT {_TICKET_COLUMNS} FROM tickets {where} ORDER BY created_at ASC, number ASC"

        async with self._connection() as connection:
            rows = await connection.fetch(query, *params)
            if not rows:
                return []
            ids = [_to_uuid(row["id"]) for row in rows]
            message_rows = await connection.fetch(self._SELECT_MESSAGES_SQL, ids)

        messages: dict[UUID, list[Message]] = {ticket_id: [] for ticket_id in ids}
        for item in message_rows:
            messages[_to_uuid(item["ticket_id"])].append(self._row_to_message(item))
        return [self._row_to_ticket(row, messages[_to_uuid(row["id"])]) for row in rows]

    async def next_ticket_number(self) -> int:
        async with self._connection() as connection:
            row = await connection.fetchrow(self._NEXT_NUMBER_SQL)
        if row is None:
            raise RuntimeError("Failed to allocate ticket number")
        return int(row["number"])

    async def delete_ticket(self, ticket_id: UUID) -> bool:
        async with self._connection() as connection:
            row = await connection.fetchrow(self._DELETE_TICKET_SQL, ticket_id)
        return row is not None

    async def append_message(self, ticket_id: UUID, message: Message) -> None:
        try:
            async with self._connection() as connection:
                await self._insert_message(connection, ticket_id, message)
        except asyncpg.exceptions.ForeignKeyViolationError as exc:
            raise NotFoundError(f"Ticket {ticket_id} not found") from exc

    async def _insert_message(self, connection: Any, ticket_id: UUID, message: Message) -> None:
        await connection.execute(
            self._INSERT_MESSAGE_SQL,
            message.id,
            ticket_id,
            message.author,
            message.type.value,
            message.content,
            message.has_attachment,
            message.created_at,
        )

    async def load_agent(self, agent_id: str) -> Agent | None:
        async with self._connection() as connection:
            row = await connection.fetchrow(self._SELECT_AGENT_SQL, agent_id)
        if row is None:
            return None
        return self._row_to_agent(row)

    async def list_agents(self) -> Sequence[Agent]:
        async with self._connection() as connection:
            rows = await connection.fetch(self._SELECT_AGENTS_SQL)
        return [self._row_to_agent(row) for row in rows]

    async def save_agent(self, agent: Agent) -> Agent:
        async with self._connection() as connection:
            if agent.version == 0:
                row = await connection.fetchrow(
                    self._INSERT_AGENT_SQL,
                    agent.id,
                    agent.name,
                    agent.email,
                    agent.role.value,
                    agent.status.value,
                    sorted(agent.group_ids),
                    agent.last_assigned_at,
                    agent.avatar_url,
                )
            else:
                row = await connection.fetchrow(
                    self._UPDATE_AGENT_SQL,
                    agent.id,
                    agent.version,
                    agent.name,
                    agent.email,
                    agent.role.value,
                    agent.status.value,
                    sorted(agent.group_ids),
                    agent.last_assigned_at,
                    agent.avatar_url,
                )
        if row is None:
            raise ConcurrentModificationError(f"Agent {agent.id} changed since version {agent.version}")
        return _with_version(agent, int(row["version"]))

    async def list_groups(self) -> Sequence[Group]:
        async with self._connection() as connection:
            rows = await connection.fetch(self._SELECT_GROUPS_SQL)
        return [
            Group(id=str(row["id"]), name=str(row["name"]), description=str(row["description"] or ""))
            for row in rows
        ]

    async def save_group(self, group: Group) -> Group:
        async with self._connection() as connection:
            await connection.execute(self._UPSERT_GROUP_SQL, group.id, group.name, group.description)
        return group

    async def add_audit_entry(self, entry: TicketAuditEntry) -> None:
        async with self._connection() as connection:
            await connection.execute(
                self._INSERT_AUDIT_SQL,
                entry.id,
                entry.ticket_id,
                entry.action,
                entry.actor,
                _enum_value(entry.from_status),
                _enum_value(entry.to_status),
                json.dumps(dict(entry.metadata)),
                entry.created_at,
            )

    async def get_audit_log(self, ticket_id: UUID) -> Sequence[TicketAuditEntry]:
        async with self._connection() as connection:
            rows = await connection.fetch(self._SELECT_AUDIT_SQL, ticket_id)
        return [self._row_to_audit(row) for row in rows]

    @staticmethod
    def _row_to_ticket(row: Mapping[str, Any], messages: Sequence[Message]) -> Ticket:
        previous_status = row["previous_status"]
        target = row["transfer_target_agent_id"]
        proposal = None
        if target is not None:
            proposal = TransferProposal(
                target_agent_id=str(target),
                requested_at=_ensure_datetime(row["transfer_requested_at"]),
            )
        return Ticket(
            id=_to_uuid(row["id"]),
            number=int(row["number"]),
            subject=str(row["subject"]),
            requester=str(row["requester"]),
            status=parse_enum(TicketStatus, row["status"]),
            previous_status=parse_enum(TicketStatus, previous_status) if previous_status else None,
            priority=parse_enum(TicketPriority, row["priority"]),
            category=row["category"],
            created_at=_ensure_datetime(row["created_at"]),
            updated_at=_ensure_datetime(row["updated_at"]),
            assigned_at=_optional_datetime(row["assigned_at"]),
            agent_id=row["agent_id"],
            group_id=row["group_id"],
            help_needed=bool(row["help_needed"]),
            messages=tuple(messages),
            transfer_proposal=proposal,
            version=int(row["version"]),
        )

    @staticmethod
    def _row_to_message(row: Mapping[str, Any]) -> Message:
        return Message(
            id=_to_uuid(row["id"]),
            author=row["author"],
            type=parse_enum(MessageType, row["type"]),
            content=str(row["content"]),
            has_attachment=bool(row["has_attachment"]),
            created_at=_ensure_datetime(row["created_at"]),
        )

    @staticmethod
    def _row_to_agent(row: Mapping[str, Any]) -> Agent:
        return Agent(
            id=str(row["id"]),
            name=str(row["name"]),
            email=str(row["email"]),
            role=parse_enum(AgentRole, row["role"]),
            status=parse_enum(AgentStatus, row["status"]),
            group_ids=frozenset(str(value) for value in row["group_ids"] or ()),
            last_assigned_at=_optional_datetime(row["last_assigned_at"]),
            avatar_url=row["avatar_url"],
            version=int(row["version"]),
        )

    @staticmethod
    def _row_to_audit(row: Mapping[str, Any]) -> TicketAuditEntry:
        metadata = row["metadata"] or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        from_status = row["from_status"]
        to_status = row["to_status"]
        return TicketAuditEntry(
            id=_to_uuid(row["id"]),
            ticket_id=_to_uuid(row["ticket_id"]),
            action=str(row["action"]),
            actor=str(row["actor"]),
            from_status=parse_enum(TicketStatus, from_status) if from_status else None,
            to_status=parse_enum(TicketStatus, to_status) if to_status else None,
            metadata=dict(metadata),
            created_at=_ensure_datetime(row["created_at"]),
        )


def _enum_value(value: Any) -> str | None:
    return None if value is None else value.value


def _with_version(record: Any, version: int) -> Any:
    return replace(record, version=version)


def _to_uuid(value: Any) -> UUID:
    if isinstance(value, UUID):
        return value
    return UUID(str(value))


def _ensure_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return datetime.fromisoformat(str(value))


def _optional_datetime(value: Any) -> datetime | None:
    return None if value is None else _ensure_datetime(value)

from __future__ import annotations

import logging
from dataclasses import replace

from .directory import AgentDirectory, Clock, utcnow
from .errors import AgentUnavailableError, NoPendingTransferError
from .locks import KeyedLock
from .models import Ticket, TransferProposal
from .repository import HelpdeskRepository, commit_ticket
from .state import AgentStatus, TicketStateMachine

logger = logging.getLogger(__name__)


class TransferCoordinator:
    """Keep at most one pending hand-off proposal per ticket.

    A new request silently supersedes the pending one; there is no decline
    operation, a proposal ends only by approval or replacement.
    """

    def __init__(
        self,
        directory: AgentDirectory,
        repository: HelpdeskRepository,
        *,
        locks: KeyedLock | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._directory = directory
        self._repository = repository
        self._locks = locks if locks is not None else KeyedLock()
        self._clock = clock

    @property
    def locks(self) -> KeyedLock:
        return self._locks

    async def request(self, ticket: Ticket, target_agent_id: str, *, actor: str = "system") -> Ticket:
        await self._directory.get_agent(target_agent_id)

        async with self._locks.hold(ticket.id):
            now = self._clock()
            superseded = ticket.transfer_proposal
            updated = replace(
                ticket,
                transfer_proposal=TransferProposal(target_agent_id=target_agent_id, requested_at=now),
                updated_at=now,
            )
            saved = await commit_ticket(
                self._repository,
                ticket,
                updated,
                action="transfer_requested",
                actor=actor,
                metadata={"target_agent_id": target_agent_id},
            )
        if superseded is not None:
            logger.info(
                "Transfer of ticket #%s to %s supersedes pending proposal for %s",
                saved.number,
                target_agent_id,
                superseded.target_agent_id,
            )
        else:
            logger.info("Transfer of ticket #%s to %s requested", saved.number, target_agent_id)
        return saved

    async def approve(self, ticket: Ticket, *, actor: str = "system") -> Ticket:
        """Hand the ticket to the proposed agent and restart its ownership clock.

        Raises ``AgentUnavailableError`` when the target is no longer ACTIVE;
        the proposal then stays pending until it is superseded.
        """

        proposal = ticket.transfer_proposal
        if proposal is None:
            raise NoPendingTransferError(f"Ticket {ticket.id} has no pending transfer")

        async with self._locks.hold(ticket.id):
            async with self._directory.assignment_lock:
                target = await self._directory.get_agent(proposal.target_agent_id)
                if target.status != AgentStatus.ACTIVE:
                    raise AgentUnavailableError(f"Agent {target.id} is {target.status.value}")
                now = self._clock()
                updated = replace(
                    ticket,
                    agent_id=target.id,
                    status=TicketStateMachine.on_assigned(ticket.status),
                    previous_status=None,
                    assigned_at=now,
                    transfer_proposal=None,
                    updated_at=now,
                )
                saved = await commit_ticket(
                    self._repository,
                    ticket,
                    updated,
                    action="transfer_approved",
                    actor=actor,
                    metadata={"from_agent_id": ticket.agent_id or "", "to_agent_id": target.id},
                )
        logger.info("Ticket #%s transferred %s -> %s", saved.number, ticket.agent_id, proposal.target_agent_id)
        return saved

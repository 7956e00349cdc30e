"""Optimistic edits: show the change at once, then let the server decide."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from live_board.api_client import ApiError, error_message
from live_board.models import Issue, IssueStatus
from live_board.reconcile import ReconciliationEngine

logger = logging.getLogger(__name__)

UPDATE_FAILED = "Failed to update issue"


class MutationState(str, Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class Mutation:
    record_id: str
    changes: Dict[str, Any]
    state: MutationState = MutationState.PENDING
    result: Optional[Issue] = None
    error: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "recordId": self.record_id,
            "changes": dict(self.changes),
            "state": self.state.value,
            "error": self.error,
            "startedAt": self.started_at.isoformat(),
        }


class OptimisticCoordinator:
    """Applies issue edits locally before the update request completes.

    On failure the local edit is not undone in place: the board may have
    re-sorted in the meantime, so the current page is refetched instead.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        update: Callable[[str, Dict[str, Any]], Awaitable[Issue]],
        resync: Callable[[], Awaitable[Any]],
        is_active: Callable[[], bool] = lambda: True,
    ):
        self._engine = engine
        self._update = update
        self._resync = resync
        self._is_active = is_active
        self._pending: List[Mutation] = []
        self.last_error: Optional[str] = None

    def pending(self) -> List[Mutation]:
        return list(self._pending)

    async def move(self, record_id: str, status: IssueStatus) -> Mutation:
        """Move a card to another board column."""
        return await self.mutate(record_id, {"status": IssueStatus(status).value})

    async def mutate(self, record_id: str, changes: Dict[str, Any]) -> Mutation:
        current = self._engine.get(record_id)
        if current is None:
            raise KeyError(record_id)

        # Invalid changes raise here, before anything is recorded.
        optimistic = current.with_changes(changes)

        mutation = Mutation(record_id=record_id, changes=dict(changes))
        self._pending.append(mutation)
        self._engine.upsert(optimistic, reason="mutation")

        try:
            updated = await self._update(record_id, changes)
        except Exception as e:
            await self._roll_back(mutation, e)
        else:
            self._commit(mutation, updated)
        finally:
            self._pending.remove(mutation)

        return mutation

    def _commit(self, mutation: Mutation, updated: Issue) -> None:
        mutation.state = MutationState.COMMITTED
        mutation.result = updated
        if not self._is_active():
            logger.info(f"Dropping update for issue {mutation.record_id}: view is gone")
            return
        # The server copy wins even when it matches the guess (e.g. updatedAt).
        self._engine.upsert(updated, reason="mutation")
        self.last_error = None
        logger.info(f"Issue #{mutation.record_id} updated: {mutation.changes}")

    async def _roll_back(self, mutation: Mutation, exc: Exception) -> None:
        mutation.state = MutationState.ROLLED_BACK
        payload = exc.payload if isinstance(exc, ApiError) else None
        mutation.error = error_message(payload, default=UPDATE_FAILED)
        logger.error(f"Error updating issue {mutation.record_id}: {exc}")

        if not self._is_active():
            return
        self.last_error = mutation.error
        await self._resync()

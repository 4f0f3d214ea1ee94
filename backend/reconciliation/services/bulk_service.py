"""
Bulk Operation Executor

Fans an action out over a selection of transactions, one independent
operation per id, and reports one outcome per id. A failing item never
aborts or hides the others, and items that succeeded stay applied; the
caller retries just the failed ids.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciliation.errors import ReconciliationError, ValidationFailed
from reconciliation.models import BatchResult, ItemResult, ParentAbsorbed, attribution_for
from reconciliation.registry import BulkAction
from reconciliation.services.reconciliation_service import (
    MisfitReconciliationService,
    ReconciliationAuditEvent,
    log_reconciliation_event,
)

logger = logging.getLogger(__name__)

ItemOperation = Callable[[str], Awaitable[Any]]


def unique_ids(transaction_ids: Iterable[str]) -> List[str]:
    """Drop blanks and duplicates, keeping first-seen order."""
    seen = set()
    ids = []
    for transaction_id in transaction_ids:
        if not transaction_id or transaction_id in seen:
            continue
        seen.add(transaction_id)
        ids.append(transaction_id)
    return ids


class BulkOperationExecutor:
    """
    Runs one operation per transaction id with bounded concurrency.

    Items are processed in batches of max_concurrency; completion order
    within a batch is not guaranteed, but results are reported in the
    order the ids were given.
    """

    def __init__(self, max_concurrency: int = 10, actor: str = "system"):
        self.max_concurrency = max(1, max_concurrency)
        self.actor = actor

    async def run(
        self,
        action: BulkAction,
        transaction_ids: Iterable[str],
        operation: ItemOperation
    ) -> BatchResult:
        ids = unique_ids(transaction_ids)
        if not ids:
            raise ValidationFailed("transactionIds must contain at least one id")

        batch = BatchResult(action=action)

        for i in range(0, len(ids), self.max_concurrency):
            chunk = ids[i:i + self.max_concurrency]
            outcomes = await asyncio.gather(
                *(operation(transaction_id) for transaction_id in chunk),
                return_exceptions=True
            )
            for transaction_id, outcome in zip(chunk, outcomes):
                batch.results.append(self._item_result(transaction_id, outcome))

        log_reconciliation_event(
            ReconciliationAuditEvent.BULK_COMPLETED,
            None,
            {
                "action": action.value,
                "total": batch.total,
                "succeeded": batch.succeeded,
                "failed": batch.failed,
                "failed_ids": batch.failed_ids,
            },
            actor=self.actor
        )
        return batch

    @staticmethod
    def _item_result(transaction_id: str, outcome: Any) -> ItemResult:
        if isinstance(outcome, ReconciliationError):
            return ItemResult(
                id=transaction_id,
                ok=False,
                error=outcome.message,
                status_code=outcome.status_code
            )
        if isinstance(outcome, Exception):
            logger.error(f"Bulk item {transaction_id} failed: {outcome}")
            return ItemResult(id=transaction_id, ok=False, error=str(outcome) or type(outcome).__name__)
        if isinstance(outcome, BaseException):
            raise outcome
        return ItemResult(id=transaction_id, ok=True)


class BulkReconciliationService:
    """
    Server-side bulk attribution and dispute.

    Each item runs in its own database session, so one item's rollback
    never touches another's committed write.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        parent_client_id: Optional[str] = None,
        max_concurrency: int = 10,
        actor: str = "system"
    ):
        self.session_factory = session_factory
        self.parent_client_id = parent_client_id
        self.actor = actor
        self.executor = BulkOperationExecutor(max_concurrency=max_concurrency, actor=actor)

    async def apply(
        self,
        action: BulkAction,
        transaction_ids: Iterable[str],
        client_id: Optional[str] = None,
        confirm_parent: bool = False,
        reason: Optional[str] = None
    ) -> BatchResult:
        """Validate the shared parameters once, then fan out per id."""
        if action == BulkAction.ATTRIBUTE:
            if not client_id:
                raise ValidationFailed("clientId is required for attribute")
            if isinstance(attribution_for(client_id, self.parent_client_id), ParentAbsorbed) \
                    and not confirm_parent:
                raise ValidationFailed(
                    "Attributing to the parent account absorbs the cost and must be confirmed"
                )

            async def operation(transaction_id: str):
                async with self.session_factory() as session:
                    await self._service(session).set_brand(
                        transaction_id, client_id, confirm_parent=confirm_parent
                    )
        else:
            async def operation(transaction_id: str):
                async with self.session_factory() as session:
                    await self._service(session).dispute(transaction_id, reason)

        return await self.executor.run(action, transaction_ids, operation)

    def _service(self, session: AsyncSession) -> MisfitReconciliationService:
        return MisfitReconciliationService(session, self.parent_client_id, actor=self.actor)

"""
Misfit Feed Service

Read side of reconciliation: lists transactions that are missing a brand,
a shipment or a care ticket, together with the pool of tickets that can
still be linked.
"""

import logging
from datetime import date
from typing import Dict, Any, List, Optional, Tuple

from sqlalchemy import text, bindparam
from sqlalchemy.ext.asyncio import AsyncSession

from reconciliation.matching_rules import ticket_rules
from reconciliation.models import FeedQuery, FeedPage, Transaction, Ticket, Suggestion
from reconciliation.registry import (
    FeeType,
    MisfitFilter,
    ELIGIBLE_TICKET_STATUSES,
    SETTLED_DISPUTE_STATUSES,
)
from reconciliation.services.reconciliation_service import (
    TRANSACTION_SELECT,
    ReconciliationAuditEvent,
    log_reconciliation_event,
)

logger = logging.getLogger(__name__)


PENDING_CREDIT_SELECT = """
    SELECT
        t.id, t.transaction_id, t.client_id, t.merchant_id,
        t.reference_id, t.reference_type, t.cost, t.currency_code,
        t.charge_date, t.fee_type, t.transaction_type, t.fulfillment_center,
        t.tracking_id, t.care_ticket_id, t.dispute_status, t.matched_credit_id,
        t.additional_details, t.invoice_id_jp, t.markup_is_preview,
        t.billed_amount, t.credit_shipping_portion,
        c.company_name,
        ct.id AS ticket_ref_id,
        ct.ticket_number AS ticket_ref_number,
        ct.issue_type AS ticket_ref_issue_type,
        ct.compensation_request AS ticket_ref_compensation_request,
        ct.reshipment_status AS ticket_ref_reshipment_status,
        ct.reshipment_id AS ticket_ref_reshipment_id,
        ct.shipment_id AS ticket_ref_shipment_id
    FROM public.transactions t
    LEFT JOIN public.clients c ON c.id = t.client_id
    LEFT JOIN public.care_tickets ct ON ct.id = t.care_ticket_id
"""

BASE_CONDITIONS = [
    "t.is_voided = false",
    "(t.dispute_status IS NULL OR t.dispute_status NOT IN :settled_statuses)",
]

SEARCH_CONDITION = """(
    t.reference_id ILIKE :search
    OR t.transaction_id ILIKE :search
    OR t.tracking_id ILIKE :search
    OR t.additional_details->>'Comment' ILIKE :search
    OR t.additional_details->>'CreditReason' ILIKE :search
    OR t.additional_details->>'TicketReference' ILIKE :search
)"""


class MisfitFeedService:
    """
    Service for listing misfits and eligible tickets.
    """

    def __init__(
        self,
        db: AsyncSession,
        merge_limit: int = 500,
        ticket_pool_limit: int = 200
    ):
        self.db = db
        self.merge_limit = merge_limit
        self.ticket_pool_limit = ticket_pool_limit

    async def fetch(self, query: FeedQuery) -> FeedPage:
        """
        Fetch one page of misfits.

        Without a filter type the unattributed and credit lists are merged,
        deduplicated and paginated in memory.
        """
        if query.filter_type == MisfitFilter.CREDIT:
            transactions, total = await self._fetch_filtered(
                self._credit_conditions(query), query, TRANSACTION_SELECT
            )
        elif query.filter_type == MisfitFilter.UNATTRIBUTED:
            transactions, total = await self._fetch_filtered(
                self._unattributed_conditions(query), query, TRANSACTION_SELECT
            )
        elif query.filter_type == MisfitFilter.PENDING_CREDITS:
            transactions, total = await self._fetch_filtered(
                self._pending_credit_conditions(), query, PENDING_CREDIT_SELECT
            )
        else:
            transactions, total = await self._fetch_merged(query)

        tickets = await self.get_available_tickets()

        logger.info(
            f"Misfit feed: {len(transactions)} of {total} transactions, "
            f"{len(tickets)} available tickets (type={query.filter_type})"
        )
        return FeedPage(transactions=transactions, available_tickets=tickets, total_count=total)

    async def get_available_tickets(self) -> List[Ticket]:
        """Tickets awaiting a credit that no transaction references yet, newest first."""
        statement = text("""
            SELECT
                ct.id, ct.ticket_number, ct.ticket_type, ct.status,
                ct.shipment_id, ct.credit_amount, ct.client_id, ct.created_at,
                c.company_name
            FROM public.care_tickets ct
            LEFT JOIN public.clients c ON c.id = ct.client_id
            WHERE ct.deleted_at IS NULL
            AND ct.status IN :statuses
            AND NOT EXISTS (
                SELECT 1 FROM public.transactions lt
                WHERE lt.care_ticket_id = ct.id
            )
            ORDER BY ct.created_at DESC
            LIMIT :limit
        """).bindparams(bindparam("statuses", expanding=True))

        result = await self.db.execute(
            statement,
            {
                "statuses": [s.value for s in ELIGIBLE_TICKET_STATUSES],
                "limit": self.ticket_pool_limit,
            }
        )
        return [Ticket.from_row(dict(row)) for row in result.mappings().all()]

    def suggest(self, page: FeedPage) -> Dict[str, Suggestion]:
        """Run the matching engine over a page in feed order."""
        suggestions = ticket_rules.suggest_matches(page.transactions, page.available_tickets)
        log_reconciliation_event(
            ReconciliationAuditEvent.SUGGESTIONS_COMPUTED,
            None,
            {
                "transactions": len(page.transactions),
                "tickets": len(page.available_tickets),
                "suggestions": len(suggestions),
            }
        )
        return suggestions

    # ==================== Private Methods ====================

    def _credit_conditions(
        self,
        query: FeedQuery,
        merged: bool = False
    ) -> Tuple[List[str], Dict[str, Any]]:
        conditions = ["t.fee_type = :credit_fee", "t.care_ticket_id IS NULL"]
        params: Dict[str, Any] = {"credit_fee": FeeType.CREDIT.value}
        # A non-credit fee type filter empties the credit half of the merged feed
        if merged and query.fee_type and query.fee_type != FeeType.CREDIT.value:
            conditions.append("t.fee_type = :fee_type")
            params["fee_type"] = query.fee_type
        if query.reference_type:
            conditions.append("t.reference_type = :reference_type")
            params["reference_type"] = query.reference_type
        return conditions, params

    def _unattributed_conditions(self, query: FeedQuery) -> Tuple[List[str], Dict[str, Any]]:
        conditions = ["t.client_id IS NULL", "t.fee_type <> :payment_fee"]
        params: Dict[str, Any] = {"payment_fee": FeeType.PAYMENT.value}
        if query.fee_type:
            conditions.append("t.fee_type = :fee_type")
            params["fee_type"] = query.fee_type
        if query.reference_type:
            conditions.append("t.reference_type = :reference_type")
            params["reference_type"] = query.reference_type
        return conditions, params

    def _pending_credit_conditions(self) -> Tuple[List[str], Dict[str, Any]]:
        conditions = [
            "t.fee_type = :credit_fee",
            "t.markup_is_preview = true",
            "t.billed_amount IS NULL",
        ]
        return conditions, {"credit_fee": FeeType.CREDIT.value}

    def _where(
        self,
        filters: Tuple[List[str], Dict[str, Any]],
        query: FeedQuery
    ) -> Tuple[str, Dict[str, Any]]:
        conditions, params = filters
        conditions = BASE_CONDITIONS + conditions
        params = {
            **params,
            "settled_statuses": [s.value for s in SETTLED_DISPUTE_STATUSES],
        }
        if query.normalized_search:
            conditions = conditions + [SEARCH_CONDITION]
            params["search"] = f"%{query.normalized_search}%"
        return " WHERE " + " AND ".join(conditions), params

    async def _fetch_filtered(
        self,
        filters: Tuple[List[str], Dict[str, Any]],
        query: FeedQuery,
        select: str
    ) -> Tuple[List[Transaction], int]:
        where, params = self._where(filters, query)

        count_result = await self.db.execute(
            text("SELECT COUNT(*) AS total FROM public.transactions t" + where)
            .bindparams(bindparam("settled_statuses", expanding=True)),
            params
        )
        total = count_result.scalar() or 0

        result = await self.db.execute(
            text(select + where + """
                ORDER BY t.charge_date DESC NULLS LAST, t.id
                LIMIT :limit OFFSET :offset
            """).bindparams(bindparam("settled_statuses", expanding=True)),
            {**params, "limit": query.limit, "offset": query.offset}
        )
        return [Transaction.from_row(dict(row)) for row in result.mappings().all()], total

    async def _fetch_capped(
        self,
        filters: Tuple[List[str], Dict[str, Any]],
        query: FeedQuery
    ) -> List[Transaction]:
        where, params = self._where(filters, query)
        result = await self.db.execute(
            text(TRANSACTION_SELECT + where + """
                ORDER BY t.charge_date DESC NULLS LAST
                LIMIT :merge_limit
            """).bindparams(bindparam("settled_statuses", expanding=True)),
            {**params, "merge_limit": self.merge_limit}
        )
        return [Transaction.from_row(dict(row)) for row in result.mappings().all()]

    async def _fetch_merged(self, query: FeedQuery) -> Tuple[List[Transaction], int]:
        unattributed = await self._fetch_capped(self._unattributed_conditions(query), query)
        credits = await self._fetch_capped(self._credit_conditions(query, merged=True), query)

        merged = merge_misfits(unattributed, credits)
        page = merged[query.offset:query.offset + query.limit]
        return page, len(merged)


def merge_misfits(*lists: List[Transaction]) -> List[Transaction]:
    """
    Merge misfit lists, keeping the first occurrence of each transaction,
    sorted by charge date descending (undated last).
    """
    seen = set()
    merged: List[Transaction] = []
    for transactions in lists:
        for tx in transactions:
            if tx.id in seen:
                continue
            seen.add(tx.id)
            merged.append(tx)

    def sort_key(tx: Transaction) -> Tuple[bool, Optional[date]]:
        return (tx.charge_date is not None, tx.charge_date or date.min)

    merged.sort(key=sort_key, reverse=True)
    return merged

"""
Ticket Matching Rules

Proposes at most one care ticket for each unlinked credit transaction.

Rules, first hit wins (see reconciliation.registry):
1. Shipment match: credit references a shipment the ticket is tagged with
2. Brand + amount + date: same client, |credit_amount - |cost|| < 0.01,
   ticket created within 30 days (inclusive) of the charge date
3. Brand + amount: as above without the date window

Within one pass transactions are processed in feed order and a ticket
claimed by an earlier transaction is never offered again. The claimed set
only dedups suggestions inside a pass; linking is guarded by the store.

The engine is pure: it never raises and never writes.
"""

from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set, AbstractSet

from reconciliation.models import Suggestion, Ticket, Transaction
from reconciliation.registry import MatchRule, rule_registry


class TicketMatchingRules:
    """
    Matching rules engine for unlinked credits against care tickets.
    """

    # Strict: a difference of exactly one cent does not match
    AMOUNT_TOLERANCE = Decimal("0.01")
    # Inclusive, either direction
    DATE_WINDOW = timedelta(days=30)

    def __init__(self):
        self.registry = rule_registry

    def match(
        self,
        transaction: Transaction,
        tickets: List[Ticket],
        claimed_ticket_ids: AbstractSet[str]
    ) -> Optional[Suggestion]:
        """
        Find the best ticket for a single transaction.

        Args:
            transaction: The misfit transaction
            tickets: Pool of tickets eligible for linking, in feed order
            claimed_ticket_ids: Tickets already claimed earlier in this pass

        Returns:
            Suggestion, or None when the transaction is not an unlinked
            credit or no rule matched
        """
        if not transaction.is_matchable:
            return None

        candidates = [t for t in tickets if t.id not in claimed_ticket_ids]
        if not candidates:
            return None

        # 1. Shipment match
        if transaction.has_shipment_reference:
            ticket = next(
                (t for t in candidates if t.shipment_id == transaction.reference_id),
                None
            )
            if ticket:
                return self._suggest(ticket, MatchRule.SHIPMENT)

        if not transaction.client_id:
            return None

        same_brand_amount = [
            t for t in candidates
            if t.client_id == transaction.client_id and self._amount_matches(t, transaction)
        ]

        # 2. Brand + amount + date proximity
        charged_at = self._charged_at(transaction)
        if charged_at is not None:
            ticket = next(
                (t for t in same_brand_amount if self._within_date_window(t, charged_at)),
                None
            )
            if ticket:
                return self._suggest(ticket, MatchRule.BRAND_AMOUNT_DATE)

        # 3. Brand + amount only
        if same_brand_amount:
            return self._suggest(same_brand_amount[0], MatchRule.BRAND_AMOUNT)

        return None

    def suggest_matches(
        self,
        transactions: Iterable[Transaction],
        tickets: List[Ticket]
    ) -> Dict[str, Suggestion]:
        """
        Run one matching pass over a page of transactions.

        Transactions are processed in the order given; each claimed ticket
        is added to the pass's claimed set before the next transaction.

        Returns:
            Mapping of transaction_id to suggestion, in processing order
        """
        claimed: Set[str] = set()
        suggestions: Dict[str, Suggestion] = {}

        for transaction in transactions:
            suggestion = self.match(transaction, tickets, claimed)
            if suggestion:
                suggestions[transaction.transaction_id] = suggestion
                claimed.add(suggestion.ticket.id)

        return suggestions

    def _suggest(self, ticket: Ticket, rule: MatchRule) -> Suggestion:
        config = self.registry.get_config(rule)
        return Suggestion(
            ticket=ticket,
            confidence=config.confidence,
            reason=config.reason,
            rule=rule
        )

    def _amount_matches(self, ticket: Ticket, transaction: Transaction) -> bool:
        if ticket.credit_amount <= 0:
            return False
        return abs(ticket.credit_amount - transaction.abs_cost) < self.AMOUNT_TOLERANCE

    def _within_date_window(self, ticket: Ticket, charged_at: datetime) -> bool:
        created_at = ticket.created_at
        if created_at is None:
            return False
        # Naive timestamps are UTC
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return abs(created_at - charged_at) <= self.DATE_WINDOW

    @staticmethod
    def _charged_at(transaction: Transaction) -> Optional[datetime]:
        """Charge dates are calendar days; compare from UTC midnight."""
        if transaction.charge_date is None:
            return None
        return datetime.combine(transaction.charge_date, time.min, tzinfo=timezone.utc)


# Instantiate rules engine
ticket_rules = TicketMatchingRules()

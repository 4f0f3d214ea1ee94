"""
Unit Tests for Ticket Matching Rules

Tests suggestion of care tickets for unlinked credits:
- Rule precedence (shipment, brand + amount + date, brand + amount)
- Amount tolerance and date window boundaries
- Claimed-ticket dedup within one pass
- Determinism across passes

Run with: pytest tests/test_ticket_matching.py -v
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

from reconciliation.matching_rules import TicketMatchingRules, ticket_rules
from reconciliation.models import Transaction, Ticket
from reconciliation.registry import Confidence, MatchRule, rule_registry


def credit(
    transaction_id="tx-1",
    cost="-25.00",
    client_id="brandA",
    charge_date=date(2024, 3, 1),
    reference_id=None,
    reference_type=None,
    care_ticket_id=None,
    fee_type="Credit"
) -> Transaction:
    return Transaction(
        id=f"id-{transaction_id}",
        transaction_id=transaction_id,
        cost=Decimal(cost),
        fee_type=fee_type,
        client_id=client_id,
        charge_date=charge_date,
        reference_id=reference_id,
        reference_type=reference_type,
        care_ticket_id=care_ticket_id,
    )


def ticket(
    ticket_id="t-1",
    credit_amount="25.00",
    client_id="brandA",
    created_at=datetime(2024, 3, 20, tzinfo=timezone.utc),
    shipment_id=None,
    number=1001
) -> Ticket:
    return Ticket(
        id=ticket_id,
        ticket_number=number,
        ticket_type="Claim",
        status="Credit Requested",
        credit_amount=Decimal(credit_amount),
        created_at=created_at,
        shipment_id=shipment_id,
        client_id=client_id,
    )


class TestRuleRegistry:
    """Test match rule configuration."""

    def test_rules_in_precedence_order(self):
        rules = rule_registry.get_rules_in_order()
        assert [r.rule for r in rules] == [
            MatchRule.SHIPMENT,
            MatchRule.BRAND_AMOUNT_DATE,
            MatchRule.BRAND_AMOUNT,
        ]

    def test_rule_confidence_and_reason(self):
        shipment = rule_registry.get_config(MatchRule.SHIPMENT)
        assert shipment.confidence == Confidence.EXACT
        assert shipment.reason == "Same shipment ID"

        dated = rule_registry.get_config(MatchRule.BRAND_AMOUNT_DATE)
        assert dated.confidence == Confidence.EXACT
        assert dated.reason == "Same brand, amount, and date range"

        undated = rule_registry.get_config(MatchRule.BRAND_AMOUNT)
        assert undated.confidence == Confidence.PROBABLE
        assert undated.reason == "Same brand and amount"


class TestShipmentRule:
    """Test rule 1: same shipment id."""

    def test_shipment_match_ignores_amount(self):
        """Shipment match wins even when the ticket has no amount yet."""
        tx = credit(cost="-50.00", client_id=None, reference_id="SHIP123", reference_type="Shipment")
        tk = ticket(shipment_id="SHIP123", credit_amount="0", client_id=None)

        suggestion = ticket_rules.match(tx, [tk], set())

        assert suggestion is not None
        assert suggestion.ticket.id == tk.id
        assert suggestion.confidence == Confidence.EXACT
        assert suggestion.reason == "Same shipment ID"
        assert suggestion.rule == MatchRule.SHIPMENT

    def test_shipment_match_beats_earlier_brand_match(self):
        tx = credit(reference_id="SHIP123", reference_type="Shipment")
        brand_ticket = ticket(ticket_id="t-brand")
        shipment_ticket = ticket(ticket_id="t-ship", shipment_id="SHIP123", credit_amount="99.00")

        suggestion = ticket_rules.match(tx, [brand_ticket, shipment_ticket], set())

        assert suggestion.ticket.id == "t-ship"
        assert suggestion.rule == MatchRule.SHIPMENT

    def test_non_shipment_reference_not_matched_by_shipment(self):
        """A Default reference is a carrier placeholder, not a shipment."""
        tx = credit(client_id=None, reference_id="SHIP123", reference_type="Default")
        tk = ticket(shipment_id="SHIP123", client_id=None)

        assert ticket_rules.match(tx, [tk], set()) is None

    def test_first_matching_shipment_ticket_wins(self):
        tx = credit(reference_id="SHIP123", reference_type="Shipment")
        first = ticket(ticket_id="t-first", shipment_id="SHIP123")
        second = ticket(ticket_id="t-second", shipment_id="SHIP123")

        suggestion = ticket_rules.match(tx, [first, second], set())

        assert suggestion.ticket.id == "t-first"


class TestBrandAmountRules:
    """Test rules 2 and 3: same brand and amount."""

    def test_brand_amount_date_match(self):
        """19 days apart, equal amount: exact match via the date rule."""
        tx = credit(cost="-25.00", client_id="brandA", charge_date=date(2024, 3, 1))
        tk = ticket(credit_amount="25.00", client_id="brandA",
                    created_at=datetime(2024, 3, 20, tzinfo=timezone.utc))

        suggestion = ticket_rules.match(tx, [tk], set())

        assert suggestion.rule == MatchRule.BRAND_AMOUNT_DATE
        assert suggestion.confidence == Confidence.EXACT
        assert suggestion.reason == "Same brand, amount, and date range"

    def test_amount_difference_of_one_cent_does_not_match(self):
        tx = credit(cost="-25.00")
        tk = ticket(credit_amount="25.01")

        assert ticket_rules.match(tx, [tk], set()) is None

    def test_amount_difference_under_one_cent_matches(self):
        tx = credit(cost="-25.00")
        tk = ticket(credit_amount="25.009999")

        suggestion = ticket_rules.match(tx, [tk], set())

        assert suggestion is not None
        assert suggestion.ticket.id == tk.id

    def test_ticket_exactly_30_days_after_matches_date_rule(self):
        tx = credit(charge_date=date(2024, 3, 1))
        tk = ticket(created_at=datetime(2024, 3, 31, tzinfo=timezone.utc))

        assert ticket_rules.match(tx, [tk], set()).rule == MatchRule.BRAND_AMOUNT_DATE

    def test_ticket_exactly_30_days_before_matches_date_rule(self):
        tx = credit(charge_date=date(2024, 3, 1))
        tk = ticket(created_at=datetime(2024, 1, 31, tzinfo=timezone.utc))

        assert ticket_rules.match(tx, [tk], set()).rule == MatchRule.BRAND_AMOUNT_DATE

    def test_ticket_31_days_away_falls_through_to_brand_amount(self):
        tx = credit(charge_date=date(2024, 3, 1))
        tk = ticket(created_at=datetime(2024, 4, 1, tzinfo=timezone.utc))

        suggestion = ticket_rules.match(tx, [tk], set())

        assert suggestion.rule == MatchRule.BRAND_AMOUNT
        assert suggestion.confidence == Confidence.PROBABLE
        assert suggestion.reason == "Same brand and amount"

    def test_ticket_31_days_away_with_other_amount_has_no_match(self):
        tx = credit(charge_date=date(2024, 3, 1))
        tk = ticket(credit_amount="30.00", created_at=datetime(2024, 4, 1, tzinfo=timezone.utc))

        assert ticket_rules.match(tx, [tk], set()) is None

    def test_date_rule_preferred_over_earlier_undated_candidate(self):
        tx = credit(charge_date=date(2024, 3, 1))
        far = ticket(ticket_id="t-far", created_at=datetime(2024, 6, 1, tzinfo=timezone.utc))
        near = ticket(ticket_id="t-near", created_at=datetime(2024, 3, 5, tzinfo=timezone.utc))

        suggestion = ticket_rules.match(tx, [far, near], set())

        assert suggestion.ticket.id == "t-near"
        assert suggestion.rule == MatchRule.BRAND_AMOUNT_DATE

    def test_missing_charge_date_uses_brand_amount_only(self):
        tx = credit(charge_date=None)
        tk = ticket()

        assert ticket_rules.match(tx, [tk], set()).rule == MatchRule.BRAND_AMOUNT

    def test_ticket_without_created_at_skips_date_rule(self):
        tx = credit()
        tk = ticket(created_at=None)

        assert ticket_rules.match(tx, [tk], set()).rule == MatchRule.BRAND_AMOUNT

    def test_naive_created_at_is_treated_as_utc(self):
        tx = credit()
        near = ticket(created_at=datetime(2024, 3, 20))
        far = ticket(ticket_id="t-far", created_at=datetime(2024, 4, 1))

        assert ticket_rules.match(tx, [near], set()).rule == MatchRule.BRAND_AMOUNT_DATE
        assert ticket_rules.match(tx, [far], set()).rule == MatchRule.BRAND_AMOUNT

    def test_other_brand_does_not_match(self):
        tx = credit(client_id="brandA")
        tk = ticket(client_id="brandB")

        assert ticket_rules.match(tx, [tk], set()) is None

    def test_zero_amount_ticket_never_matches_by_amount(self):
        tx = credit(cost="0.00")
        tk = ticket(credit_amount="0")

        assert ticket_rules.match(tx, [tk], set()) is None

    def test_credit_without_brand_only_matches_by_shipment(self):
        tx = credit(client_id=None)
        tk = ticket(client_id=None)

        assert ticket_rules.match(tx, [tk], set()) is None


class TestEligibility:
    """Test which transactions get suggestions at all."""

    @pytest.mark.parametrize("fee_type", ["Shipping", "Storage", "Payment"])
    def test_non_credit_never_matches(self, fee_type):
        tx = credit(fee_type=fee_type, reference_id="SHIP123", reference_type="Shipment")
        pool = [ticket(shipment_id="SHIP123"), ticket(ticket_id="t-2")]

        assert ticket_rules.match(tx, pool, set()) is None

    def test_linked_credit_never_matches(self):
        tx = credit(care_ticket_id="t-linked", reference_id="SHIP123", reference_type="Shipment")
        pool = [ticket(shipment_id="SHIP123"), ticket(ticket_id="t-2")]

        assert ticket_rules.match(tx, pool, set()) is None

    def test_empty_pool(self):
        assert ticket_rules.match(credit(), [], set()) is None

    def test_claimed_ticket_not_offered(self):
        tx = credit(reference_id="SHIP123", reference_type="Shipment")
        tk = ticket(shipment_id="SHIP123")

        assert ticket_rules.match(tx, [tk], {tk.id}) is None

    def test_match_does_not_touch_claimed_set(self):
        claimed = set()
        ticket_rules.match(credit(), [ticket()], claimed)
        assert claimed == set()


class TestMatchingPass:
    """Test one suggestion pass over a page."""

    def test_competing_credits_first_in_order_wins(self):
        a = credit(transaction_id="A")
        b = credit(transaction_id="B")
        tk = ticket()

        suggestions = ticket_rules.suggest_matches([a, b], [tk])

        assert suggestions["A"].ticket.id == tk.id
        assert "B" not in suggestions

    def test_competing_credits_reversed_order(self):
        a = credit(transaction_id="A")
        b = credit(transaction_id="B")
        tk = ticket()

        suggestions = ticket_rules.suggest_matches([b, a], [tk])

        assert suggestions["B"].ticket.id == tk.id
        assert "A" not in suggestions

    def test_second_credit_gets_distinct_lower_priority_ticket(self):
        a = credit(transaction_id="A")
        b = credit(transaction_id="B")
        near = ticket(ticket_id="t-near")
        far = ticket(ticket_id="t-far", created_at=datetime(2024, 8, 1, tzinfo=timezone.utc))

        suggestions = ticket_rules.suggest_matches([a, b], [near, far])

        assert suggestions["A"].ticket.id == "t-near"
        assert suggestions["A"].rule == MatchRule.BRAND_AMOUNT_DATE
        assert suggestions["B"].ticket.id == "t-far"
        assert suggestions["B"].rule == MatchRule.BRAND_AMOUNT

    def test_no_ticket_suggested_twice(self):
        transactions = [
            credit(transaction_id="S1", reference_id="SHIP1", reference_type="Shipment"),
            credit(transaction_id="S2", reference_id="SHIP1", reference_type="Shipment"),
            credit(transaction_id="B1"),
            credit(transaction_id="B2"),
            credit(transaction_id="B3", cost="-10.00"),
            credit(transaction_id="X", fee_type="Shipping"),
        ]
        pool = [
            ticket(ticket_id="t-ship", shipment_id="SHIP1"),
            ticket(ticket_id="t-25a"),
            ticket(ticket_id="t-25b", created_at=None),
            ticket(ticket_id="t-10", credit_amount="10.00"),
        ]

        suggestions = ticket_rules.suggest_matches(transactions, pool)
        ticket_ids = [s.ticket.id for s in suggestions.values()]

        assert len(ticket_ids) == len(set(ticket_ids))
        assert suggestions["S1"].ticket.id == "t-ship"
        assert "X" not in suggestions

    def test_pass_is_deterministic(self):
        transactions = [credit(transaction_id=f"tx-{i}") for i in range(5)]
        pool = [ticket(ticket_id=f"t-{i}", number=1000 + i) for i in range(3)]

        first = ticket_rules.suggest_matches(transactions, pool)
        second = ticket_rules.suggest_matches(transactions, pool)

        assert list(first) == list(second)
        assert {k: v.to_dict() for k, v in first.items()} == {k: v.to_dict() for k, v in second.items()}

    def test_pass_does_not_mutate_inputs(self):
        transactions = [credit()]
        pool = [ticket()]

        ticket_rules.suggest_matches(transactions, pool)

        assert len(pool) == 1
        assert transactions[0].care_ticket_id is None

    def test_engine_constants(self):
        assert TicketMatchingRules.AMOUNT_TOLERANCE == Decimal("0.01")
        assert TicketMatchingRules.DATE_WINDOW.days == 30

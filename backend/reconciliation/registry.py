"""
Reconciliation Registry

Central registry of the vocabulary the reconciliation engine works with:
- Fee and reference types reported by carrier billing
- Care ticket statuses
- Feed filters, coordinator actions and bulk actions
- Match rules, in precedence order

Match rules are checked in priority order and the first hit wins:
1. SHIPMENT            - same shipment id (exact)
2. BRAND_AMOUNT_DATE   - same brand, amount, charge within 30 days (exact)
3. BRAND_AMOUNT        - same brand and amount (probable)

Amount-only matching is not a rule: common round credit amounts
produce too many false positives without a brand constraint.
"""

from enum import Enum
from typing import Dict, Any, List
from dataclasses import dataclass


class FeeType(str, Enum):
    """Fee types carried by billing transactions."""
    CREDIT = "Credit"
    SHIPPING = "Shipping"
    STORAGE = "Storage"
    RETURN = "Return"
    PICK_AND_PACK = "Pick and Pack"
    RECEIVING = "Receiving"
    PAYMENT = "Payment"
    OTHER = "Other"


class ReferenceType(str, Enum):
    """What a transaction's reference_id points at."""
    SHIPMENT = "Shipment"
    RETURN = "Return"
    WRO = "WRO"
    DEFAULT = "Default"  # Carrier placeholder, treated as no reference


class TicketStatus(str, Enum):
    """Care ticket workflow statuses."""
    INPUT_REQUIRED = "Input Required"
    UNDER_REVIEW = "Under Review"
    CREDIT_REQUESTED = "Credit Requested"
    CREDIT_APPROVED = "Credit Approved"
    CREDIT_DENIED = "Credit Denied"
    RESOLVED = "Resolved"


class MisfitFilter(str, Enum):
    """Feed filter types."""
    CREDIT = "credit"
    UNATTRIBUTED = "unattributed"
    PENDING_CREDITS = "pending_credits"


class ReconcileAction(str, Enum):
    """Single-transaction mutating actions."""
    CONNECT_TICKET = "connect_ticket"
    CONNECT_SHIPMENT = "connect_shipment"
    CREATE_TICKET = "create_ticket"
    SET_BRAND = "set_brand"


class BulkAction(str, Enum):
    """Actions that can be fanned out over a selection."""
    ATTRIBUTE = "attribute"
    DISPUTE = "dispute"


class ClassifyMode(str, Enum):
    """How a pending credit's shipping portion is classified."""
    NO_MARKUP = "no_markup"
    MARKUP_ALL = "markup_all"
    SET_PORTION = "set_portion"


class Confidence(str, Enum):
    """Confidence tier of a ticket suggestion."""
    EXACT = "exact"
    PROBABLE = "probable"


class DisputeStatus(str, Enum):
    """Dispute workflow statuses (owned by the disputes workflow)."""
    DISPUTED = "disputed"
    INVALID = "invalid"
    CREDITED = "credited"
    IGNORED = "ignored"


# Tickets offered to the matching engine
ELIGIBLE_TICKET_STATUSES = [TicketStatus.CREDIT_REQUESTED, TicketStatus.CREDIT_APPROVED]

# Transactions already settled by the disputes workflow never show up as misfits
SETTLED_DISPUTE_STATUSES = [DisputeStatus.CREDITED, DisputeStatus.IGNORED]


class MatchRule(str, Enum):
    """Ticket match rules."""
    SHIPMENT = "SHIPMENT"
    BRAND_AMOUNT_DATE = "BRAND_AMOUNT_DATE"
    BRAND_AMOUNT = "BRAND_AMOUNT"


@dataclass
class MatchRuleConfig:
    """
    Configuration for a ticket match rule.
    """
    rule: MatchRule
    priority: int  # Lower = checked first
    confidence: Confidence
    reason: str  # Shown to the reviewer

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule": self.rule.value,
            "priority": self.priority,
            "confidence": self.confidence.value,
            "reason": self.reason
        }


class MatchRuleRegistry:
    """
    Registry of ticket match rules in precedence order.
    """

    _configs: Dict[MatchRule, MatchRuleConfig] = {
        MatchRule.SHIPMENT: MatchRuleConfig(
            rule=MatchRule.SHIPMENT,
            priority=1,
            confidence=Confidence.EXACT,
            reason="Same shipment ID"
        ),
        MatchRule.BRAND_AMOUNT_DATE: MatchRuleConfig(
            rule=MatchRule.BRAND_AMOUNT_DATE,
            priority=2,
            confidence=Confidence.EXACT,
            reason="Same brand, amount, and date range"
        ),
        MatchRule.BRAND_AMOUNT: MatchRuleConfig(
            rule=MatchRule.BRAND_AMOUNT,
            priority=3,
            confidence=Confidence.PROBABLE,
            reason="Same brand and amount"
        ),
    }

    def get_config(self, rule: MatchRule) -> MatchRuleConfig:
        return self._configs[rule]

    def get_rules_in_order(self) -> List[MatchRuleConfig]:
        return sorted(self._configs.values(), key=lambda c: c.priority)


rule_registry = MatchRuleRegistry()

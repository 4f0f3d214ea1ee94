"""
Reconciliation Data Contracts

Dataclasses shared by the feed, the matching engine, the coordinator,
the bulk executor and the HTTP client.

Rows come in from SQL as mappings with snake_case keys (from_row);
the HTTP boundary uses camelCase keys (to_dict / from_dict).
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, Any, List, Optional, Union

from reconciliation.registry import (
    FeeType,
    ReferenceType,
    MisfitFilter,
    Confidence,
    MatchRule,
    BulkAction,
)


def to_decimal(value: Any) -> Decimal:
    """Parse an amount, treating missing or malformed values as zero."""
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def parse_date(value: Any) -> Optional[date]:
    """Parse a calendar day; malformed values are treated as missing."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a timestamp; naive values and bare dates are UTC, malformed ones missing."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        raw = str(value).replace("Z", "+00:00")
        if len(raw) == 10:
            raw = f"{raw}T00:00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _amount(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


# ==================== LEDGER RECORDS ====================

@dataclass
class CareTicketSummary:
    """Care ticket already linked to a pending credit."""
    id: str
    ticket_number: int
    issue_type: Optional[str] = None
    compensation_request: Optional[str] = None
    reshipment_status: Optional[str] = None
    reshipment_id: Optional[str] = None
    shipment_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ticketNumber": self.ticket_number,
            "issueType": self.issue_type,
            "compensationRequest": self.compensation_request,
            "reshipmentStatus": self.reshipment_status,
            "reshipmentId": self.reshipment_id,
            "shipmentId": self.shipment_id,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["CareTicketSummary"]:
        if not data:
            return None
        return cls(
            id=data["id"],
            ticket_number=data.get("ticketNumber"),
            issue_type=data.get("issueType"),
            compensation_request=data.get("compensationRequest"),
            reshipment_status=data.get("reshipmentStatus"),
            reshipment_id=data.get("reshipmentId"),
            shipment_id=data.get("shipmentId"),
        )


@dataclass
class Transaction:
    """
    A billing transaction that may need reconciliation.

    cost is signed (credits are negative); amounts are compared by
    absolute value.
    """
    id: str
    transaction_id: str
    cost: Decimal
    fee_type: str
    client_id: Optional[str] = None
    client_name: Optional[str] = None
    merchant_id: Optional[str] = None
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    currency_code: str = "USD"
    charge_date: Optional[date] = None
    transaction_type: Optional[str] = None
    fulfillment_center: Optional[str] = None
    tracking_id: Optional[str] = None
    care_ticket_id: Optional[str] = None
    dispute_status: Optional[str] = None
    matched_credit_id: Optional[str] = None
    comment: Optional[str] = None
    credit_reason: Optional[str] = None
    carrier_ticket_ref: Optional[str] = None
    invoice_id: Optional[str] = None
    is_pending_credit: bool = False
    credit_shipping_portion: Optional[Decimal] = None
    care_ticket: Optional[CareTicketSummary] = None

    @property
    def is_credit(self) -> bool:
        return self.fee_type == FeeType.CREDIT.value

    @property
    def is_matchable(self) -> bool:
        """Only unlinked credits are offered ticket suggestions."""
        return self.is_credit and not self.care_ticket_id

    @property
    def has_shipment_reference(self) -> bool:
        return bool(self.reference_id) and self.reference_type == ReferenceType.SHIPMENT.value

    @property
    def has_usable_reference(self) -> bool:
        return bool(self.reference_id) and self.reference_type != ReferenceType.DEFAULT.value

    @property
    def missing_brand(self) -> bool:
        return not self.client_id

    @property
    def missing_ticket(self) -> bool:
        return self.is_credit and not self.care_ticket_id

    @property
    def missing_shipment(self) -> bool:
        return self.is_credit and not self.has_usable_reference

    @property
    def abs_cost(self) -> Decimal:
        return abs(self.cost)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Transaction":
        """Build from a transactions row joined with clients.company_name."""
        details = row.get("additional_details") or {}
        care_ticket = None
        if row.get("ticket_ref_id"):
            care_ticket = CareTicketSummary(
                id=str(row["ticket_ref_id"]),
                ticket_number=row.get("ticket_ref_number"),
                issue_type=row.get("ticket_ref_issue_type"),
                compensation_request=row.get("ticket_ref_compensation_request"),
                reshipment_status=row.get("ticket_ref_reshipment_status"),
                reshipment_id=row.get("ticket_ref_reshipment_id"),
                shipment_id=row.get("ticket_ref_shipment_id"),
            )
        portion = row.get("credit_shipping_portion")
        return cls(
            id=str(row["id"]),
            transaction_id=row["transaction_id"],
            cost=to_decimal(row.get("cost")),
            fee_type=row.get("fee_type"),
            client_id=str(row["client_id"]) if row.get("client_id") else None,
            client_name=row.get("company_name"),
            merchant_id=row.get("merchant_id"),
            reference_id=row.get("reference_id"),
            reference_type=row.get("reference_type"),
            currency_code=row.get("currency_code") or "USD",
            charge_date=parse_date(row.get("charge_date")),
            transaction_type=row.get("transaction_type"),
            fulfillment_center=row.get("fulfillment_center"),
            tracking_id=row.get("tracking_id"),
            care_ticket_id=str(row["care_ticket_id"]) if row.get("care_ticket_id") else None,
            dispute_status=row.get("dispute_status"),
            matched_credit_id=row.get("matched_credit_id"),
            comment=details.get("Comment"),
            credit_reason=details.get("CreditReason"),
            carrier_ticket_ref=details.get("TicketReference"),
            invoice_id=row.get("invoice_id_jp"),
            is_pending_credit=(
                row.get("markup_is_preview") is True and row.get("billed_amount") is None
            ),
            credit_shipping_portion=to_decimal(portion) if portion is not None else None,
            care_ticket=care_ticket,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "transactionId": self.transaction_id,
            "clientId": self.client_id,
            "clientName": self.client_name,
            "merchantId": self.merchant_id,
            "referenceId": self.reference_id,
            "referenceType": self.reference_type,
            "cost": float(self.cost),
            "currencyCode": self.currency_code,
            "chargeDate": self.charge_date.isoformat() if self.charge_date else None,
            "feeType": self.fee_type,
            "transactionType": self.transaction_type,
            "fulfillmentCenter": self.fulfillment_center,
            "trackingId": self.tracking_id,
            "careTicketId": self.care_ticket_id,
            "disputeStatus": self.dispute_status,
            "matchedCreditId": self.matched_credit_id,
            "comment": self.comment,
            "creditReason": self.credit_reason,
            "sbTicketRef": self.carrier_ticket_ref,
            "missingBrand": self.missing_brand,
            "missingTicket": self.missing_ticket,
            "missingShipment": self.missing_shipment,
            "isPendingCredit": self.is_pending_credit,
            "creditShippingPortion": _amount(self.credit_shipping_portion),
            "careTicket": self.care_ticket.to_dict() if self.care_ticket else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transaction":
        portion = data.get("creditShippingPortion")
        return cls(
            id=data["id"],
            transaction_id=data["transactionId"],
            cost=to_decimal(data.get("cost")),
            fee_type=data.get("feeType"),
            client_id=data.get("clientId"),
            client_name=data.get("clientName"),
            merchant_id=data.get("merchantId"),
            reference_id=data.get("referenceId"),
            reference_type=data.get("referenceType"),
            currency_code=data.get("currencyCode") or "USD",
            charge_date=parse_date(data.get("chargeDate")),
            transaction_type=data.get("transactionType"),
            fulfillment_center=data.get("fulfillmentCenter"),
            tracking_id=data.get("trackingId"),
            care_ticket_id=data.get("careTicketId"),
            dispute_status=data.get("disputeStatus"),
            matched_credit_id=data.get("matchedCreditId"),
            comment=data.get("comment"),
            credit_reason=data.get("creditReason"),
            carrier_ticket_ref=data.get("sbTicketRef"),
            is_pending_credit=bool(data.get("isPendingCredit")),
            credit_shipping_portion=to_decimal(portion) if portion is not None else None,
            care_ticket=CareTicketSummary.from_dict(data.get("careTicket")),
        )


@dataclass
class Ticket:
    """A care ticket eligible to be linked to a credit."""
    id: str
    ticket_number: int
    ticket_type: str
    status: str
    credit_amount: Decimal
    created_at: Optional[datetime]
    shipment_id: Optional[str] = None
    client_id: Optional[str] = None
    client_name: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Ticket":
        return cls(
            id=str(row["id"]),
            ticket_number=row.get("ticket_number"),
            ticket_type=row.get("ticket_type"),
            status=row.get("status"),
            credit_amount=to_decimal(row.get("credit_amount")),
            created_at=parse_datetime(row.get("created_at")),
            shipment_id=row.get("shipment_id"),
            client_id=str(row["client_id"]) if row.get("client_id") else None,
            client_name=row.get("company_name"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ticketNumber": self.ticket_number,
            "ticketType": self.ticket_type,
            "status": self.status,
            "shipmentId": self.shipment_id,
            "creditAmount": float(self.credit_amount),
            "clientId": self.client_id,
            "clientName": self.client_name,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Ticket":
        return cls(
            id=data["id"],
            ticket_number=data.get("ticketNumber"),
            ticket_type=data.get("ticketType"),
            status=data.get("status"),
            credit_amount=to_decimal(data.get("creditAmount")),
            created_at=parse_datetime(data.get("createdAt")),
            shipment_id=data.get("shipmentId"),
            client_id=data.get("clientId"),
            client_name=data.get("clientName"),
        )


@dataclass
class Suggestion:
    """
    A proposed ticket for an unlinked credit.

    Derived on every fetch and never stored.
    """
    ticket: Ticket
    confidence: Confidence
    reason: str
    rule: MatchRule

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticket": self.ticket.to_dict(),
            "confidence": self.confidence.value,
            "reason": self.reason,
            "rule": self.rule.value,
        }


# ==================== FEED ====================

@dataclass
class FeedQuery:
    """Feed request parameters."""
    limit: int = 50
    offset: int = 0
    filter_type: Optional[MisfitFilter] = None
    fee_type: Optional[str] = None
    reference_type: Optional[str] = None
    search: Optional[str] = None

    @property
    def normalized_search(self) -> Optional[str]:
        if self.search is None:
            return None
        term = self.search.strip().lower()
        return term or None

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {"limit": self.limit, "offset": self.offset}
        if self.filter_type:
            params["type"] = self.filter_type.value
        if self.fee_type:
            params["feeType"] = self.fee_type
        if self.reference_type:
            params["referenceType"] = self.reference_type
        if self.normalized_search:
            params["search"] = self.normalized_search
        return params


@dataclass
class FeedPage:
    """One page of misfits plus the ticket pool eligible for linking."""
    transactions: List[Transaction]
    available_tickets: List[Ticket]
    total_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": [t.to_dict() for t in self.transactions],
            "availableTickets": [t.to_dict() for t in self.available_tickets],
            "totalCount": self.total_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedPage":
        return cls(
            transactions=[Transaction.from_dict(t) for t in data.get("data") or []],
            available_tickets=[Ticket.from_dict(t) for t in data.get("availableTickets") or []],
            total_count=data.get("totalCount") or 0,
        )


# ==================== ACTION RESULTS ====================

@dataclass
class ResolvedGaps:
    """Which misfit gaps an action closed."""
    brand: bool = False
    shipment: bool = False
    ticket: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return {"brand": self.brand, "shipment": self.shipment, "ticket": self.ticket}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ResolvedGaps":
        data = data or {}
        return cls(
            brand=bool(data.get("brand")),
            shipment=bool(data.get("shipment")),
            ticket=bool(data.get("ticket")),
        )


@dataclass
class CreateTicketResult:
    """Outcome of creating a ticket from a credit."""
    ticket_id: str
    ticket_number: int
    auto_resolved: bool
    status: str
    resolved: ResolvedGaps

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticketId": self.ticket_id,
            "ticketNumber": self.ticket_number,
            "autoResolved": self.auto_resolved,
            "status": self.status,
            "resolved": self.resolved.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CreateTicketResult":
        return cls(
            ticket_id=data.get("ticketId"),
            ticket_number=data.get("ticketNumber"),
            auto_resolved=bool(data.get("autoResolved")),
            status=data.get("status"),
            resolved=ResolvedGaps.from_dict(data.get("resolved")),
        )


@dataclass
class ClassifyCreditResult:
    """Billed amounts computed for a pending credit."""
    billed_amount: Decimal
    markup_applied: Decimal
    credit_shipping_portion: Decimal
    markup_percentage: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "billedAmount": float(self.billed_amount),
            "markupApplied": float(self.markup_applied),
            "creditShippingPortion": float(self.credit_shipping_portion),
            "markupPercentage": float(self.markup_percentage),
        }


# ==================== BRAND ATTRIBUTION ====================

@dataclass(frozen=True)
class Brand:
    """Attribute the cost to a specific brand."""
    client_id: str


@dataclass(frozen=True)
class ParentAbsorbed:
    """Absorb the cost in the parent company's bucket; not passed through to any brand."""


BrandAttribution = Union[Brand, ParentAbsorbed]


def attribution_for(client_id: str, parent_client_id: str) -> BrandAttribution:
    """Map a raw client id onto the attribution variant it stands for."""
    if client_id == parent_client_id:
        return ParentAbsorbed()
    return Brand(client_id)


# ==================== BULK ====================

@dataclass
class ItemResult:
    """Outcome of one item in a bulk run."""
    id: str
    ok: bool
    error: Optional[str] = None
    status_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"id": self.id, "ok": self.ok}
        if self.error is not None:
            result["error"] = self.error
        if self.status_code is not None:
            result["statusCode"] = self.status_code
        return result


@dataclass
class BatchResult:
    """Per-item outcomes of a bulk run. Not transactional across items."""
    action: BulkAction
    results: List[ItemResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    @property
    def failed_ids(self) -> List[str]:
        return [r.id for r in self.results if not r.ok]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }

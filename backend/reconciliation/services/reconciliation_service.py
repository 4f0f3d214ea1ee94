"""
Reconciliation Service

Core business logic for resolving misfit transactions:
- Linking a credit to an existing care ticket
- Linking a transaction to a shipment
- Creating a care ticket from an unlinked credit
- Attributing a transaction to a brand (or the parent account)
- Moving a transaction into the disputes workflow
- Classifying the shipping portion of a pending credit

Every action runs in a single database transaction. Any failure rolls the
session back, so a failed action leaves the transaction's gaps untouched.
Ticket links use a conditional write backed by a unique index, so a ticket
claimed concurrently by another session is rejected with Conflict.
"""

import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Any, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reconciliation.errors import (
    ReconciliationError,
    ValidationFailed,
    NotFound,
    Conflict,
    StoreUnavailable,
)
from reconciliation.models import (
    Transaction,
    ResolvedGaps,
    CreateTicketResult,
    ClassifyCreditResult,
    ParentAbsorbed,
    attribution_for,
    to_decimal,
)
from reconciliation.registry import (
    ReferenceType,
    TicketStatus,
    DisputeStatus,
    ClassifyMode,
    FeeType,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    SUGGESTIONS_COMPUTED = "reconciliation.suggestions_computed"
    TICKET_CONNECTED = "reconciliation.ticket_connected"
    SHIPMENT_CONNECTED = "reconciliation.shipment_connected"
    TICKET_CREATED = "reconciliation.ticket_created"
    BRAND_SET = "reconciliation.brand_set"
    DISPUTED = "reconciliation.disputed"
    CREDIT_CLASSIFIED = "reconciliation.credit_classified"
    ACTION_FAILED = "reconciliation.action_failed"
    BULK_COMPLETED = "reconciliation.bulk_completed"


def log_reconciliation_event(
    event_type: str,
    transaction_id: Optional[str],
    details: Dict[str, Any],
    actor: str = "system"
):
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "transaction_id": transaction_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    if event_type == ReconciliationAuditEvent.ACTION_FAILED:
        logger.warning(f"Reconciliation event: {event_type}", extra=log_entry)
    else:
        logger.info(f"Reconciliation event: {event_type}", extra=log_entry)


def _cents(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def _utc_midnight(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


TRANSACTION_SELECT = """
    SELECT
        t.id, t.transaction_id, t.client_id, t.merchant_id,
        t.reference_id, t.reference_type, t.cost, t.currency_code,
        t.charge_date, t.fee_type, t.transaction_type, t.fulfillment_center,
        t.tracking_id, t.care_ticket_id, t.dispute_status, t.matched_credit_id,
        t.additional_details, t.invoice_id_jp, t.markup_is_preview,
        t.billed_amount, t.credit_shipping_portion,
        c.company_name
    FROM public.transactions t
    LEFT JOIN public.clients c ON c.id = t.client_id
"""

# Only these columns may be written by a link
LINK_COLUMNS = ("care_ticket_id", "client_id", "merchant_id", "reference_id", "reference_type")


class MisfitReconciliationService:
    """
    Reconciliation coordinator for a single transaction.

    Transactions are addressed by their stable external transaction_id.
    """

    def __init__(
        self,
        db: AsyncSession,
        parent_client_id: Optional[str] = None,
        actor: str = "system"
    ):
        self.db = db
        self.parent_client_id = parent_client_id
        self.actor = actor

    # ==================== Actions ====================

    async def connect_ticket(self, transaction_id: str, ticket_id: str) -> ResolvedGaps:
        """
        Link a transaction to an existing care ticket.

        Fills the brand from the ticket when the transaction has none and
        the shipment reference when the transaction has no usable one.

        Returns:
            The gaps this call closed
        """
        if not ticket_id:
            raise ValidationFailed("careTicketId is required")

        async with self._mutation("connect_ticket", transaction_id):
            tx = await self._get_transaction(transaction_id)
            if tx.care_ticket_id:
                raise Conflict("Transaction already linked to a ticket")

            ticket = await self._get_ticket(ticket_id)
            if ticket is None:
                raise NotFound("Care ticket not found")

            update: Dict[str, Any] = {"care_ticket_id": ticket["id"]}
            resolved = ResolvedGaps(ticket=True)

            if ticket["client_id"] and not tx.client_id:
                update["client_id"] = str(ticket["client_id"])
                resolved.brand = True

            if ticket["shipment_id"] and not tx.has_usable_reference:
                update["reference_id"] = ticket["shipment_id"]
                update["reference_type"] = ReferenceType.SHIPMENT.value
                resolved.shipment = True

            await self._write_link(tx, update)

        log_reconciliation_event(
            ReconciliationAuditEvent.TICKET_CONNECTED,
            transaction_id,
            {"ticket_id": ticket_id, "resolved": resolved.to_dict()},
            actor=self.actor
        )
        return resolved

    async def connect_shipment(self, transaction_id: str, shipment_id: str) -> ResolvedGaps:
        """
        Link a transaction to a shipment.

        Fills the brand from the shipment's client and, for transactions
        without a ticket, links the oldest unclaimed ticket tagged with
        the same shipment.
        """
        shipment_id = (shipment_id or "").strip()
        if not shipment_id:
            raise ValidationFailed("shipmentId is required")

        async with self._mutation("connect_shipment", transaction_id):
            tx = await self._get_transaction(transaction_id)

            result = await self.db.execute(
                text("""
                    SELECT shipment_id, client_id
                    FROM public.shipments
                    WHERE shipment_id = :shipment_id
                """),
                {"shipment_id": shipment_id}
            )
            shipment = result.mappings().first()
            if shipment is None:
                raise NotFound(f"Shipment {shipment_id} not found")

            update: Dict[str, Any] = {
                "reference_id": shipment["shipment_id"],
                "reference_type": ReferenceType.SHIPMENT.value,
            }
            resolved = ResolvedGaps(shipment=not tx.has_usable_reference)

            if shipment["client_id"] and not tx.client_id:
                update["client_id"] = str(shipment["client_id"])
                resolved.brand = True

            if not tx.care_ticket_id:
                ticket_result = await self.db.execute(
                    text("""
                        SELECT ct.id
                        FROM public.care_tickets ct
                        WHERE ct.shipment_id = :shipment_id
                        AND ct.deleted_at IS NULL
                        AND NOT EXISTS (
                            SELECT 1 FROM public.transactions lt
                            WHERE lt.care_ticket_id = ct.id
                        )
                        ORDER BY ct.created_at ASC
                        LIMIT 1
                    """),
                    {"shipment_id": shipment["shipment_id"]}
                )
                ticket_row = ticket_result.mappings().first()
                if ticket_row:
                    update["care_ticket_id"] = str(ticket_row["id"])
                    resolved.ticket = True

            if "care_ticket_id" in update:
                await self._write_link(tx, update)
            else:
                await self._write_fields(tx, update)

        log_reconciliation_event(
            ReconciliationAuditEvent.SHIPMENT_CONNECTED,
            transaction_id,
            {"shipment_id": shipment_id, "resolved": resolved.to_dict()},
            actor=self.actor
        )
        return resolved

    async def create_ticket(
        self,
        transaction_id: str,
        shipment_id: Optional[str] = None,
        description: Optional[str] = None
    ) -> CreateTicketResult:
        """
        Create a care ticket from an unlinked credit and link it.

        The ticket carries the credit's brand and absolute amount and is
        backdated to the charge date. When the credit already sits on an
        issued invoice the billing period is closed and the ticket is
        created Resolved ("auto-resolved").
        """
        async with self._mutation("create_ticket", transaction_id):
            tx = await self._get_transaction(transaction_id)
            if not tx.is_credit:
                raise ValidationFailed("Only credits can be turned into tickets")
            if tx.care_ticket_id:
                raise Conflict("Transaction already linked to a ticket")

            ticket_shipment_id = (shipment_id or "").strip() or (
                tx.reference_id if tx.has_shipment_reference else None
            )
            created_at = (
                _utc_midnight(tx.charge_date) if tx.charge_date
                else datetime.now(timezone.utc)
            )

            invoice_date = await self._get_invoice_date(tx.invoice_id) if tx.invoice_id else None
            auto_resolved = invoice_date is not None

            events: List[Dict[str, Any]] = []
            if auto_resolved:
                events.append({
                    "status": TicketStatus.RESOLVED.value,
                    "note": f"Credit already invoiced on {tx.invoice_id}. Auto-resolved.",
                    "createdAt": _utc_midnight(invoice_date).isoformat(),
                    "createdBy": "System",
                })
            events.append({
                "status": TicketStatus.CREDIT_APPROVED.value,
                "note": "Ticket created from unlinked carrier credit.",
                "createdAt": created_at.isoformat(),
                "createdBy": self.actor,
            })

            status = TicketStatus.RESOLVED if auto_resolved else TicketStatus.CREDIT_APPROVED

            insert = await self.db.execute(
                text("""
                    INSERT INTO public.care_tickets (
                        id, ticket_type, issue_type, status,
                        client_id, shipment_id, credit_amount, currency,
                        description, events, created_by,
                        created_at, updated_at, resolved_at
                    ) VALUES (
                        :id, 'Claim', 'Credit', :status,
                        :client_id, :shipment_id, :credit_amount, :currency,
                        :description, :events, :created_by,
                        :created_at, NOW(), :resolved_at
                    )
                    RETURNING id, ticket_number
                """),
                {
                    "id": str(uuid.uuid4()),
                    "status": status.value,
                    "client_id": tx.client_id,
                    "shipment_id": ticket_shipment_id,
                    "credit_amount": tx.abs_cost,
                    "currency": tx.currency_code,
                    "description": (description or "").strip() or None,
                    "events": json.dumps(events),
                    "created_by": self.actor,
                    "created_at": created_at,
                    "resolved_at": _utc_midnight(invoice_date) if auto_resolved else None,
                }
            )
            new_ticket = insert.mappings().first()
            if new_ticket is None:
                raise StoreUnavailable("Failed to create ticket")

            update: Dict[str, Any] = {"care_ticket_id": str(new_ticket["id"])}
            resolved = ResolvedGaps(ticket=True)
            if ticket_shipment_id and not tx.has_usable_reference:
                update["reference_id"] = ticket_shipment_id
                update["reference_type"] = ReferenceType.SHIPMENT.value
                resolved.shipment = True

            await self._write_link(tx, update)

        result = CreateTicketResult(
            ticket_id=str(new_ticket["id"]),
            ticket_number=new_ticket["ticket_number"],
            auto_resolved=auto_resolved,
            status=status.value,
            resolved=resolved
        )
        log_reconciliation_event(
            ReconciliationAuditEvent.TICKET_CREATED,
            transaction_id,
            {
                "ticket_number": result.ticket_number,
                "auto_resolved": auto_resolved,
                "invoice": tx.invoice_id,
            },
            actor=self.actor
        )
        return result

    async def set_brand(
        self,
        transaction_id: str,
        client_id: str,
        confirm_parent: bool = False
    ) -> ResolvedGaps:
        """
        Attribute a transaction to a brand.

        Attribution to the parent account absorbs the cost instead of
        passing it through, so it must be confirmed explicitly.
        """
        if not client_id:
            raise ValidationFailed("clientId is required")

        attribution = attribution_for(client_id, self.parent_client_id)
        if isinstance(attribution, ParentAbsorbed) and not confirm_parent:
            raise ValidationFailed(
                "Attributing to the parent account absorbs the cost and must be confirmed"
            )

        async with self._mutation("set_brand", transaction_id):
            tx = await self._get_transaction(transaction_id)

            result = await self.db.execute(
                text("SELECT id, merchant_id FROM public.clients WHERE id = :client_id"),
                {"client_id": client_id}
            )
            client = result.mappings().first()
            if client is None:
                raise ValidationFailed(f"Unknown brand: {client_id}")

            update: Dict[str, Any] = {"client_id": str(client["id"])}
            if client["merchant_id"]:
                update["merchant_id"] = client["merchant_id"]

            await self._write_fields(tx, update)

        resolved = ResolvedGaps(brand=tx.missing_brand)
        log_reconciliation_event(
            ReconciliationAuditEvent.BRAND_SET,
            transaction_id,
            {
                "client_id": client_id,
                "parent_absorbed": isinstance(attribution, ParentAbsorbed),
                "previous_client_id": tx.client_id,
            },
            actor=self.actor
        )
        return resolved

    async def dispute(self, transaction_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """
        Move a transaction into the disputes workflow.

        Only dispute fields are written; brand, shipment and ticket links
        are left as they are.
        """
        async with self._mutation("dispute", transaction_id):
            tx = await self._get_transaction(transaction_id)
            if tx.dispute_status == DisputeStatus.CREDITED.value:
                raise Conflict("Transaction dispute is already settled")

            result = await self.db.execute(
                text("""
                    UPDATE public.transactions
                    SET
                        dispute_status = :status,
                        dispute_reason = COALESCE(:reason, dispute_reason),
                        dispute_created_at = COALESCE(dispute_created_at, NOW()),
                        updated_at = NOW()
                    WHERE id = :id
                    RETURNING dispute_status
                """),
                {
                    "id": tx.id,
                    "status": DisputeStatus.DISPUTED.value,
                    "reason": reason,
                }
            )
            if result.mappings().first() is None:
                raise NotFound("Transaction not found")

        log_reconciliation_event(
            ReconciliationAuditEvent.DISPUTED,
            transaction_id,
            {"previous_status": tx.dispute_status, "reason": reason},
            actor=self.actor
        )
        return {
            "transactionId": transaction_id,
            "disputeStatus": DisputeStatus.DISPUTED.value,
        }

    async def classify_credit(
        self,
        transaction_id: str,
        mode: ClassifyMode,
        shipping_portion: Optional[Decimal] = None
    ) -> ClassifyCreditResult:
        """
        Classify the shipping portion of a pending credit and compute its
        billed amount.

        The shipping portion is marked up with the brand's active shipping
        markup rule, falling back to the markup of the original shipping
        charge. The item portion passes through at cost. When the credit is
        linked to a ticket, the ticket amount follows the billed amount.
        """
        if mode == ClassifyMode.SET_PORTION and (shipping_portion is None or shipping_portion < 0):
            raise ValidationFailed(
                "shippingPortion must be a non-negative number for set_portion action"
            )

        async with self._mutation("classify_credit", transaction_id):
            tx = await self._get_transaction(transaction_id)
            if not tx.is_credit:
                raise ValidationFailed("Transaction is not a Credit")

            abs_cost = tx.abs_cost
            markup = Decimal("0")
            markup_rule_id = None
            if mode != ClassifyMode.NO_MARKUP:
                markup, markup_rule_id = await self._get_shipping_markup(tx)

            if mode == ClassifyMode.NO_MARKUP:
                portion = Decimal("0")
                billed = tx.cost
                markup_amount = Decimal("0")
            elif mode == ClassifyMode.MARKUP_ALL:
                portion = abs_cost
                billed = -(abs_cost * (1 + markup))
                markup_amount = -(abs_cost * markup)
            else:
                portion = to_decimal(shipping_portion)
                if portion > abs_cost:
                    raise ValidationFailed("Shipping portion cannot exceed credit amount")
                billed = -(portion * (1 + markup) + (abs_cost - portion))
                markup_amount = -(portion * markup)

            classified = ClassifyCreditResult(
                billed_amount=_cents(billed),
                markup_applied=_cents(markup_amount),
                credit_shipping_portion=_cents(portion),
                markup_percentage=markup
            )

            await self.db.execute(
                text("""
                    UPDATE public.transactions
                    SET
                        credit_shipping_portion = :portion,
                        billed_amount = :billed_amount,
                        markup_applied = :markup_applied,
                        markup_percentage = :markup_percentage,
                        markup_rule_id = :markup_rule_id,
                        markup_is_preview = true,
                        updated_at = NOW()
                    WHERE id = :id
                """),
                {
                    "id": tx.id,
                    "portion": classified.credit_shipping_portion,
                    "billed_amount": classified.billed_amount,
                    "markup_applied": classified.markup_applied,
                    "markup_percentage": classified.markup_percentage,
                    "markup_rule_id": markup_rule_id,
                }
            )

            if tx.care_ticket_id:
                await self._sync_ticket_amount(tx.care_ticket_id, abs(classified.billed_amount))

        log_reconciliation_event(
            ReconciliationAuditEvent.CREDIT_CLASSIFIED,
            transaction_id,
            {"mode": mode.value, **classified.to_dict()},
            actor=self.actor
        )
        return classified

    # ==================== Private Methods ====================

    @asynccontextmanager
    async def _mutation(self, action: str, transaction_id: str):
        """Run an action as one unit: commit on success, roll back on any failure."""
        try:
            yield
            await self.db.commit()
        except ReconciliationError as e:
            await self.db.rollback()
            self._log_failure(action, transaction_id, e)
            raise
        except IntegrityError as e:
            await self.db.rollback()
            error = Conflict("Ticket is already linked to another transaction")
            self._log_failure(action, transaction_id, error)
            raise error from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Reconciliation {action} failed for {transaction_id}: {e}")
            error = StoreUnavailable("Failed to update transaction")
            self._log_failure(action, transaction_id, error)
            raise error from e

    def _log_failure(self, action: str, transaction_id: str, error: ReconciliationError):
        log_reconciliation_event(
            ReconciliationAuditEvent.ACTION_FAILED,
            transaction_id,
            {"action": action, "error": error.message, "status_code": error.status_code},
            actor=self.actor
        )

    async def _get_transaction(self, transaction_id: str) -> Transaction:
        """Load and lock a transaction for the rest of the unit of work."""
        if not transaction_id:
            raise ValidationFailed("transactionId is required")

        result = await self.db.execute(
            text(TRANSACTION_SELECT + """
                WHERE t.transaction_id = :transaction_id
                FOR UPDATE OF t
            """),
            {"transaction_id": transaction_id}
        )
        row = result.mappings().first()
        if row is None:
            raise NotFound("Transaction not found")
        return Transaction.from_row(dict(row))

    async def _get_ticket(self, ticket_id: str) -> Optional[Dict[str, Any]]:
        result = await self.db.execute(
            text("""
                SELECT id, client_id, shipment_id, status, credit_amount
                FROM public.care_tickets
                WHERE id = :ticket_id
                AND deleted_at IS NULL
            """),
            {"ticket_id": ticket_id}
        )
        row = result.mappings().first()
        return dict(row) if row else None

    async def _get_invoice_date(self, invoice_number: str) -> Optional[date]:
        """Invoice date when the invoice exists, i.e. the billing period is closed."""
        result = await self.db.execute(
            text("""
                SELECT invoice_date
                FROM public.invoices_jetpack
                WHERE invoice_number = :invoice_number
            """),
            {"invoice_number": invoice_number}
        )
        row = result.mappings().first()
        if row is None or row["invoice_date"] is None:
            return None
        invoice_date = row["invoice_date"]
        if isinstance(invoice_date, datetime):
            return invoice_date.date()
        if isinstance(invoice_date, date):
            return invoice_date
        return date.fromisoformat(str(invoice_date)[:10])

    async def _write_link(self, tx: Transaction, update: Dict[str, Any]):
        """
        Conditionally link a ticket.

        Succeeds only while the transaction is unlinked and no other
        transaction references the ticket; the unique index on
        care_ticket_id catches anything that slips between the two.
        """
        assignments = ", ".join(f"{col} = :{col}" for col in LINK_COLUMNS if col in update)
        result = await self.db.execute(
            text(f"""
                UPDATE public.transactions
                SET {assignments}, updated_at = NOW()
                WHERE id = :id
                AND care_ticket_id IS NULL
                AND NOT EXISTS (
                    SELECT 1 FROM public.transactions other
                    WHERE other.care_ticket_id = :care_ticket_id
                )
                RETURNING id
            """),
            {"id": tx.id, **update}
        )
        if result.mappings().first() is None:
            raise Conflict("Ticket is already linked to another transaction")

    async def _write_fields(self, tx: Transaction, update: Dict[str, Any]):
        assignments = ", ".join(f"{col} = :{col}" for col in LINK_COLUMNS if col in update)
        result = await self.db.execute(
            text(f"""
                UPDATE public.transactions
                SET {assignments}, updated_at = NOW()
                WHERE id = :id
                RETURNING id
            """),
            {"id": tx.id, **update}
        )
        if result.mappings().first() is None:
            raise NotFound("Transaction not found")

    async def _get_shipping_markup(self, tx: Transaction):
        """Markup as a fraction (0.15 = 15%) and the rule it came from."""
        if not tx.client_id:
            return Decimal("0"), None

        result = await self.db.execute(
            text("""
                SELECT id, markup_value
                FROM public.markup_rules
                WHERE client_id = :client_id
                AND billing_category = 'shipping'
                AND is_active = true
                ORDER BY id DESC
                LIMIT 1
            """),
            {"client_id": tx.client_id}
        )
        rule = result.mappings().first()
        if rule and to_decimal(rule["markup_value"]) != 0:
            return to_decimal(rule["markup_value"]) / 100, str(rule["id"])

        if tx.reference_id:
            original = await self.db.execute(
                text("""
                    SELECT markup_percentage
                    FROM public.transactions
                    WHERE reference_id = :reference_id
                    AND fee_type = :fee_type
                    AND markup_percentage IS NOT NULL
                    LIMIT 1
                """),
                {"reference_id": tx.reference_id, "fee_type": FeeType.SHIPPING.value}
            )
            row = original.mappings().first()
            if row and row["markup_percentage"]:
                return to_decimal(row["markup_percentage"]), None

        return Decimal("0"), None

    async def _sync_ticket_amount(self, ticket_id: str, amount: Decimal):
        """Point the linked ticket at the billed amount; approve it if it was waiting."""
        result = await self.db.execute(
            text("SELECT status, events FROM public.care_tickets WHERE id = :id"),
            {"id": ticket_id}
        )
        ticket = result.mappings().first()
        if ticket is None:
            return

        params: Dict[str, Any] = {"id": ticket_id, "credit_amount": amount}
        status_clause = ""
        if ticket["status"] == TicketStatus.CREDIT_REQUESTED.value:
            events = ticket["events"] or []
            if isinstance(events, str):
                events = json.loads(events)
            approved = {
                "status": TicketStatus.CREDIT_APPROVED.value,
                "note": (
                    f"A credit of ${amount:.2f} has been approved and will "
                    "appear on your next invoice."
                ),
                "createdAt": datetime.now(timezone.utc).isoformat(),
                "createdBy": "System",
            }
            params["status"] = TicketStatus.CREDIT_APPROVED.value
            params["events"] = json.dumps([approved, *events])
            status_clause = ", status = :status, events = :events"

        await self.db.execute(
            text(f"""
                UPDATE public.care_tickets
                SET credit_amount = :credit_amount, updated_at = NOW(){status_clause}
                WHERE id = :id
            """),
            params
        )

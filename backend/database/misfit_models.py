"""
Misfits Reconciliation - Database Models

Tables read and written by the reconciliation engine.

Tables:
- clients: Brands billed for fulfillment activity
- shipments: Shipments known to the platform (shipment lookups only)
- transactions: Carrier billing ledger (misfits live here)
- care_tickets: Support tickets that may carry a credit owed to a brand
- invoices_jetpack: Issued invoices (closed billing periods)
- markup_rules: Per-client markup rules used to classify pending credits

A care ticket is linked to at most one transaction. The partial unique
index on transactions.care_ticket_id is the authoritative guard for that
across concurrent sessions.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, Boolean, Date, DateTime, Integer, Identity,
    ForeignKey, Index, JSON, Numeric, text
)

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ClientDB(Base):
    """A brand (client) that fulfillment activity is billed to."""
    __tablename__ = "clients"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    company_name = Column(String(255), nullable=False)
    merchant_id = Column(String(64), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)


class ShipmentDB(Base):
    """Shipment reference data, used to resolve shipment gaps."""
    __tablename__ = "shipments"

    shipment_id = Column(String(64), primary_key=True)
    client_id = Column(String(36), ForeignKey("clients.id"), nullable=True, index=True)
    tracking_id = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)


class CareTicketDB(Base):
    """
    Support-workflow ticket.

    Tickets in 'Credit Requested' or 'Credit Approved' that no transaction
    references yet form the pool offered to the matching engine.
    """
    __tablename__ = "care_tickets"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    ticket_number = Column(Integer, Identity(start=1000), unique=True, nullable=False)
    ticket_type = Column(String(50), nullable=False)
    issue_type = Column(String(50), nullable=True)
    status = Column(String(50), nullable=False, index=True)

    client_id = Column(String(36), ForeignKey("clients.id"), nullable=True, index=True)
    shipment_id = Column(String(64), nullable=True, index=True)

    credit_amount = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=False, default="USD")
    description = Column(Text, nullable=True)
    compensation_request = Column(Text, nullable=True)
    reshipment_status = Column(String(50), nullable=True)
    reshipment_id = Column(String(64), nullable=True)

    # Timeline, newest first: [{"status", "note", "createdAt", "createdBy"}]
    events = Column(JSON, nullable=True, default=list)

    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class InvoiceDB(Base):
    """An issued invoice. A transaction carrying its number is in a closed period."""
    __tablename__ = "invoices_jetpack"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    invoice_number = Column(String(64), unique=True, nullable=False)
    client_id = Column(String(36), ForeignKey("clients.id"), nullable=True, index=True)
    invoice_date = Column(Date, nullable=False)


class MarkupRuleDB(Base):
    """Markup applied on top of carrier cost for a billing category."""
    __tablename__ = "markup_rules"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    client_id = Column(String(36), ForeignKey("clients.id"), nullable=True, index=True)
    billing_category = Column(String(50), nullable=False)
    markup_value = Column(Numeric(6, 2), nullable=False, default=0)  # percent
    is_active = Column(Boolean, nullable=False, default=True)


class BillingTransactionDB(Base):
    """
    Carrier billing transaction.

    Contains:
    - Raw ledger data as ingested from the carrier
    - Attribution fields (client, reference, care ticket)
    - Dispute workflow fields
    - Pending-credit classification fields
    """
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    transaction_id = Column(String(64), unique=True, nullable=False)

    # Attribution
    client_id = Column(String(36), ForeignKey("clients.id"), nullable=True, index=True)
    merchant_id = Column(String(64), nullable=True)
    reference_id = Column(String(64), nullable=True, index=True)
    reference_type = Column(String(50), nullable=True)
    care_ticket_id = Column(String(36), ForeignKey("care_tickets.id"), nullable=True)

    # Ledger data
    cost = Column(Numeric(12, 2), nullable=False)
    currency_code = Column(String(3), nullable=False, default="USD")
    charge_date = Column(Date, nullable=True, index=True)
    fee_type = Column(String(50), nullable=False, index=True)
    transaction_type = Column(String(50), nullable=True)
    fulfillment_center = Column(String(100), nullable=True)
    tracking_id = Column(String(128), nullable=True)
    invoice_id_jp = Column(String(64), nullable=True)
    is_voided = Column(Boolean, nullable=False, default=False)

    # {"Comment": ..., "CreditReason": ..., "TicketReference": ...}
    additional_details = Column(JSON, nullable=True)

    # Dispute workflow
    dispute_status = Column(String(20), nullable=True, index=True)
    dispute_reason = Column(Text, nullable=True)
    dispute_created_at = Column(DateTime(timezone=True), nullable=True)
    matched_credit_id = Column(String(64), nullable=True)

    # Pending credit classification
    markup_is_preview = Column(Boolean, nullable=False, default=False)
    billed_amount = Column(Numeric(12, 2), nullable=True)
    markup_applied = Column(Numeric(12, 2), nullable=True)
    markup_percentage = Column(Numeric(8, 4), nullable=True)
    markup_rule_id = Column(String(36), nullable=True)
    credit_shipping_portion = Column(Numeric(12, 2), nullable=True)

    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index(
            'uq_transactions_care_ticket',
            'care_ticket_id',
            unique=True,
            postgresql_where=text('care_ticket_id IS NOT NULL'),
        ),
        Index('ix_transactions_fee_ticket', 'fee_type', 'care_ticket_id'),
        Index('ix_transactions_charge_date_desc', text('charge_date DESC')),
    )

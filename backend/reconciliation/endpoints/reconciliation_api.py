"""
Misfits Reconciliation API Endpoints

REST API for reconciling misfit transactions:
- GET /api/misfits - Feed page, eligible tickets and ticket suggestions
- POST /api/misfits/connect - Link a ticket/shipment, create a ticket or set the brand
- POST /api/misfits/classify-credit - Classify the shipping portion of a pending credit
- POST /api/transactions/{transaction_id}/link - Attribute one transaction to a brand
- POST /api/transactions/{transaction_id}/dispute - Dispute one transaction
- POST /api/misfits/bulk - Attribute or dispute a selection, per-item results
- GET /api/misfits/status - Module status

Errors are raised as ReconciliationError and rendered by the application
as {"error": message}.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings, get_settings
from database.connection import get_db, get_session_factory
from reconciliation.errors import ReconciliationError, ValidationFailed
from reconciliation.matching_rules import TicketMatchingRules
from reconciliation.models import FeedQuery
from reconciliation.registry import (
    MisfitFilter,
    ReconcileAction,
    BulkAction,
    ClassifyMode,
    ELIGIBLE_TICKET_STATUSES,
    rule_registry,
)
from reconciliation.services.bulk_service import BulkReconciliationService
from reconciliation.services.feed_service import MisfitFeedService
from reconciliation.services.reconciliation_service import MisfitReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Misfits Reconciliation"])


# ==================== Request Models ====================

class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ConnectRequest(CamelModel):
    """Single-transaction reconciliation action."""
    transaction_id: str = Field(..., alias="transactionId")
    action: str = Field(..., description="connect_ticket, connect_shipment, create_ticket or set_brand")
    care_ticket_id: Optional[str] = Field(default=None, alias="careTicketId")
    shipment_id: Optional[str] = Field(default=None, alias="shipmentId")
    client_id: Optional[str] = Field(default=None, alias="clientId")
    description: Optional[str] = None
    confirm_parent: bool = Field(default=False, alias="confirmParent")


class ClassifyCreditRequest(CamelModel):
    """Shipping-portion classification of a pending credit."""
    transaction_id: str = Field(..., alias="transactionId")
    action: str = Field(..., description="no_markup, markup_all or set_portion")
    shipping_portion: Optional[float] = Field(default=None, alias="shippingPortion")


class LinkBrandRequest(CamelModel):
    """Brand attribution of a single transaction."""
    client_id: Optional[str] = Field(default=None, alias="clientId")
    confirm_parent: bool = Field(default=False, alias="confirmParent")


class DisputeRequest(CamelModel):
    reason: Optional[str] = None


class BulkRequest(CamelModel):
    """Bulk attribution or dispute over a selection."""
    action: str = Field(..., description="attribute or dispute")
    transaction_ids: List[str] = Field(..., alias="transactionIds")
    client_id: Optional[str] = Field(default=None, alias="clientId")
    confirm_parent: bool = Field(default=False, alias="confirmParent")
    reason: Optional[str] = None


# ==================== Helpers ====================

def _parse_enum(enum_cls, value: Optional[str], name: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationFailed(
            f"Invalid {name}. Valid values: {[e.value for e in enum_cls]}"
        )


def _coordinator(db: AsyncSession, settings: Settings, actor: Optional[str]) -> MisfitReconciliationService:
    return MisfitReconciliationService(
        db,
        parent_client_id=settings.PARENT_CLIENT_ID,
        actor=actor or "system"
    )


# ==================== Endpoints ====================

@router.get("/misfits/status", summary="Module status")
async def get_module_status():
    """
    Get misfits reconciliation module status.

    Returns the match rules and their constants.
    """
    return {
        "module": "misfits_reconciliation",
        "status": "operational",
        "version": "1.0.0",
        "match_rules": [cfg.to_dict() for cfg in rule_registry.get_rules_in_order()],
        "amount_tolerance": float(TicketMatchingRules.AMOUNT_TOLERANCE),
        "date_window_days": TicketMatchingRules.DATE_WINDOW.days,
        "eligible_ticket_statuses": [s.value for s in ELIGIBLE_TICKET_STATUSES],
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/misfits", summary="List misfit transactions")
async def list_misfits(
    limit: Optional[int] = Query(None, ge=1, le=500),
    offset: int = Query(0, ge=0),
    filter_type: Optional[str] = Query(None, alias="type", description="credit, unattributed or pending_credits"),
    fee_type: Optional[str] = Query(None, alias="feeType"),
    reference_type: Optional[str] = Query(None, alias="referenceType"),
    search: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings)
):
    """
    List transactions missing a brand, shipment or ticket.

    Includes the tickets still available for linking and one suggested
    ticket per unlinked credit, computed over this page in feed order.
    """
    query = FeedQuery(
        limit=limit or settings.MISFITS_DEFAULT_LIMIT,
        offset=offset,
        filter_type=(
            _parse_enum(MisfitFilter, filter_type, "type")
            if filter_type and filter_type != "all" else None
        ),
        fee_type=fee_type if fee_type and fee_type != "all" else None,
        reference_type=reference_type if reference_type and reference_type != "all" else None,
        search=search
    )

    service = MisfitFeedService(
        db,
        merge_limit=settings.MISFITS_MERGE_LIMIT,
        ticket_pool_limit=settings.TICKET_POOL_LIMIT
    )
    page = await service.fetch(query)
    suggestions = service.suggest(page)

    return {
        **page.to_dict(),
        "suggestions": {tx_id: s.to_dict() for tx_id, s in suggestions.items()},
    }


@router.post("/misfits/connect", summary="Reconcile a single transaction")
async def connect_misfit(
    request: ConnectRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id")
):
    """
    Apply one reconciliation action to a transaction.

    - connect_ticket: link an existing ticket (careTicketId)
    - connect_shipment: link a shipment (shipmentId)
    - create_ticket: create and link a ticket from the credit
    - set_brand: attribute to a brand (clientId, confirmParent for the parent account)
    """
    action = _parse_enum(ReconcileAction, request.action, "action")
    service = _coordinator(db, settings, x_user_id)

    if action == ReconcileAction.CONNECT_TICKET:
        if not request.care_ticket_id:
            raise ValidationFailed("careTicketId is required for connect_ticket")
        resolved = await service.connect_ticket(request.transaction_id, request.care_ticket_id)
        return {"success": True, "resolved": resolved.to_dict()}

    if action == ReconcileAction.CONNECT_SHIPMENT:
        if not request.shipment_id:
            raise ValidationFailed("shipmentId is required for connect_shipment")
        resolved = await service.connect_shipment(request.transaction_id, request.shipment_id)
        return {"success": True, "resolved": resolved.to_dict()}

    if action == ReconcileAction.CREATE_TICKET:
        result = await service.create_ticket(
            request.transaction_id,
            shipment_id=request.shipment_id,
            description=request.description
        )
        return {"success": True, **result.to_dict()}

    if not request.client_id:
        raise ValidationFailed("clientId is required for set_brand")
    resolved = await service.set_brand(
        request.transaction_id,
        request.client_id,
        confirm_parent=request.confirm_parent
    )
    return {"success": True, "resolved": resolved.to_dict()}


@router.post("/misfits/classify-credit", summary="Classify a pending credit")
async def classify_credit(
    request: ClassifyCreditRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id")
):
    """Compute the billed amount of a pending credit from its shipping portion."""
    mode = _parse_enum(ClassifyMode, request.action, "action")
    shipping_portion = None
    if request.shipping_portion is not None:
        shipping_portion = Decimal(str(request.shipping_portion))

    result = await _coordinator(db, settings, x_user_id).classify_credit(
        request.transaction_id, mode, shipping_portion
    )
    return {"success": True, **result.to_dict()}


@router.post("/transactions/{transaction_id}/link", summary="Attribute a transaction to a brand")
async def link_transaction(
    transaction_id: str,
    request: LinkBrandRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id")
):
    if not request.client_id:
        raise ValidationFailed("clientId is required")
    resolved = await _coordinator(db, settings, x_user_id).set_brand(
        transaction_id, request.client_id, confirm_parent=request.confirm_parent
    )
    return {"success": True, "resolved": resolved.to_dict()}


@router.post("/transactions/{transaction_id}/dispute", summary="Dispute a transaction")
async def dispute_transaction(
    transaction_id: str,
    request: Optional[DisputeRequest] = None,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id")
):
    reason = request.reason if request else None
    result = await _coordinator(db, settings, x_user_id).dispute(transaction_id, reason)
    return {"success": True, **result}


@router.post("/misfits/bulk", summary="Bulk attribute or dispute")
async def bulk_apply(
    request: BulkRequest,
    settings: Settings = Depends(get_settings),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id")
):
    """
    Apply an action to every selected transaction.

    Items are independent: each runs in its own database transaction and
    reports its own outcome. Retry only the failed ids.
    """
    action = _parse_enum(BulkAction, request.action, "action")
    service = BulkReconciliationService(
        session_factory,
        parent_client_id=settings.PARENT_CLIENT_ID,
        max_concurrency=settings.BULK_MAX_CONCURRENCY,
        actor=x_user_id or "system"
    )
    try:
        result = await service.apply(
            action,
            request.transaction_ids,
            client_id=request.client_id,
            confirm_parent=request.confirm_parent,
            reason=request.reason
        )
    except ReconciliationError:
        raise
    except Exception as e:
        logger.error(f"Bulk {action.value} failed: {e}")
        raise ReconciliationError("Bulk operation failed")

    return result.to_dict()

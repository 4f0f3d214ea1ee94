"""
Misfits Reconciliation Module

Resolves billing transactions that arrive without a brand, a shipment or
a care ticket ("misfits"):
- Ticket suggestions for unlinked credits (shipment, brand + amount + date, brand + amount)
- Single-transaction actions that link, create, attribute and dispute
- Bulk attribution and dispute with per-item results
- Async HTTP client for batch callers
"""

from reconciliation.registry import (
    FeeType,
    ReferenceType,
    TicketStatus,
    MisfitFilter,
    ReconcileAction,
    BulkAction,
    ClassifyMode,
    Confidence,
    DisputeStatus,
    MatchRule,
    MatchRuleRegistry,
    rule_registry
)
from reconciliation.errors import (
    ReconciliationError,
    ValidationFailed,
    NotFound,
    Conflict,
    StoreUnavailable
)
from reconciliation.models import (
    Transaction,
    Ticket,
    Suggestion,
    FeedQuery,
    FeedPage,
    ResolvedGaps,
    CreateTicketResult,
    Brand,
    ParentAbsorbed,
    ItemResult,
    BatchResult
)
from reconciliation.matching_rules import TicketMatchingRules, ticket_rules
from reconciliation.services.reconciliation_service import MisfitReconciliationService
from reconciliation.services.feed_service import MisfitFeedService
from reconciliation.services.bulk_service import BulkOperationExecutor, BulkReconciliationService
from reconciliation.client import ReconciliationClient
from reconciliation.endpoints.reconciliation_api import router as reconciliation_router

__all__ = [
    # Registry
    'FeeType',
    'ReferenceType',
    'TicketStatus',
    'MisfitFilter',
    'ReconcileAction',
    'BulkAction',
    'ClassifyMode',
    'Confidence',
    'DisputeStatus',
    'MatchRule',
    'MatchRuleRegistry',
    'rule_registry',
    # Errors
    'ReconciliationError',
    'ValidationFailed',
    'NotFound',
    'Conflict',
    'StoreUnavailable',
    # Data contracts
    'Transaction',
    'Ticket',
    'Suggestion',
    'FeedQuery',
    'FeedPage',
    'ResolvedGaps',
    'CreateTicketResult',
    'Brand',
    'ParentAbsorbed',
    'ItemResult',
    'BatchResult',
    # Matching Rules
    'TicketMatchingRules',
    'ticket_rules',
    # Services
    'MisfitReconciliationService',
    'MisfitFeedService',
    'BulkOperationExecutor',
    'BulkReconciliationService',
    # Client
    'ReconciliationClient',
    # Router
    'reconciliation_router'
]

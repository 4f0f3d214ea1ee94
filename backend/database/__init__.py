from .connection import get_db, get_engine, get_session_factory, init_db, Base

# Import misfit models to ensure they are registered with Base
from .misfit_models import (
    ClientDB, ShipmentDB, CareTicketDB, InvoiceDB, MarkupRuleDB, BillingTransactionDB
)

__all__ = [
    'get_db', 'get_engine', 'get_session_factory', 'init_db', 'Base',
    'ClientDB', 'ShipmentDB', 'CareTicketDB', 'InvoiceDB', 'MarkupRuleDB',
    'BillingTransactionDB',
]

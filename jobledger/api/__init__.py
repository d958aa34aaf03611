from jobledger.api.invoices import router as invoices_router
from jobledger.api.locks import router as locks_router
from jobledger.api.draws import router as draws_router
from jobledger.api.funding_sources import router as funding_sources_router
from jobledger.api.reconciliation import router as reconciliation_router
from jobledger.api.undo import router as undo_router

__all__ = [
    "invoices_router",
    "locks_router",
    "draws_router",
    "funding_sources_router",
    "reconciliation_router",
    "undo_router",
]

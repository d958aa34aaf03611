# Lazy imports to avoid dependency chains at startup
def __getattr__(name):
    if name == "InvoiceWorkflowService":
        from jobledger.services.invoice_workflow import InvoiceWorkflowService
        return InvoiceWorkflowService
    elif name == "InvoiceSplitService":
        from jobledger.services.invoice_split import InvoiceSplitService
        return InvoiceSplitService
    elif name == "DrawService":
        from jobledger.services.draws import DrawService
        return DrawService
    elif name == "LockManager":
        from jobledger.services.locking import LockManager
        return LockManager
    elif name == "FundingSourceResolver":
        from jobledger.services.funding_sources import FundingSourceResolver
        return FundingSourceResolver
    elif name == "ReconciliationEngine":
        from jobledger.services.reconciliation import ReconciliationEngine
        return ReconciliationEngine
    elif name == "UndoService":
        from jobledger.services.undo import UndoService
        return UndoService
    elif name == "AllocationBalancer":
        from jobledger.services.allocations import AllocationBalancer
        return AllocationBalancer
    raise AttributeError(f"module 'jobledger.services' has no attribute '{name}'")

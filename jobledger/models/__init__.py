from jobledger.models.base import JLBaseModel
from jobledger.models.requests import (
    AllocationPayload,
    BalanceRequest,
    ChangeOrderBillingRequest,
    CloseOutRequest,
    CreateInvoiceRequest,
    FieldHintPayload,
    FinalizeDrawRequest,
    ForceReleaseRequest,
    FundingSourcesRequest,
    LockRequest,
    SaveInvoiceRequest,
    SplitEntryPayload,
    SplitRequest,
    TransitionRequest,
    UndoRequest,
    UnsplitRequest,
)

__all__ = [
    "JLBaseModel",
    "AllocationPayload",
    "BalanceRequest",
    "ChangeOrderBillingRequest",
    "CloseOutRequest",
    "CreateInvoiceRequest",
    "FieldHintPayload",
    "FinalizeDrawRequest",
    "ForceReleaseRequest",
    "FundingSourcesRequest",
    "LockRequest",
    "SaveInvoiceRequest",
    "SplitEntryPayload",
    "SplitRequest",
    "TransitionRequest",
    "UndoRequest",
    "UnsplitRequest",
]

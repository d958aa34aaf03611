"""API request models."""
from typing import Any, Dict, List, Optional, Union

from pydantic import Field

from jobledger.models.base import JLBaseModel

# Currency text ("$1,250.00") or a plain number; parsed by money.parse_amount
AmountInput = Union[str, int, float, None]


class AllocationPayload(JLBaseModel):
    cost_code_id: Optional[str] = None
    amount: AmountInput = None
    po_id: Optional[str] = None
    change_order_id: Optional[str] = None
    notes: Optional[str] = None
    provenance: str = "manual"


class FieldHintPayload(JLBaseModel):
    field_name: str = Field(..., min_length=1)
    suggested_value: Any = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class CreateInvoiceRequest(JLBaseModel):
    performed_by: Optional[str] = None
    vendor_id: Optional[str] = None
    job_id: Optional[str] = None
    amount: AmountInput = None
    invoice_number: Optional[str] = None
    invoice_date: Optional[str] = None
    due_date: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[str] = None
    allocations: List[AllocationPayload] = Field(default_factory=list)
    hints: List[FieldHintPayload] = Field(default_factory=list)


class SaveInvoiceRequest(JLBaseModel):
    performed_by: str = Field(..., min_length=1)
    expected_version: int = Field(..., ge=1)
    fields: Dict[str, Any] = Field(default_factory=dict)
    allocations: Optional[List[AllocationPayload]] = None
    target_status: Optional[str] = None
    reason: Optional[str] = None
    override_po_overage: bool = False
    unlock: bool = False


class TransitionRequest(JLBaseModel):
    performed_by: str = Field(..., min_length=1)
    target_status: str = Field(..., min_length=1)
    expected_version: Optional[int] = Field(default=None, ge=1)
    reason: Optional[str] = None
    override_po_overage: bool = False
    partial_approval_note: Optional[str] = None


class CloseOutRequest(JLBaseModel):
    performed_by: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    notes: Optional[str] = None
    expected_version: Optional[int] = Field(default=None, ge=1)


class SplitEntryPayload(JLBaseModel):
    job_id: Optional[str] = None
    amount: AmountInput = None
    notes: Optional[str] = None


class SplitRequest(JLBaseModel):
    performed_by: str = Field(..., min_length=1)
    splits: List[SplitEntryPayload] = Field(default_factory=list)
    expected_version: Optional[int] = Field(default=None, ge=1)


class UnsplitRequest(JLBaseModel):
    performed_by: str = Field(..., min_length=1)
    expected_version: Optional[int] = Field(default=None, ge=1)


class BalanceRequest(JLBaseModel):
    """Run one balancer operation against a proposed allocation list."""
    operation: str = Field(..., pattern="^(fill_remaining|split_evenly|set_amount|percentage_of|remove|summary)$")
    allocations: List[AllocationPayload] = Field(default_factory=list)
    index: int = Field(default=0, ge=0)
    value: AmountInput = None


class LockRequest(JLBaseModel):
    holder: str = Field(..., min_length=1)


class ForceReleaseRequest(JLBaseModel):
    admin: str = Field(..., min_length=1)


class FinalizeDrawRequest(JLBaseModel):
    performed_by: str = Field(..., min_length=1)


class ChangeOrderBillingRequest(JLBaseModel):
    change_order_id: str = Field(..., min_length=1)
    amount: AmountInput = None


class FundingSourcesRequest(JLBaseModel):
    """Funding sources as seen from an in-progress edit."""
    editing_invoice_id: Optional[str] = None
    allocations: List[AllocationPayload] = Field(default_factory=list)


class UndoRequest(JLBaseModel):
    performed_by: Optional[str] = None

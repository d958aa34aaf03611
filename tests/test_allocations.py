from decimal import Decimal

import pytest

from jobledger.services.allocations import (
    FULLY_ALLOCATED,
    OVER_ALLOCATED,
    UNDER_ALLOCATED,
    AllocationBalancer,
    AllocationLine,
    allocation_cap,
)
from jobledger.services.errors import StateViolationError, ValidationError


def _balancer(cap, *amounts, frozen=False):
    return AllocationBalancer(
        cap=Decimal(cap),
        lines=[AllocationLine(cost_code_id=f"CC-{i}", amount=Decimal(a)) for i, a in enumerate(amounts)],
        frozen=frozen,
    )


def test_fill_remaining_completes_the_invoice():
    balancer = _balancer("10000.00", "6000.00", "3000.00")

    assert balancer.fill_remaining(1) == Decimal("4000.00")
    summary = balancer.summary()
    assert summary.status == FULLY_ALLOCATED
    assert summary.message == "Fully allocated."


def test_fill_remaining_never_goes_negative():
    balancer = _balancer("100.00", "150.00", "20.00")
    assert balancer.fill_remaining(1) == Decimal("0.00")


def test_split_evenly_puts_the_remainder_on_the_first_line():
    balancer = _balancer("100.00", "0", "0", "0")

    assert balancer.split_evenly() == [Decimal("33.34"), Decimal("33.33"), Decimal("33.33")]
    assert balancer.allocated == Decimal("100.00")


def test_split_evenly_needs_two_lines():
    with pytest.raises(ValidationError):
        _balancer("100.00", "0").split_evenly()


def test_set_amount_rebalances_first_other_line():
    balancer = _balancer("1000.00", "600.00", "400.00")

    result = balancer.set_amount(1, "700")

    assert result.adjusted_index == 0
    assert result.previous == Decimal("600.00")
    assert result.new == Decimal("300.00")
    assert result.edited_clamped_to is None
    assert balancer.allocated == Decimal("1000.00")


def test_set_amount_under_cap_leaves_siblings_alone():
    balancer = _balancer("1000.00", "600.00", "100.00")
    assert balancer.set_amount(1, "$250.00") is None
    assert [l.amount for l in balancer.lines] == [Decimal("600.00"), Decimal("250.00")]


def test_edited_line_is_clamped_when_siblings_are_exhausted():
    balancer = _balancer("1000.00", "200.00", "100.00")

    result = balancer.set_amount(1, "1500")

    assert result.adjusted_index == 0
    assert result.new == Decimal("0.00")
    assert result.edited_clamped_to == Decimal("1000.00")
    assert balancer.allocated == Decimal("1000.00")


def test_single_line_clamps_itself():
    balancer = _balancer("500.00", "0")
    result = balancer.set_amount(0, "800")
    assert result.adjusted_index == 0
    assert result.new == Decimal("500.00")


def test_negative_amounts_rejected():
    with pytest.raises(ValidationError):
        _balancer("500.00", "0").set_amount(0, "-5")


def test_percentage_of_cap():
    balancer = _balancer("2000.00", "0", "0")
    balancer.percentage_of(0, 25)
    assert balancer.lines[0].amount == Decimal("500.00")
    with pytest.raises(ValidationError):
        balancer.percentage_of(1, 120)


@pytest.mark.parametrize("edits", [
    [(0, "900"), (1, "900"), (2, "900")],
    [(2, "1000"), (0, "1000"), (1, "0.01")],
    [(1, "333.33"), (1, "999.99"), (0, "0.02")],
])
def test_sum_never_exceeds_cap(edits):
    balancer = _balancer("1000.00", "0", "0", "0")
    for index, value in edits:
        balancer.set_amount(index, value)
        assert balancer.allocated <= balancer.cap
        assert all(line.amount >= 0 for line in balancer.lines)


def test_summary_messages():
    assert _balancer("1000.00", "400.00").summary().message == "$600.00 unallocated."
    under = _balancer("1000.00", "400.00").summary()
    assert under.status == UNDER_ALLOCATED
    # Loaded from a store that drifted; the balancer reports rather than fixes
    over = _balancer("1000.00", "1200.00").summary()
    assert over.status == OVER_ALLOCATED
    assert over.message == "Over-allocated by $200.00."


def test_frozen_balancer_rejects_edits():
    balancer = _balancer("1000.00", "400.00", frozen=True)
    with pytest.raises(StateViolationError):
        balancer.set_amount(0, "10")
    with pytest.raises(StateViolationError):
        balancer.add(cost_code_id="CC-9")


def test_cap_excludes_already_billed_amount():
    invoice = {"amount": Decimal("1000.00"), "billed_amount": Decimal("250.00"), "paid_amount": Decimal("100.00")}
    assert allocation_cap(invoice) == Decimal("750.00")


def test_remove_does_not_redistribute():
    balancer = _balancer("1000.00", "600.00", "400.00")

    removed = balancer.remove(0)

    assert removed.amount == Decimal("600.00")
    assert [line.amount for line in balancer.lines] == [Decimal("400.00")]
    assert balancer.summary().status == UNDER_ALLOCATED
    with pytest.raises(ValidationError):
        balancer.remove(5)


def test_update_line_changes_links_not_amounts():
    balancer = _balancer("1000.00", "600.00")

    line = balancer.update_line(0, cost_code_id="CC-200", po_id="PO-1", amount="1")

    assert (line.cost_code_id, line.po_id, line.amount) == ("CC-200", "PO-1", Decimal("600.00"))
    balancer.update_line(0, po_id="")
    assert balancer.lines[0].po_id is None

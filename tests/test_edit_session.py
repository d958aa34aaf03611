from decimal import Decimal

import pytest

from jobledger.services.edit_session import EditSession, FieldHint, FieldOrigin
from jobledger.services.errors import StateViolationError, ValidationError


def _invoice(**overrides):
    invoice = {
        "id": "INV-1",
        "status": "needs_review",
        "version": 4,
        "amount": Decimal("1000.00"),
        "billed_amount": Decimal("0.00"),
        "paid_amount": Decimal("0.00"),
        "vendor_id": None,
        "invoice_number": "A-100",
        "notes": None,
    }
    invoice.update(overrides)
    return invoice


def _session(allocations=None, **overrides):
    if allocations is None:
        allocations = [{"id": "ALC-1", "cost_code_id": "CC-100", "amount": Decimal("1000.00")}]
    return EditSession(_invoice(**overrides), allocations, "pm@example.com")


def test_session_starts_from_stored_record():
    session = _session()
    assert session.expected_version == 4
    assert session.value("invoice_number") == "A-100"
    assert session.balancer.cap == Decimal("1000.00")
    assert session.changed_fields() == {}
    assert session.allocations_changed() is False


def test_hints_fill_only_empty_fields():
    session = _session()

    applied = session.apply_hints([
        FieldHint("vendor_id", "V-7", 0.81),
        FieldHint("invoice_number", "B-999", 0.99),
        FieldHint("notes", "   ", 0.5),
        FieldHint("unknown_field", "x", 0.5),
    ])

    assert applied == ["vendor_id"]
    assert session.fields["vendor_id"].origin == FieldOrigin.AI
    assert session.fields["vendor_id"].confidence == 0.81
    assert session.value("invoice_number") == "A-100"


def test_unparseable_amount_hint_is_discarded():
    session = _session(amount=None)
    assert session.apply_hints([FieldHint("amount", "about a grand", 0.4)]) == []


def test_overriding_an_ai_value_is_recorded():
    session = _session()
    session.apply_hints([FieldHint("vendor_id", "V-7", 0.81)])

    session.set_field("vendor_id", "V-8")

    assert session.fields["vendor_id"].overridden is True
    assert session.fields["vendor_id"].origin == FieldOrigin.MANUAL
    assert session.ai_overrides() == [
        {"field": "vendor_id", "ai_value": "V-7", "new_value": "V-8", "confidence": 0.81},
    ]


def test_amount_change_moves_allocation_cap():
    session = _session()
    session.set_field("amount", "$1,250.00")

    assert session.changed_fields() == {"amount": Decimal("1250.00")}
    assert session.balancer.cap == Decimal("1250.00")
    assert session.balancer.summary().remaining == Decimal("250.00")


def test_cap_excludes_billed_amount():
    session = _session(billed_amount=Decimal("400.00"))
    assert session.balancer.cap == Decimal("600.00")


def test_locked_status_rejects_edits_until_unlocked():
    session = _session(status="approved")
    with pytest.raises(StateViolationError):
        session.set_field("notes", "late fix")

    session.mark_unlocked()

    session.set_field("notes", "late fix")
    assert session.changed_fields() == {"notes": "late fix"}
    assert session.balancer.frozen is False


def test_in_draw_allocations_stay_frozen_when_unlocked():
    session = _session(status="in_draw")
    session.mark_unlocked()

    assert session.can_edit_fields
    with pytest.raises(StateViolationError):
        session.replace_allocations([{"cost_code_id": "CC-200", "amount": "1000"}])


def test_unknown_field_is_rejected():
    with pytest.raises(ValidationError):
        _session().set_field("status", "approved")


def test_replace_allocations_marks_change():
    session = _session()
    session.replace_allocations([
        {"cost_code_id": "CC-100", "amount": "600"},
        {"cost_code_id": "CC-200", "amount": "400"},
    ])

    assert session.allocations_changed() is True
    with pytest.raises(ValidationError):
        session.replace_allocations([{"cost_code_id": "CC-100", "amount": "-5"}])


def test_to_dict_shape():
    session = _session()
    session.apply_hints([FieldHint("vendor_id", "V-7", 0.81)])

    data = session.to_dict()

    assert data["fields"]["vendor_id"] == {
        "current_value": "V-7", "origin": "ai", "confidence": 0.81, "overridden": False,
    }
    assert data["allocations"][0]["amount"] == "1000.00"
    assert data["summary"]["remaining"] == "0.00"

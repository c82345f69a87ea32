"""Tests for the EntryAuthorizationGate rules."""

import pytest

from clinicaldata.double_data_entry.entry_gate import EntryAuthorizationGate
from clinicaldata.double_data_entry.models import EntryStatus, EntryType, FormInstance
from clinicaldata.exceptions import AlreadyComplete, AuthorizationDenied, NotRequired, SameEntrant


def _form(status, double_entry_required=True, first="user-1", second=None):
    return FormInstance(
        form_instance_id="ecrf-001",
        status=status,
        double_entry_required=double_entry_required,
        first_entrant_id=first,
        second_entrant_id=second,
    )


@pytest.fixture
def gate():
    return EntryAuthorizationGate()


class TestFirstEntry:
    """Before the first entry is complete anyone may enter data."""

    @pytest.mark.parametrize("status", [
        EntryStatus.NOT_STARTED,
        EntryStatus.FIRST_ENTRY_IN_PROGRESS,
    ])
    def test_allowed_as_first(self, gate, status):
        decision = gate.authorize(_form(status, first=None), "user-1")

        assert decision.allowed is True
        assert decision.entry_type == EntryType.FIRST

    def test_not_required_does_not_block_first_entry(self, gate):
        decision = gate.authorize(
            _form(EntryStatus.NOT_STARTED, double_entry_required=False, first=None), "user-1",
        )
        assert decision.allowed is True
        assert decision.entry_type == EntryType.FIRST


class TestSecondEntry:
    """Rules applied once the first entry is complete."""

    def test_different_user_allowed_as_second(self, gate):
        decision = gate.authorize(_form(EntryStatus.FIRST_ENTRY_COMPLETE), "user-2")

        assert decision.allowed is True
        assert decision.entry_type == EntryType.SECOND
        assert decision.reason_code is None

    def test_same_entrant_refused(self, gate):
        decision = gate.authorize(_form(EntryStatus.FIRST_ENTRY_COMPLETE), "user-1")

        assert decision.allowed is False
        assert decision.reason_code == "same_entrant"
        assert decision.reason == (
            "Different user required for second entry. First entry was done by user-1"
        )

    def test_same_entrant_uses_display_name(self):
        gate = EntryAuthorizationGate(name_resolver={"user-1": "Dana Smith"}.get)

        decision = gate.authorize(_form(EntryStatus.FIRST_ENTRY_COMPLETE), "user-1")

        assert decision.reason.endswith("First entry was done by Dana Smith")

    def test_unresolvable_name_falls_back_to_id(self):
        gate = EntryAuthorizationGate(name_resolver=lambda user_id: None)

        decision = gate.authorize(_form(EntryStatus.FIRST_ENTRY_COMPLETE), "user-1")

        assert decision.reason.endswith("done by user-1")

    def test_not_required_refused(self, gate):
        decision = gate.authorize(
            _form(EntryStatus.FIRST_ENTRY_COMPLETE, double_entry_required=False), "user-2",
        )

        assert decision.allowed is False
        assert decision.reason_code == "not_required"

    def test_explicit_flag_overrides_form_flag(self, gate):
        decision = gate.authorize(
            _form(EntryStatus.FIRST_ENTRY_COMPLETE, double_entry_required=True),
            "user-2",
            double_entry_required=False,
        )
        assert decision.reason_code == "not_required"

    @pytest.mark.parametrize("status", [
        EntryStatus.SECOND_ENTRY_IN_PROGRESS,
        EntryStatus.RECONCILED,
    ])
    def test_already_complete_refused(self, gate, status):
        decision = gate.authorize(_form(status, second="user-2"), "user-3")

        assert decision.allowed is False
        assert decision.reason_code == "already_complete"

    def test_not_required_checked_before_already_complete(self, gate):
        decision = gate.authorize(
            _form(EntryStatus.RECONCILED, double_entry_required=False, second="user-2"),
            "user-3",
        )
        assert decision.reason_code == "not_required"

    def test_already_complete_checked_before_same_entrant(self, gate):
        decision = gate.authorize(
            _form(EntryStatus.SECOND_ENTRY_IN_PROGRESS, second="user-2"), "user-1",
        )
        assert decision.reason_code == "already_complete"


class TestDenialExceptions:
    """Refusals map onto the AuthorizationDenied subclasses."""

    @pytest.mark.parametrize("form,user_id,exc_class", [
        (_form(EntryStatus.FIRST_ENTRY_COMPLETE, double_entry_required=False), "user-2", NotRequired),
        (_form(EntryStatus.RECONCILED, second="user-2"), "user-3", AlreadyComplete),
        (_form(EntryStatus.FIRST_ENTRY_COMPLETE), "user-1", SameEntrant),
    ])
    def test_to_exception(self, gate, form, user_id, exc_class):
        decision = gate.authorize(form, user_id)

        exc = EntryAuthorizationGate.to_exception(decision, form.form_instance_id)

        assert isinstance(exc, exc_class)
        assert isinstance(exc, AuthorizationDenied)
        assert exc.context["reason_code"] == decision.reason_code
        assert exc.context["form_instance_id"] == "ecrf-001"
        assert exc.message == decision.reason

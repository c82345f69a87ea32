"""Tests for the double data-entry DiscrepancyManager.

Covers every resolution strategy, validation before any write, the
single-resolution rule and the resolution audit record.
"""

import threading

import pytest

from clinicaldata.double_data_entry.models import DiscrepancyStatus, ResolutionStrategy
from clinicaldata.exceptions import InvalidStateError, NotFoundError, ValidationError


@pytest.fixture
def open_discrepancy(transactions, discrepancy_manager, seed_form):
    """Form instance with one open discrepancy on field 'smoker' (Yes vs No)."""
    form_id, fields = seed_form({"smoker": "Yes"})
    with transactions.transaction("seed") as uow:
        record = discrepancy_manager.create(
            uow.discrepancies,
            form_instance_id=form_id,
            field_id=fields["smoker"],
            first_value="Yes",
            second_value="No",
            item_name="smoker",
        )
    return form_id, fields["smoker"], record.discrepancy_id


def _resolve(transactions, manager, discrepancy_id, strategy, resolver_id="user-3", **kwargs):
    with transactions.transaction("resolve") as uow:
        return manager.resolve(
            uow.forms, uow.discrepancies, uow.audit,
            discrepancy_id, strategy, resolver_id, **kwargs,
        )


def _field_value(transactions, field_id):
    with transactions.transaction("read", readonly=True) as uow:
        return uow.forms.get_field_value(field_id).value


def _audit(transactions, form_id):
    with transactions.transaction("audit", readonly=True) as uow:
        return uow.audit.list_for_form_instance(form_id)


# ==============================================================================
# Strategies
# ==============================================================================

class TestResolutionStrategies:
    """Each strategy writes the expected value onto the field."""

    def test_first_correct(self, transactions, discrepancy_manager, open_discrepancy):
        form_id, field_id, disc_id = open_discrepancy

        record = _resolve(transactions, discrepancy_manager, disc_id, "first_correct")

        assert record.status == DiscrepancyStatus.RESOLVED
        assert record.strategy == ResolutionStrategy.FIRST_CORRECT
        assert record.resolved_value == "Yes"
        assert record.resolved_by == "user-3"
        assert record.resolved_at is not None
        assert _field_value(transactions, field_id) == "Yes"

    def test_second_correct(self, transactions, discrepancy_manager, open_discrepancy):
        form_id, field_id, disc_id = open_discrepancy

        record = _resolve(transactions, discrepancy_manager, disc_id, ResolutionStrategy.SECOND_CORRECT)

        assert record.resolved_value == "No"
        assert _field_value(transactions, field_id) == "No"

    def test_new_value(self, transactions, discrepancy_manager, open_discrepancy):
        form_id, field_id, disc_id = open_discrepancy

        record = _resolve(
            transactions, discrepancy_manager, disc_id, "new_value", new_value="Former",
        )

        assert record.resolved_value == "Former"
        assert _field_value(transactions, field_id) == "Former"

    def test_adjudicated(self, transactions, discrepancy_manager, open_discrepancy):
        form_id, field_id, disc_id = open_discrepancy

        record = _resolve(
            transactions, discrepancy_manager, disc_id, "adjudicated",
            new_value="Unknown", notes="Adjudicated by medical monitor",
        )

        assert record.resolved_value == "Unknown"
        assert record.notes == "Adjudicated by medical monitor"

    def test_empty_string_is_a_supplied_value(self, transactions, discrepancy_manager, open_discrepancy):
        form_id, field_id, disc_id = open_discrepancy

        record = _resolve(transactions, discrepancy_manager, disc_id, "new_value", new_value="")

        assert record.resolved_value == ""
        assert _field_value(transactions, field_id) == ""

    def test_first_correct_uses_value_captured_at_detection(
        self, transactions, discrepancy_manager, open_discrepancy,
    ):
        """Later edits to the field do not change what first_correct restores."""
        form_id, field_id, disc_id = open_discrepancy
        with transactions.transaction("edit") as uow:
            uow.forms.set_field_value(field_id, "Maybe", "user-9")

        record = _resolve(transactions, discrepancy_manager, disc_id, "first_correct")

        assert record.resolved_value == "Yes"
        assert _field_value(transactions, field_id) == "Yes"


# ==============================================================================
# Validation and state
# ==============================================================================

class TestResolutionValidation:
    """Refused resolutions leave no trace."""

    @pytest.mark.parametrize("strategy,resolver,value,field_name", [
        ("new_value", "user-3", None, "new_value"),
        ("adjudicated", "user-3", None, "new_value"),
        ("majority_vote", "user-3", "x", "strategy"),
        ("first_correct", "", None, "resolver_id"),
        ("first_correct", None, None, "resolver_id"),
    ])
    def test_invalid_arguments(
        self, transactions, discrepancy_manager, open_discrepancy,
        strategy, resolver, value, field_name,
    ):
        form_id, field_id, disc_id = open_discrepancy

        with pytest.raises(ValidationError) as exc_info:
            _resolve(
                transactions, discrepancy_manager, disc_id, strategy,
                resolver_id=resolver, new_value=value,
            )

        assert field_name in exc_info.value.invalid_fields
        assert _field_value(transactions, field_id) == "Yes"
        assert _audit(transactions, form_id) == []
        with transactions.transaction("check", readonly=True) as uow:
            assert uow.discrepancies.get_discrepancy(disc_id).is_open

    def test_validation_precedes_lookup(self, transactions, discrepancy_manager):
        """An invalid request on an unknown id reports the validation error."""
        with pytest.raises(ValidationError):
            _resolve(transactions, discrepancy_manager, "missing", "new_value")

    def test_unknown_discrepancy(self, transactions, discrepancy_manager):
        with pytest.raises(NotFoundError):
            _resolve(transactions, discrepancy_manager, "missing", "first_correct")

    def test_resolves_exactly_once(self, transactions, discrepancy_manager, open_discrepancy):
        form_id, field_id, disc_id = open_discrepancy
        _resolve(transactions, discrepancy_manager, disc_id, "second_correct")

        with pytest.raises(InvalidStateError):
            _resolve(transactions, discrepancy_manager, disc_id, "first_correct")

        assert _field_value(transactions, field_id) == "No"
        assert len(_audit(transactions, form_id)) == 1


# ==============================================================================
# Audit and counters
# ==============================================================================

class TestResolutionAudit:
    """Tests for the resolution audit record and counts."""

    def test_one_audit_record_per_resolution(
        self, transactions, discrepancy_manager, open_discrepancy,
    ):
        form_id, field_id, disc_id = open_discrepancy

        _resolve(transactions, discrepancy_manager, disc_id, "second_correct")

        [record] = _audit(transactions, form_id)
        assert record.entity_name == "DDE Resolution"
        assert record.entity_type == "field_entry"
        assert record.entity_id == field_id
        assert record.user_id == "user-3"
        assert record.old_value == "Yes"
        assert record.new_value == "No"
        assert record.reason == "DDE resolved as second_correct"
        assert len(record.provenance_hash) == 64

    def test_notes_become_audit_reason(self, transactions, discrepancy_manager, open_discrepancy):
        form_id, field_id, disc_id = open_discrepancy

        _resolve(
            transactions, discrepancy_manager, disc_id, "first_correct",
            notes="Source document checked",
        )

        [record] = _audit(transactions, form_id)
        assert record.reason == "Source document checked"

    def test_open_count(self, transactions, discrepancy_manager, open_discrepancy):
        form_id, field_id, disc_id = open_discrepancy
        with transactions.transaction("count", readonly=True) as uow:
            assert discrepancy_manager.count_open(uow.discrepancies, form_id) == 1

        _resolve(transactions, discrepancy_manager, disc_id, "first_correct")

        with transactions.transaction("count", readonly=True) as uow:
            assert discrepancy_manager.count_open(uow.discrepancies, form_id) == 0
            assert uow.discrepancies.count_resolved_for_form_instance(form_id) == 1
        assert discrepancy_manager.created_count == 1
        assert discrepancy_manager.resolved_count == 1

    def test_created_count_across_threads(self, discrepancy_manager):
        class _CountingStore:
            def create_discrepancy(self, record):
                return record.discrepancy_id

        store = _CountingStore()

        def _worker(n):
            for i in range(50):
                discrepancy_manager.create(
                    store, f"ecrf-{n}", f"field-{i}", first_value="1", second_value="2",
                )

        threads = [threading.Thread(target=_worker, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        assert discrepancy_manager.created_count == 400

"""Tests for the SQLAlchemy storage adapters.

Covers status code translation, the second-entry snapshot codec (including
the legacy list format and unparseable blobs) and the store operations the
engines rely on.
"""

import json
import logging

import pytest

from clinicaldata.db.models_dde import FormInstanceRow
from clinicaldata.double_data_entry.models import EntryStatus
from clinicaldata.double_data_entry.repository import (
    CODE_TO_STATUS,
    STATUS_TO_CODE,
    SqlAlchemyAuditSink,
    SqlAlchemyDiscrepancyStore,
    SqlAlchemyFormInstanceStore,
    decode_snapshot,
    encode_snapshot,
    status_from_code,
    status_to_code,
)
from clinicaldata.double_data_entry.stores import AuditSink, DiscrepancyStore, FormInstanceStore
from clinicaldata.exceptions import NotFoundError, StorageError


# ==============================================================================
# Status codes
# ==============================================================================

class TestStatusCodes:
    """Translation of the shared integer completion status."""

    def test_codes_one_to_five(self):
        assert [STATUS_TO_CODE[s] for s in EntryStatus] == [1, 2, 3, 4, 5]
        assert CODE_TO_STATUS[3] == EntryStatus.FIRST_ENTRY_COMPLETE

    def test_round_trip(self):
        for status in EntryStatus:
            assert status_from_code(status_to_code(status)) == status

    @pytest.mark.parametrize("code", [0, 6, None, "x"])
    def test_unknown_code(self, code):
        with pytest.raises(StorageError):
            status_from_code(code)


# ==============================================================================
# Snapshot codec
# ==============================================================================

class TestSnapshotCodec:
    """Decoding of stored second-entry snapshots."""

    def test_object_form(self):
        raw = json.dumps({"f1": "120", "f2": None, "f3": 7})
        assert decode_snapshot(raw) == {"f1": "120", "f2": None, "f3": "7"}

    @pytest.mark.parametrize("key", ["itemId", "field_id", "item_data_id"])
    def test_legacy_list_form(self, key):
        raw = json.dumps([{key: 11, "value": "Yes"}, {key: "12", "value": None}])
        assert decode_snapshot(raw) == {"11": "Yes", "12": None}

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_absent_snapshot(self, raw):
        assert decode_snapshot(raw) == {}

    @pytest.mark.parametrize("raw", [
        "{not json",
        "42",
        '["plain string"]',
        '[{"value": "no id"}]',
    ])
    def test_unparseable_reads_as_empty(self, raw, caplog):
        with caplog.at_level(logging.WARNING):
            assert decode_snapshot(raw, form_instance_id="ecrf-001") == {}
        assert "ecrf-001" in caplog.text

    def test_unparseable_strict(self):
        with pytest.raises(StorageError) as exc_info:
            decode_snapshot("{not json", strict=True, form_instance_id="ecrf-001")
        assert exc_info.value.context["form_instance_id"] == "ecrf-001"

    def test_encode(self):
        assert encode_snapshot(None) is None
        assert json.loads(encode_snapshot({"b": "2", "a": None})) == {"a": None, "b": "2"}


# ==============================================================================
# Form instance store
# ==============================================================================

class TestFormInstanceStore:
    """Store operations over a real session."""

    def test_create_and_load(self, database):
        with database.session_scope() as session:
            store = SqlAlchemyFormInstanceStore(session)
            created = store.create_form_instance("ecrf-001", site_id="site-01")
            store.add_field_value("ecrf-001", "systolic", "120", field_id="f1")

        with database.session_scope() as session:
            store = SqlAlchemyFormInstanceStore(session)
            form = store.get_form_instance("ecrf-001")
            fields = store.get_field_values("ecrf-001")

        assert created.status == EntryStatus.NOT_STARTED
        assert form.double_entry_required is True
        assert form.site_id == "site-01"
        assert [(f.field_id, f.value) for f in fields] == [("f1", "120")]

    def test_missing_form_instance(self, database):
        with database.session_scope() as session:
            store = SqlAlchemyFormInstanceStore(session)
            assert store.get_form_instance("missing") is None
            assert store.get_field_value("missing") is None
            with pytest.raises(NotFoundError):
                store.is_double_entry_required("missing")
            with pytest.raises(NotFoundError):
                store.set_field_value("missing", "x", "user-1")

    def test_field_order_by_ordinal(self, database):
        with database.session_scope() as session:
            store = SqlAlchemyFormInstanceStore(session)
            store.create_form_instance("ecrf-001")
            store.add_field_value("ecrf-001", "z_last", "1")
            store.add_field_value("ecrf-001", "a_second", "2")

        with database.session_scope() as session:
            names = [
                f.item_name
                for f in SqlAlchemyFormInstanceStore(session).get_field_values("ecrf-001")
            ]
        assert names == ["z_last", "a_second"]

    def test_legacy_snapshot_row(self, database):
        """A row written by the legacy list format loads as a mapping."""
        with database.session_scope() as session:
            store = SqlAlchemyFormInstanceStore(session)
            store.create_form_instance("ecrf-001")
            row = session.get(FormInstanceRow, "ecrf-001")
            row.second_entry_snapshot = json.dumps([{"itemId": "f1", "value": "No"}])
            row.validator_id = "user-2"

        with database.session_scope() as session:
            form = SqlAlchemyFormInstanceStore(session).get_form_instance("ecrf-001")

        assert form.second_entry_snapshot == {"f1": "No"}
        assert form.has_second_entry is True

    def test_strict_store_raises_on_corrupt_snapshot(self, database):
        with database.session_scope() as session:
            SqlAlchemyFormInstanceStore(session).create_form_instance("ecrf-001")
            session.get(FormInstanceRow, "ecrf-001").second_entry_snapshot = "{broken"

        with database.session_scope() as session:
            lenient = SqlAlchemyFormInstanceStore(session)
            assert lenient.get_form_instance("ecrf-001").second_entry_snapshot == {}
            strict = SqlAlchemyFormInstanceStore(session, strict_snapshot_parsing=True)
            with pytest.raises(StorageError):
                strict.get_form_instance("ecrf-001")

    def test_unsupported_order(self, database):
        with database.session_scope() as session:
            store = SqlAlchemyFormInstanceStore(session)
            with pytest.raises(ValueError):
                store.list_form_instances([EntryStatus.NOT_STARTED], order_by="subject")


class TestStoreInterfaces:
    """The SQLAlchemy adapters satisfy the engine's store interfaces."""

    def test_protocols(self, database):
        with database.session_scope() as session:
            assert isinstance(SqlAlchemyFormInstanceStore(session), FormInstanceStore)
            assert isinstance(SqlAlchemyDiscrepancyStore(session), DiscrepancyStore)
            assert isinstance(SqlAlchemyAuditSink(session), AuditSink)

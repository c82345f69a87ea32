"""Tests for the DashboardAggregator work queues and counts."""

import pytest

from clinicaldata.double_data_entry.config import DoubleDataEntryConfig
from clinicaldata.double_data_entry.models import EntryStatus
from clinicaldata.double_data_entry.setup import DoubleDataEntryService


def _complete_first(service, seed_form, clock, days_apart=1, count=3, **seed_kwargs):
    ids = []
    for _ in range(count):
        form_id, fields = seed_form({"smoker": "Yes"}, **seed_kwargs)
        service.mark_first_entry_complete(form_id, "user-1")
        ids.append((form_id, fields))
        clock.advance(days=days_apart)
    return ids


# ==============================================================================
# Pending second entry
# ==============================================================================

class TestPendingSecondEntry:
    """Forms waiting for an independent second entry."""

    def test_oldest_first_with_wait(self, service, seed_form, clock):
        forms = _complete_first(service, seed_form, clock)

        rows = service.pending_second_entry()

        assert [r.form_instance_id for r in rows] == [f for f, _ in forms]
        assert [r.days_waiting for r in rows] == [3, 2, 1]
        assert rows[0].wait_seconds == 3 * 86400
        assert rows[0].first_entrant_id == "user-1"
        assert rows[0].status == EntryStatus.FIRST_ENTRY_COMPLETE
        assert rows[0].form_name == "Vital Signs"

    def test_excludes_other_statuses(self, service, seed_form, clock):
        [(done, fields)] = _complete_first(service, seed_form, clock, count=1)
        service.submit_second_entry(done, "user-2", {fields["smoker"]: "Yes"})
        not_started, _ = seed_form({"smoker": "Yes"})
        in_progress, _ = seed_form({"smoker": "Yes"})
        service.begin_first_entry(in_progress, "user-1")

        assert service.pending_second_entry() == []

    def test_excludes_forms_without_double_entry(self, service, seed_form, clock):
        _complete_first(service, seed_form, clock, count=1, double_entry_required=False)

        assert service.pending_second_entry() == []

    def test_site_filter(self, service, seed_form, clock):
        _complete_first(service, seed_form, clock, count=2, site_id="site-01")
        [(other, _)] = _complete_first(service, seed_form, clock, count=1, site_id="site-02")

        rows = service.pending_second_entry(site_id="site-02")

        assert [r.form_instance_id for r in rows] == [other]

    def test_explicit_limit(self, service, seed_form, clock):
        forms = _complete_first(service, seed_form, clock, count=3)

        rows = service.pending_second_entry(limit=2)

        assert [r.form_instance_id for r in rows] == [f for f, _ in forms[:2]]

    def test_zero_limit_returns_no_rows(self, service, seed_form, clock):
        _complete_first(service, seed_form, clock, count=2)

        assert service.pending_second_entry(limit=0) == []
        assert service.pending_resolution(limit=0) == []

    def test_negative_limit_rejected(self, service):
        with pytest.raises(ValueError):
            service.pending_second_entry(limit=-1)

    def test_configured_default_limit(self, database, seed_form, clock):
        config = DoubleDataEntryConfig(database_url="sqlite://", dashboard_limit=2)
        service = DoubleDataEntryService(config, database=database, clock=clock)
        service.startup()
        _complete_first(service, seed_form, clock, count=3)

        assert len(service.pending_second_entry()) == 2


# ==============================================================================
# Pending resolution
# ==============================================================================

class TestPendingResolution:
    """Forms with open discrepancies."""

    def test_open_discrepancies_listed(self, service, seed_form, clock):
        a, a_fields = seed_form({"smoker": "Yes", "pulse": "72"})
        b, b_fields = seed_form({"smoker": "Yes"})
        matched, m_fields = seed_form({"smoker": "Yes"})
        for form_id in (a, b, matched):
            service.mark_first_entry_complete(form_id, "user-1")

        service.submit_second_entry(b, "user-2", {b_fields["smoker"]: "No"})
        clock.advance(days=1)
        service.submit_second_entry(
            a, "user-2", {a_fields["smoker"]: "No", a_fields["pulse"]: "27"},
        )
        service.submit_second_entry(matched, "user-2", {m_fields["smoker"]: "Yes"})
        clock.advance(days=1)

        rows = service.pending_resolution()

        assert [r.form_instance_id for r in rows] == [b, a]
        assert [r.open_discrepancies for r in rows] == [1, 2]
        assert [r.days_waiting for r in rows] == [2, 1]
        assert rows[0].second_entrant_id == "user-2"

    def test_resolved_forms_drop_out(self, service, seed_form):
        form_id, fields = seed_form({"smoker": "Yes"})
        service.mark_first_entry_complete(form_id, "user-1")
        service.submit_second_entry(form_id, "user-2", {fields["smoker"]: "No"})
        [record] = service.list_discrepancies(form_id)

        service.resolve(record.discrepancy_id, "first_correct", "user-3")

        assert service.pending_resolution() == []


# ==============================================================================
# Counts and combined view
# ==============================================================================

class TestStatusCounts:
    """Tests for status_counts and get_dashboard."""

    def test_every_status_present(self, service):
        counts = service.status_counts()

        assert set(counts) == set(EntryStatus)
        assert all(count == 0 for count in counts.values())

    def test_counts_by_status(self, service, seed_form, clock):
        seed_form({"smoker": "Yes"})
        [(pending, _)] = _complete_first(service, seed_form, clock, count=1)
        [(open_form, fields)] = _complete_first(service, seed_form, clock, count=1)
        service.submit_second_entry(open_form, "user-2", {fields["smoker"]: "No"})

        counts = service.status_counts()

        assert counts[EntryStatus.NOT_STARTED] == 1
        assert counts[EntryStatus.FIRST_ENTRY_COMPLETE] == 1
        assert counts[EntryStatus.SECOND_ENTRY_IN_PROGRESS] == 1
        assert counts[EntryStatus.RECONCILED] == 0

    def test_dashboard_view(self, service, seed_form, clock):
        _complete_first(service, seed_form, clock, count=2)
        [(open_form, fields)] = _complete_first(service, seed_form, clock, count=1)
        service.submit_second_entry(open_form, "user-2", {fields["smoker"]: "No"})
        [(done, done_fields)] = _complete_first(service, seed_form, clock, count=1)
        service.submit_second_entry(done, "user-2", {done_fields["smoker"]: "yes"})
        _complete_first(service, seed_form, clock, count=1, double_entry_required=False)

        view = service.get_dashboard()

        assert view.stats.total == 4
        assert view.stats.pending == 2
        assert view.stats.discrepancies == 1
        assert view.stats.complete == 1
        assert len(view.pending_second_entry) == 2
        assert [r.form_instance_id for r in view.pending_resolution] == [open_form]
        assert view.generated_at == clock()

    @pytest.mark.parametrize("site,expected", [("site-01", 1), ("site-02", 0)])
    def test_dashboard_site_filter(self, service, seed_form, clock, site, expected):
        _complete_first(service, seed_form, clock, count=1, site_id="site-01")

        view = service.get_dashboard(site_id=site)

        assert view.stats.pending == expected

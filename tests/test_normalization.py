"""Tests for double data-entry value normalization."""

import pytest

from clinicaldata.double_data_entry.normalization import normalize_value, values_match


class TestNormalizeValue:
    """normalize_value is total and deterministic."""

    def test_none_is_empty_string(self):
        assert normalize_value(None) == ""

    def test_strips_surrounding_whitespace(self):
        assert normalize_value("  120 \t\n") == "120"

    def test_lowercases(self):
        assert normalize_value("YeS") == "yes"

    def test_non_string_values_use_str(self):
        assert normalize_value(120) == "120"
        assert normalize_value(True) == "true"

    def test_inner_whitespace_preserved(self):
        assert normalize_value(" New  York ") == "new  york"

    def test_idempotent(self):
        once = normalize_value("  Mixed Case ")
        assert normalize_value(once) == once


class TestValuesMatch:
    """values_match compares normalized forms."""

    @pytest.mark.parametrize("first,second", [
        ("120", " 120 "),
        ("Yes", "yes"),
        (None, ""),
        (None, "   "),
        ("", None),
    ])
    def test_equivalent_values_match(self, first, second):
        assert values_match(first, second) is True

    @pytest.mark.parametrize("first,second", [
        ("Yes", "No"),
        ("120", "12 0"),
        ("1.0", "1"),
        (None, "0"),
    ])
    def test_different_values_do_not_match(self, first, second):
        assert values_match(first, second) is False

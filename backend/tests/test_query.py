"""Tests for schedule step query evaluation."""

import pytest

from engine.models import Record, ScheduleFilter, ScheduleQuery
from engine.query import (
    describe_query,
    evaluate_filter,
    evaluate_query,
    filter_records,
    matches,
    parse_string_query,
)


def _query(*filters, logic="AND"):
    return ScheduleQuery(filters=tuple(ScheduleFilter(*f) for f in filters), logic=logic)


@pytest.mark.unit
class TestEvaluateFilter:

    def test_equals_compares_string_forms(self):
        assert evaluate_filter({"score": 5}, ScheduleFilter("score", "equals", "5"))
        assert evaluate_filter({"active": True}, ScheduleFilter("active", "equals", "true"))
        assert not evaluate_filter({"status": "new"}, ScheduleFilter("status", "equals", "New"))

    def test_not_equals(self):
        assert evaluate_filter({"status": "new"}, ScheduleFilter("status", "not_equals", "done"))
        assert not evaluate_filter({"status": "new"}, ScheduleFilter("status", "not_equals", "new"))

    def test_contains_is_case_insensitive(self):
        assert evaluate_filter({"company": "Acme Corp"}, ScheduleFilter("company", "contains", "acme"))
        assert evaluate_filter({"company": "Acme Corp"}, ScheduleFilter("company", "not_contains", "globex"))

    def test_contains_on_missing_field(self):
        assert not evaluate_filter({}, ScheduleFilter("company", "contains", "acme"))

    @pytest.mark.parametrize("value", [None, "", []])
    def test_is_empty(self, value):
        assert evaluate_filter({"summary": value}, ScheduleFilter("summary", "is_empty"))
        assert not evaluate_filter({"summary": value}, ScheduleFilter("summary", "is_not_empty"))

    def test_missing_field_is_empty(self):
        assert evaluate_filter({}, ScheduleFilter("summary", "is_empty"))

    def test_zero_is_not_empty(self):
        assert evaluate_filter({"score": 0}, ScheduleFilter("score", "is_not_empty"))

    def test_numeric_comparisons_coerce_strings(self):
        data = {"score": "7.5"}
        assert evaluate_filter(data, ScheduleFilter("score", "greater_than", 7))
        assert evaluate_filter(data, ScheduleFilter("score", "less_than", "8"))
        assert evaluate_filter(data, ScheduleFilter("score", "greater_or_equal", 7.5))
        assert evaluate_filter(data, ScheduleFilter("score", "less_or_equal", 7.5))

    def test_non_numeric_comparison_is_false(self):
        assert not evaluate_filter({"score": "high"}, ScheduleFilter("score", "greater_than", 1))
        assert not evaluate_filter({"score": "high"}, ScheduleFilter("score", "less_than", 1))

    def test_starts_and_ends_with(self):
        data = {"email": "Ada@Example.com"}
        assert evaluate_filter(data, ScheduleFilter("email", "starts_with", "ada"))
        assert evaluate_filter(data, ScheduleFilter("email", "ends_with", "EXAMPLE.COM"))

    def test_in_and_not_in_require_list(self):
        data = {"status": "new"}
        assert evaluate_filter(data, ScheduleFilter("status", "in", ["new", "open"]))
        assert not evaluate_filter(data, ScheduleFilter("status", "in", "new"))
        assert evaluate_filter(data, ScheduleFilter("status", "not_in", ["done"]))
        assert not evaluate_filter(data, ScheduleFilter("status", "not_in", "done"))

    def test_unknown_operator_is_false(self):
        assert not evaluate_filter({"status": "new"}, ScheduleFilter("status", "resembles", "new"))


@pytest.mark.unit
class TestEvaluateQuery:

    def test_empty_query_matches_everything(self):
        assert evaluate_query({}, ScheduleQuery())

    def test_and_requires_all(self):
        query = _query(("status", "equals", "new"), ("score", "greater_than", 5))
        assert evaluate_query({"status": "new", "score": 9}, query)
        assert not evaluate_query({"status": "new", "score": 1}, query)

    def test_or_requires_any(self):
        query = _query(("status", "equals", "new"), ("score", "greater_than", 5), logic="OR")
        assert evaluate_query({"status": "done", "score": 9}, query)
        assert not evaluate_query({"status": "done", "score": 1}, query)

    def test_logic_is_case_insensitive(self):
        query = _query(("status", "equals", "new"), ("status", "equals", "open"), logic="or")
        assert evaluate_query({"status": "open"}, query)

    def test_unknown_logic_combines_with_or(self):
        query = _query(("status", "equals", "new"), ("score", "greater_than", 5), logic="XOR")
        assert evaluate_query({"status": "new", "score": 1}, query)
        assert not evaluate_query({"status": "done", "score": 1}, query)


@pytest.mark.unit
class TestMatches:

    def test_none_matches(self):
        assert matches({"a": 1}, None)

    def test_dict_query(self):
        query = {"filters": [{"field": "status", "operator": "equals", "value": "new"}], "logic": "AND"}
        assert matches({"status": "new"}, query)
        assert not matches({"status": "old"}, query)

    def test_dict_without_filters_matches(self):
        assert matches({"status": "new"}, {"logic": "AND"})

    def test_legacy_equals_string(self):
        assert matches({"status": "new"}, "status equals 'new'")
        assert not matches({"status": "old"}, 'status equals "new"')

    def test_legacy_free_text_searches_serialized_data(self):
        assert matches({"company": "Acme Corp"}, "acme")
        assert matches({"company": "Acme Corp"}, "globex corp")
        assert not matches({"company": "Acme Corp"}, "globex")

    def test_blank_legacy_string_matches(self):
        assert matches({"company": "Acme"}, "   ")

    def test_parse_string_query(self):
        parsed = parse_string_query("status equals 'qualified'")
        assert parsed.filters == (ScheduleFilter("status", "equals", "qualified"),)
        assert parse_string_query("find me leads") is None


@pytest.mark.unit
class TestFilterRecords:

    def test_keeps_input_order(self):
        records = [Record(id=str(i), model_id="m", data={"n": i}) for i in range(6)]
        result = filter_records(records, _query(("n", "greater_than", 2)))
        assert [r.id for r in result] == ["3", "4", "5"]

    def test_describe_query(self):
        query = _query(("status", "equals", "new"), ("score", "greater_than", 5), ("tag", "in", ["a", "b"]))
        assert describe_query(query) == 'status equals "new" AND score > 5 AND tag in [a, b]'

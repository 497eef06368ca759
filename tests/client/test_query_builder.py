"""
Unit tests for student listing query construction.
"""

import pytest

from errors import InvalidQueryError
from models import QuerySpec
from utils.query_builder import build_query_params


class TestBuildQueryParams:
    """Tests for build_query_params"""

    def test_defaults_send_page_and_size_only(self):
        params = build_query_params(QuerySpec())
        assert params == [("page", 0), ("size", 10)]

    def test_id_filter_added(self):
        """Page 2 of students matching id S123"""
        spec = QuerySpec(page_index=2, page_size=10, id_filter="S123")
        params = build_query_params(spec)

        assert dict(params) == {"page": 2, "size": 10, "studentId": "S123"}
        assert "class" not in dict(params)

    def test_both_filters_added_in_order(self):
        spec = QuerySpec(page_index=1, page_size=25, id_filter="7", class_filter="Class2")
        params = build_query_params(spec)

        assert params == [
            ("page", 1),
            ("size", 25),
            ("studentId", "7"),
            ("class", "Class2"),
        ]

    @pytest.mark.parametrize("blank", ["", "   ", "\t\n", None])
    def test_blank_filters_dropped(self, blank):
        spec = QuerySpec(id_filter=blank, class_filter=blank)
        assert build_query_params(spec) == [("page", 0), ("size", 10)]

    def test_filters_trimmed(self):
        spec = QuerySpec(id_filter="  42 ", class_filter=" Class5\n")
        params = dict(build_query_params(spec))

        assert params["studentId"] == "42"
        assert params["class"] == "Class5"

    def test_negative_page_rejected(self):
        with pytest.raises(InvalidQueryError) as exc_info:
            build_query_params(QuerySpec(page_index=-1))

        assert exc_info.value.details["field"] == "pageIndex"
        assert exc_info.value.stage == "report-load"

    @pytest.mark.parametrize("size", [0, -10])
    def test_non_positive_size_rejected(self, size):
        with pytest.raises(InvalidQueryError) as exc_info:
            build_query_params(QuerySpec(page_size=size))

        assert exc_info.value.details["field"] == "pageSize"


class TestQuerySpec:
    """Tests for report query state transitions"""

    def test_with_filters_resets_page(self):
        spec = QuerySpec(page_index=4, page_size=20)
        updated = spec.with_filters(" S1 ", "")

        assert updated.page_index == 0
        assert updated.page_size == 20
        assert updated.id_filter == "S1"
        assert updated.class_filter is None
        # unchanged
        assert spec.page_index == 4

    def test_with_page_keeps_filters(self):
        spec = QuerySpec(id_filter="9", class_filter="Class1")
        updated = spec.with_page(3)

        assert updated.page_index == 3
        assert updated.page_size == 10
        assert updated.id_filter == "9"
        assert updated.class_filter == "Class1"

    def test_with_page_changes_size(self):
        assert QuerySpec().with_page(0, 50).page_size == 50

    def test_cleared(self):
        spec = QuerySpec(page_index=2, page_size=5, id_filter="1", class_filter="Class4")
        cleared = spec.cleared()

        assert cleared == QuerySpec(page_index=0, page_size=5)

"""
Tests for filter compilation into SQL fragments and Polars predicates.
"""

import polars as pl
import pytest

from core.filters import compile_filters, escape_like, is_allowed_field, is_allowed_operator
from models import Filter


@pytest.fixture
def frame():
    return pl.DataFrame(
        {
            "country": ["US", "DE", "FR", "US"],
            "path": ["/pricing", "/blog/50%_off", "/", "/docs"],
            "utm_source": ["google", "newsletter", "", "twitter"],
        }
    )


@pytest.mark.filters
class TestFilterValidation:
    def test_allow_list_membership(self):
        assert is_allowed_field("country")
        assert not is_allowed_field("not_a_real_field")
        assert is_allowed_operator("not_in")
        assert not is_allowed_operator("starts_with")

    @pytest.mark.parametrize("field_name", ["browser", "os", "ip_address", "browser_name", "os_name"])
    def test_client_attribute_fields_compile(self, field_name):
        compiled = compile_filters([Filter(field_name, "equals", "x")])
        params = {}

        assert compiled.dropped == ()
        assert compiled.to_sql(params) == f" AND {field_name} = {{f_0_{field_name}:String}}"
        assert params == {f"f_0_{field_name}": "x"}

    def test_browser_filter_narrows_frame(self):
        frame = pl.DataFrame({"browser": ["Chrome", "Firefox"], "os": ["macOS", "Linux"]})
        compiled = compile_filters(
            [Filter("browser", "equals", "Firefox"), Filter("os", "in", ("Linux", "Windows"))]
        )

        assert frame.filter(compiled.to_polars())["browser"].to_list() == ["Firefox"]

    def test_empty_list_is_tautology(self, frame):
        compiled = compile_filters([])
        params = {}

        assert compiled.is_tautology
        assert compiled.to_sql(params) == ""
        assert params == {}
        assert frame.filter(compiled.to_polars()).height == frame.height

    def test_unknown_field_and_operator_are_dropped(self):
        unknown_field = Filter(field="not_a_real_field", operator="equals", value="x")
        unknown_operator = Filter(field="country", operator="regex", value=".*")
        valid = Filter(field="country", operator="equals", value="US")

        compiled = compile_filters([unknown_field, valid, unknown_operator])

        assert [c.field for c in compiled.conditions] == ["country"]
        assert compiled.dropped == (unknown_field, unknown_operator)

    def test_unknown_field_does_not_change_predicate(self, frame):
        valid = Filter(field="country", operator="equals", value="US")
        with_unknown = compile_filters(
            [Filter(field="not_a_real_field", operator="equals", value="x"), valid]
        )
        without = compile_filters([valid])

        assert with_unknown == without
        assert frame.filter(with_unknown.to_polars()).equals(frame.filter(without.to_polars()))

    def test_value_shape_mismatch_is_dropped(self):
        compiled = compile_filters(
            [
                Filter(field="country", operator="equals", value=("US", "DE")),
                Filter(field="country", operator="in", value=()),
                Filter(field="country", operator="contains", value=""),
            ]
        )

        assert compiled.is_tautology
        assert len(compiled.dropped) == 3


@pytest.mark.filters
class TestFilterPredicates:
    def test_equals_and_not_equals(self, frame):
        equals = compile_filters([Filter("country", "equals", "US")])
        not_equals = compile_filters([Filter("country", "not_equals", "US")])

        assert frame.filter(equals.to_polars())["path"].to_list() == ["/pricing", "/docs"]
        assert frame.filter(not_equals.to_polars())["country"].to_list() == ["DE", "FR"]

    def test_contains_is_literal(self, frame):
        compiled = compile_filters([Filter("path", "contains", "50%_")])

        assert frame.filter(compiled.to_polars())["path"].to_list() == ["/blog/50%_off"]

    def test_in_and_not_in(self, frame):
        in_filter = compile_filters([Filter("utm_source", "in", ("google", "twitter"))])
        not_in_filter = compile_filters([Filter("country", "not_in", ("US",))])

        assert frame.filter(in_filter.to_polars()).height == 2
        assert frame.filter(not_in_filter.to_polars())["country"].to_list() == ["DE", "FR"]

    def test_scalar_value_for_in_is_single_element_set(self, frame):
        compiled = compile_filters([Filter("country", "in", "DE")])

        assert compiled.conditions[0].value == ("DE",)
        assert frame.filter(compiled.to_polars()).height == 1

    def test_filters_combine_with_and(self, frame):
        compiled = compile_filters(
            [Filter("country", "equals", "US"), Filter("path", "contains", "doc")]
        )

        assert frame.filter(compiled.to_polars())["path"].to_list() == ["/docs"]


@pytest.mark.filters
@pytest.mark.security
class TestFilterSql:
    def test_values_are_parameterised(self):
        hostile = "US' OR 1=1 --"
        params = {}

        sql = compile_filters([Filter("country", "equals", hostile)]).to_sql(params)

        assert hostile not in sql
        assert sql == " AND country = {f_0_country:String}"
        assert params == {"f_0_country": hostile}

    def test_contains_escapes_wildcards(self):
        params = {}

        sql = compile_filters([Filter("path", "contains", "50%_off")]).to_sql(params)

        assert sql == " AND path LIKE {f_0_path:String}"
        assert params["f_0_path"] == "%50\\%\\_off%"

    def test_array_operators(self):
        params = {}

        sql = compile_filters(
            [
                Filter("utm_source", "in", ("google", "bing")),
                Filter("country", "not_in", ("DE",)),
            ]
        ).to_sql(params, prefix="flt")

        assert sql == (
            " AND utm_source IN {flt_0_utm_source:Array(String)}"
            " AND country NOT IN {flt_1_country:Array(String)}"
        )
        assert params == {"flt_0_utm_source": ["google", "bing"], "flt_1_country": ["DE"]}

    def test_repeated_field_gets_distinct_parameters(self):
        params = {}

        compile_filters(
            [Filter("path", "not_equals", "/a"), Filter("path", "not_equals", "/b")]
        ).to_sql(params)

        assert params == {"f_0_path": "/a", "f_1_path": "/b"}

    def test_escape_like_escapes_backslash_first(self):
        assert escape_like("a\\b%c_") == "a\\\\b\\%c\\_"

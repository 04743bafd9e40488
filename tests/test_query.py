import pytest

from modelmcp.annotations.parser import parse_annotations
from modelmcp.mcp.query import (
    Condition,
    QueryTranslator,
    ResultShape,
    build_plan,
    coerce_key,
    coerce_value,
    strip_omitted,
)
from modelmcp.utils.errors import ValidationError


@pytest.fixture
def books(elements):
    return next(a for a in parse_annotations(elements) if getattr(a, "name", None) == "books")


@pytest.fixture
def translator(books):
    return QueryTranslator(books, max_top=200, default_top=25)


class TestTranslate:
    def test_defaults(self, translator):
        spec = translator.translate({})
        assert spec.entity == "CatalogService.Books"
        assert spec.page_top == 25
        assert spec.page_skip == 0
        assert spec.result_shape is ResultShape.ROWS
        assert "secret" not in spec.columns
        assert "author_ID" in spec.columns

    def test_where_select_orderby(self, translator):
        spec = translator.translate(
            {
                "where": [{"field": "stock", "op": "gt", "value": "20"}, {"field": "author_ID", "value": 150}],
                "select": ["ID", "title"],
                "orderby": [{"field": "price", "dir": "desc"}],
                "top": 10,
                "skip": 5,
            }
        )
        assert spec.filter_conditions == (Condition("stock", "gt", 20), Condition("author_ID", "eq", 150))
        assert spec.columns == ("ID", "title")
        assert spec.sort_keys[0].descending
        assert (spec.page_top, spec.page_skip) == (10, 5)

    def test_free_text_search(self, translator):
        spec = translator.translate({"q": " raven "})
        assert spec.free_text_term == "raven"
        assert "title" in spec.predicate.search_fields

    def test_in_operator(self, translator):
        spec = translator.translate({"where": [{"field": "ID", "op": "in", "value": [201, "207"]}]})
        assert spec.filter_conditions[0].value == (201, 207)

    @pytest.mark.parametrize(
        "arguments, field",
        [
            ({"where": [{"field": "nope", "value": 1}]}, "nope"),
            ({"where": [{"field": "secret", "value": "x"}]}, "secret"),
            ({"select": ["author"]}, "author"),
            ({"where": [{"field": "stock", "op": "contains", "value": "1"}]}, "stock"),
            ({"where": [{"field": "stock", "value": "many"}]}, "stock"),
            ({"where": [{"field": "ID", "op": "in", "value": []}]}, "ID"),
            ({"top": 0}, "top"),
            ({"top": 201}, "top"),
            ({"skip": -1}, "skip"),
            ({"unknown": 1}, "unknown"),
            ({"aggregate": [{"field": "stock", "fn": "sum"}]}, "aggregate"),
            ({"return": "aggregate"}, "aggregate"),
            ({"return": "aggregate", "aggregate": [{"field": "title", "fn": "sum"}]}, "title"),
        ],
    )
    def test_invalid_arguments(self, translator, arguments, field):
        """Error condition: invalid arguments name the offending field."""
        with pytest.raises(ValidationError) as excinfo:
            translator.translate(arguments)
        assert excinfo.value.data["field"] == field

    def test_search_without_text_fields(self):
        """Error condition: q on an entity with no text fields."""
        from modelmcp.annotations.walker import walk

        definitions = {
            "S": {"kind": "service"},
            "S.Numbers": {
                "kind": "entity",
                "@mcp.name": "numbers",
                "@mcp.description": "Numbers",
                "@mcp.resource": True,
                "elements": {"ID": {"key": True, "type": "cds.Integer"}},
            },
        }
        (numbers,) = parse_annotations(walk(definitions))
        with pytest.raises(ValidationError):
            QueryTranslator(numbers, max_top=10, default_top=5).translate({"q": "x"})


class TestBuildPlan:
    def test_all_shapes_share_one_predicate(self, translator):
        """Rows, count and aggregate are planned from the same predicate."""
        spec = translator.translate(
            {"where": [{"field": "author_ID", "value": 150}], "q": "e", "top": 1, "skip": 1, "orderby": [{"field": "ID"}]}
        )
        rows = build_plan(spec, ResultShape.ROWS)
        count = build_plan(spec, ResultShape.COUNT)
        aggregate = build_plan(spec, ResultShape.AGGREGATE)
        assert rows.predicate is count.predicate is aggregate.predicate
        assert (rows.limit, rows.offset) == (1, 1)
        assert count.limit is None and count.offset is None and not count.order_by

    def test_plan_to_dict(self, translator):
        spec = translator.translate({"return": "aggregate", "aggregate": [{"field": "stock", "fn": "sum"}]})
        plan = build_plan(spec).to_dict()
        assert plan["shape"] == "aggregate"
        assert plan["aggregate"] == [{"field": "stock", "fn": "sum", "as": "sum_stock"}]


class TestCoercion:
    def test_coerce_value(self):
        assert coerce_value("Integer", "42", "n") == 42
        assert coerce_value("Decimal", "1.5", "n") == 1.5
        assert coerce_value("Boolean", "true", "b") is True
        assert coerce_value("Date", "2024-01-31", "d") == "2024-01-31"

    @pytest.mark.parametrize(
        "type_name, value",
        [("Integer", True), ("Integer", "1.5"), ("UInt8", 300), ("UUID", "nope"), ("Date", "31.01.2024"), ("String", 5)],
    )
    def test_coerce_value_rejects(self, type_name, value):
        with pytest.raises(ValidationError):
            coerce_value(type_name, value, "field")

    def test_coerce_key_keeps_large_numbers_as_strings(self):
        assert coerce_key("Int64", 9007199254740993, "ID") == "9007199254740993"
        assert coerce_key("Decimal", " 10.50 ", "ID") == "10.50"
        assert coerce_key("Integer", "7", "ID") == 7

    def test_coerce_key_missing(self):
        with pytest.raises(ValidationError):
            coerce_key("Integer", None, "ID")

    def test_strip_omitted(self):
        rows = [{"ID": 1, "secret": "x"}, {"ID": 2, "secret": "y"}]
        assert strip_omitted(rows, ("secret",)) == [{"ID": 1}, {"ID": 2}]
        assert strip_omitted({"count": 2}, ("secret",)) == {"count": 2}

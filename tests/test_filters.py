import pytest

from modelmcp.annotations.parser import parse_annotations
from modelmcp.mcp.filters import MAX_FILTER_LENGTH, parse_filter, parse_orderby, parse_select
from modelmcp.mcp.query import AllOf, AnyOf, Condition, Not, QueryTranslator
from modelmcp.utils.errors import ValidationError


@pytest.fixture
def translator(elements):
    books = next(a for a in parse_annotations(elements) if getattr(a, "name", None) == "books")
    return QueryTranslator(books, max_top=1000, default_top=100)


class TestParseFilter:
    def test_comparison(self, translator):
        assert parse_filter(translator, "stock gt 100") == Condition("stock", "gt", 100)

    def test_string_literal_with_quote(self, translator):
        assert parse_filter(translator, "title eq 'O''Brien'") == Condition("title", "eq", "O'Brien")

    def test_precedence_and_grouping(self, translator):
        node = parse_filter(translator, "stock gt 10 and (author_ID eq 150 or not contains(title,'Jane'))")
        assert node == AllOf(
            (
                Condition("stock", "gt", 10),
                AnyOf((Condition("author_ID", "eq", 150), Not(Condition("title", "contains", "Jane")))),
            )
        )

    def test_or_binds_looser_than_and(self, translator):
        node = parse_filter(translator, "ID eq 1 or ID eq 2 and stock lt 5")
        assert isinstance(node, AnyOf)
        assert isinstance(node.nodes[1], AllOf)

    def test_string_functions(self, translator):
        assert parse_filter(translator, "startswith(title,'The')") == Condition("title", "startswith", "The")
        assert parse_filter(translator, "endswith(title,'ra')") == Condition("title", "endswith", "ra")

    def test_evaluates_against_rows(self, translator, sample_data):
        node = parse_filter(translator, "author_ID eq 150 and stock ge 400")
        matches = [row["ID"] for row in sample_data["CatalogService.Books"] if node.evaluate(row)]
        assert matches == [252]

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "stock",
            "stock gt",
            "stock like 5",
            "nope eq 1",
            "secret eq 'x'",
            "contains(stock,'1')",
            "(stock gt 1",
            "stock gt 1 extra",
            "stock gt 1; drop",
            "title eq 'unterminated",
        ],
    )
    def test_rejects_malformed_filters(self, translator, text):
        """Error condition: malformed filters are validation errors."""
        with pytest.raises(ValidationError):
            parse_filter(translator, text)

    def test_rejects_oversized_filter(self, translator):
        with pytest.raises(ValidationError):
            parse_filter(translator, "stock gt 1 and " * (MAX_FILTER_LENGTH // 10) + "stock gt 1")


class TestParseOrderbyAndSelect:
    def test_orderby(self, translator):
        keys = parse_orderby(translator, "price desc, title")
        assert [(k.field, k.descending) for k in keys] == [("price", True), ("title", False)]

    def test_orderby_rejects_unknown(self, translator):
        with pytest.raises(ValidationError):
            parse_orderby(translator, "nope asc")

    def test_orderby_rejects_garbage(self, translator):
        with pytest.raises(ValidationError):
            parse_orderby(translator, "price sideways")

    def test_select_deduplicates(self, translator):
        assert parse_select(translator, "ID,title,ID") == ("ID", "title")

    def test_select_rejects_omitted(self, translator):
        with pytest.raises(ValidationError):
            parse_select(translator, "secret")

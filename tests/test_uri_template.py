import pytest

from modelmcp.mcp.uri_template import UriTemplate
from modelmcp.utils.errors import ConfigurationError


class TestUriTemplate:
    def test_build_single_block(self):
        template = UriTemplate.build("odata://CatalogService/books", ["filter", "top"])
        assert str(template) == "odata://CatalogService/books{?filter,top}"
        assert template.base == "odata://CatalogService/books"
        assert template.params == ("filter", "top")

    def test_build_without_params(self):
        assert str(UriTemplate.build("odata://S/things", [])) == "odata://S/things"

    def test_chained_blocks_are_refused(self):
        """Error condition: only one query block is allowed."""
        with pytest.raises(ConfigurationError):
            UriTemplate("odata://S/things{?filter}{?top}")

    def test_path_expressions_are_refused(self):
        with pytest.raises(ConfigurationError):
            UriTemplate("odata://S/{entity}")

    def test_expand_omits_empty_values(self):
        template = UriTemplate("odata://S/books{?filter,top,skip}")
        assert template.expand({"top": 5, "filter": None, "skip": ""}) == "odata://S/books?top=5"
        assert template.expand({}) == "odata://S/books"

    def test_match(self):
        template = UriTemplate("odata://S/books{?filter,top}")
        assert template.match("odata://S/books") == {}
        assert template.match("odata://S/books?top=5&filter=stock%20gt%201") == {"top": "5", "filter": "stock gt 1"}

    @pytest.mark.parametrize(
        "uri",
        [
            "odata://S/authors?top=5",
            "odata://S/books?expand=author",
            "odata://S/books?top=1&top=2",
            "odata://S/books?top",
        ],
    )
    def test_match_rejects(self, uri):
        """Error condition: wrong base, unknown, duplicate or malformed parameters."""
        assert UriTemplate("odata://S/books{?filter,top}").match(uri) is None

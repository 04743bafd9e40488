import json

import pytest

from modelmcp.utils.auth import Principal
from modelmcp.utils.errors import ValidationError

SYSTEM = Principal.system()


async def _read(catalog, uri):
    resource, params = catalog.resolve_resource(uri, SYSTEM)
    contents = await resource.handler(uri, params)
    assert contents[0]["mimeType"] == "application/json"
    assert contents[0]["uri"] == uri
    return json.loads(contents[0]["text"])


class TestResourceRead:
    @pytest.mark.asyncio
    async def test_filter_orderby_select(self, catalog):
        rows = await _read(
            catalog,
            "odata://CatalogService/books?filter=stock%20gt%2020&orderby=stock%20desc&select=ID,stock",
        )
        assert rows == [{"ID": 252, "stock": 555}, {"ID": 251, "stock": 333}, {"ID": 271, "stock": 22}]

    @pytest.mark.asyncio
    async def test_top_and_skip(self, catalog):
        rows = await _read(catalog, "odata://CatalogService/books?orderby=ID&top=2&skip=1&select=ID")
        assert rows == [{"ID": 207}, {"ID": 251}]

    @pytest.mark.asyncio
    async def test_omitted_fields_are_stripped(self, catalog):
        rows = await _read(catalog, "odata://CatalogService/books")
        assert len(rows) == 5
        assert all("secret" not in row for row in rows)

    @pytest.mark.asyncio
    async def test_static_resource(self, catalog):
        assert await _read(catalog, "odata://CatalogService/genres") == [{"ID": 10, "name": "Fiction"}]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "uri",
        [
            "odata://CatalogService/books?top=0",
            "odata://CatalogService/books?top=5000",
            "odata://CatalogService/books?top=many",
            "odata://CatalogService/books?skip=-1",
            "odata://CatalogService/books?filter=secret%20eq%20's1'",
            "odata://CatalogService/books?select=nope",
        ],
    )
    async def test_invalid_parameters(self, catalog, uri):
        """Error condition: bad query options are validation errors."""
        resource, params = catalog.resolve_resource(uri, SYSTEM)
        with pytest.raises(ValidationError):
            await resource.handler(uri, params)


class TestResourceDescriptors:
    def test_template_listing(self, catalog):
        books = catalog.resource_templates["books"].to_dict()
        assert books["uriTemplate"] == "odata://CatalogService/books{?filter,orderby,select,top,skip}"
        assert books["mimeType"] == "application/json"
        assert "Query parameters: filter, orderby, select, top, skip" in books["description"]
        assert "secret" not in books["description"]

    def test_static_listing(self, catalog):
        genres = catalog.resources["odata://CatalogService/genres"].to_dict()
        assert genres == {
            "uri": "odata://CatalogService/genres",
            "name": "genres",
            "description": "Book genres\nProperties: ID (Integer), name (String)",
            "mimeType": "application/json",
            "title": "Genres",
        }

    def test_restricted_template_hidden(self, catalog):
        names = [t.name for t in catalog.list_resource_templates(Principal(user="alice"))]
        assert names == ["books", "authors"]

"""
Test configuration and fixtures for the modelmcp test suite.
"""

from __future__ import annotations

import copy

import pytest
from fastapi.testclient import TestClient

from modelmcp.annotations.walker import walk
from modelmcp.main import create_app
from modelmcp.mcp.catalog import CatalogBuilder
from modelmcp.mcp.executor import QueryExecutor
from modelmcp.services.memory_backend import InMemoryBackend
from tests._helpers import SAMPLE_DATA, SAMPLE_MODEL, make_settings


@pytest.fixture
def sample_model():
    return copy.deepcopy(SAMPLE_MODEL)


@pytest.fixture
def sample_data():
    return copy.deepcopy(SAMPLE_DATA)


@pytest.fixture
def settings():
    """Settings with authentication disabled and no global wrapping."""
    return make_settings()


@pytest.fixture
def backend(sample_data):
    backend = InMemoryBackend(
        sample_data,
        key_fields={name: ["ID"] for name in sample_data},
    )

    async def get_stock(arguments):
        rows = [row for row in backend.rows("CatalogService.Books") if row["ID"] == arguments["id"]]
        return rows[0]["stock"] if rows else 0

    async def discount(arguments, *, entity, keys):
        row = await backend.read(entity, keys)
        price = round(row["price"] * (100 - arguments["percent"]) / 100, 2)
        await backend.update(entity, keys, {"price": price})
        return price

    backend.register_operation("CatalogService", "getStock", get_stock)
    backend.register_operation("CatalogService", "discount", discount)
    return backend


@pytest.fixture
def executor(backend, settings):
    return QueryExecutor.from_settings(backend, settings)


@pytest.fixture
def elements(sample_model):
    return walk(sample_model)


@pytest.fixture
def catalog(elements, executor, settings):
    return CatalogBuilder(executor, settings).build(elements)


@pytest.fixture
def app(sample_model, backend, settings):
    return create_app(model=sample_model, backend=backend, settings=settings)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client

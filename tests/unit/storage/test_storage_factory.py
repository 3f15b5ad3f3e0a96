"""
Tests for create_storage URL dispatch.
"""

import pytest

from ordersaga.core.exceptions import ConfigurationError
from ordersaga.storage.factory import create_storage, get_available_backends
from ordersaga.storage.memory import InMemoryOrderStorage
from ordersaga.storage.postgresql import PostgreSQLOrderStorage
from ordersaga.storage.sqlite import SQLiteOrderStorage


class TestCreateStorage:
    """Tests for create_storage"""

    def test_memory(self):
        bundle = create_storage("memory://")

        assert isinstance(bundle.orders, InMemoryOrderStorage)

    def test_sqlite_relative_path(self):
        bundle = create_storage("sqlite:///orders.db")

        assert isinstance(bundle.orders, SQLiteOrderStorage)
        assert bundle.orders.database.db_path == "orders.db"

    def test_sqlite_absolute_path(self):
        bundle = create_storage("sqlite:////var/lib/ordersaga/orders.db")

        assert bundle.orders.database.db_path == "/var/lib/ordersaga/orders.db"

    def test_sqlite_in_memory(self):
        bundle = create_storage("sqlite:///:memory:")

        assert bundle.orders.database.db_path == ":memory:"

    @pytest.mark.parametrize("scheme", ["postgresql", "postgres"])
    def test_postgresql_is_lazy(self, scheme):
        bundle = create_storage(f"{scheme}://user:pass@localhost/shop")

        assert isinstance(bundle.orders, PostgreSQLOrderStorage)

    def test_unknown_scheme(self):
        with pytest.raises(ConfigurationError, match="Available backends"):
            create_storage("redis://localhost")

    def test_available_backends(self):
        assert get_available_backends() == ["memory", "postgres", "postgresql", "sqlite"]

"""
Unit tests for storage layer.

Tests schema creation, store financials, scenario and product persistence.
"""

import os
import sqlite3
import tempfile

import pytest

from tryon_core.storage.db import get_connection, immediate_transaction
from tryon_core.storage.models import (
    BillingStatus,
    PlanTier,
    ProductRecord,
    ScenarioRecord,
    StoreFinancials,
)
from tryon_core.storage.repository import (
    ProductRepository,
    ScenarioRepository,
    fetch_active_scenarios,
    fetch_products,
    fetch_store_financials,
    initialize_schema,
    insert_products,
    insert_scenarios,
    upsert_store_financials,
)


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify all tables are created."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
                )
                tables = [row[0] for row in cursor.fetchall()]
            finally:
                conn.close()

            for table in (
                "credit_reservations", "generation_jobs", "products", "scenarios", "store_financials",
            ):
                assert table in tables

    def test_schema_creation_is_idempotent(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)

    def test_immediate_transaction_rolls_back_on_error(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                with pytest.raises(RuntimeError):
                    with immediate_transaction(conn):
                        conn.execute(
                            "INSERT INTO store_financials (store_id, plan_tier, billing_status, sandbox_mode) "
                            "VALUES ('s1', 'micro', 'active', 0)"
                        )
                        raise RuntimeError("abort")
                count = conn.execute("SELECT COUNT(*) FROM store_financials").fetchone()[0]
            finally:
                conn.close()

            assert count == 0


class TestStoreFinancials:
    """Test financial record persistence."""

    def test_upsert_and_fetch(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            upsert_store_financials(StoreFinancials(
                store_id="store-1",
                credits_balance=12,
                overdraft_limit=3,
                plan_tier=PlanTier.PRO,
            ), db_path)

            financials = fetch_store_financials("store-1", db_path)
            assert financials.credits_balance == 12
            assert financials.overdraft_limit == 3
            assert financials.plan_tier == PlanTier.PRO
            assert financials.billing_status == BillingStatus.ACTIVE
            assert financials.available_balance == 15
            assert financials.is_configured

    def test_upsert_replaces_existing(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            upsert_store_financials(StoreFinancials("store-1", 12, 3), db_path)
            upsert_store_financials(StoreFinancials(
                "store-1", 4, 0, billing_status=BillingStatus.FROZEN
            ), db_path)

            financials = fetch_store_financials("store-1", db_path)
            assert financials.credits_balance == 4
            assert financials.billing_status == BillingStatus.FROZEN

    def test_missing_fields_mean_unconfigured(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            upsert_store_financials(StoreFinancials("store-1", None, None), db_path)

            financials = fetch_store_financials("store-1", db_path)
            assert financials.credits_balance is None
            assert not financials.is_configured

    def test_fetch_unknown_store(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            assert fetch_store_financials("nobody", db_path) is None

    def test_negative_overdraft_rejected(self):
        with pytest.raises(ValueError):
            StoreFinancials("store-1", 5, -1)

    def test_fetch_without_schema_raises(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "empty.db")

            with pytest.raises(sqlite3.OperationalError):
                fetch_store_financials("store-1", db_path)


class TestScenarios:
    """Test scenario persistence."""

    def test_insert_and_fetch_active(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            count = insert_scenarios([
                ScenarioRecord("b-beach", "https://x/beach.jpg", "sunset", "beach", ("beach", "swim")),
                ScenarioRecord("a-city", "https://x/city.jpg", "overcast", "urban", ("street",)),
                ScenarioRecord("c-old", "https://x/old.jpg", "", "party", (), active=False),
            ], db_path)

            scenarios = fetch_active_scenarios(db_path)
            assert count == 3
            assert [s.id for s in scenarios] == ["a-city", "b-beach"]
            assert scenarios[1].tags == ("beach", "swim")
            assert scenarios[1].lighting_prompt == "sunset"

    def test_insert_replaces_by_id(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            insert_scenarios([ScenarioRecord("s1", "https://x/1.jpg", "", "beach", ())], db_path)
            insert_scenarios([ScenarioRecord("s1", "https://x/2.jpg", "", "beach", ())], db_path)

            scenarios = ScenarioRepository(db_path)()
            assert len(scenarios) == 1
            assert scenarios[0].image_url == "https://x/2.jpg"

    def test_insert_nothing(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            assert insert_scenarios([], db_path) == 0


class TestProducts:
    """Test catalog product persistence."""

    def test_fetch_keeps_requested_order_and_skips_unknown(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            count = insert_products([
                ProductRecord(id="p1", name="Biquini Beach", category="Moda Praia"),
                ProductRecord(id="p2", name="Vestido Festa", description="Longo de cetim"),
            ], db_path)

            products = fetch_products(["p2", "ghost", "p1"], db_path)
            assert count == 2
            assert [p.id for p in products] == ["p2", "p1"]
            assert products[0].description == "Longo de cetim"
            assert products[0].category is None
            assert products[1].category == "Moda Praia"

    def test_insert_replaces_by_id(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            insert_products([ProductRecord(id="p1", name="Old")], db_path)
            insert_products([ProductRecord(id="p1", name="New")], db_path)

            assert [p.name for p in ProductRepository(db_path)(["p1"])] == ["New"]

    def test_empty_inputs(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            assert insert_products([], db_path) == 0
            assert fetch_products([], db_path) == []

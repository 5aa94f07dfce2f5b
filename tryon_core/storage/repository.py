"""
Repository pattern for data access.

Handles schema creation, row mapping and the provisioning helpers for
tenant financials, scenarios and catalog products.
"""

import json
import sqlite3
from datetime import datetime
from typing import Iterable, List, Optional

from .db import DEFAULT_DB_PATH, get_connection, immediate_transaction
from .models import (
    BillingStatus,
    GenerationJob,
    JobResult,
    JobStatus,
    PlanTier,
    ProductRecord,
    Reservation,
    ReservationStatus,
    ScenarioRecord,
    StoreFinancials,
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the core tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS store_financials (
                store_id TEXT PRIMARY KEY,
                credits_balance INTEGER,
                overdraft_limit INTEGER,
                plan_tier TEXT NOT NULL DEFAULT 'micro',
                billing_status TEXT NOT NULL DEFAULT 'active',
                sandbox_mode INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS credit_reservations (
                id TEXT PRIMARY KEY,
                store_id TEXT NOT NULL,
                status TEXT NOT NULL,
                amount INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                confirmed_at TEXT,
                cancelled_at TEXT
            );

            CREATE TABLE IF NOT EXISTS generation_jobs (
                id TEXT PRIMARY KEY,
                store_id TEXT NOT NULL,
                customer_id TEXT,
                customer_name TEXT,
                status TEXT NOT NULL,
                reservation_id TEXT NOT NULL UNIQUE,
                person_image_url TEXT NOT NULL,
                product_ids TEXT NOT NULL,
                options TEXT NOT NULL DEFAULT '{}',
                retry_count INTEGER NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL DEFAULT 3,
                result TEXT,
                error TEXT,
                error_details TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                failed_at TEXT,
                viewed_at TEXT,
                credit_committed INTEGER NOT NULL DEFAULT 0,
                api_cost REAL,
                CHECK (retry_count <= max_retries)
            );

            CREATE INDEX IF NOT EXISTS idx_generation_jobs_status
                ON generation_jobs (status, updated_at);

            CREATE TABLE IF NOT EXISTS scenarios (
                id TEXT PRIMARY KEY,
                image_url TEXT NOT NULL,
                lighting_prompt TEXT NOT NULL DEFAULT '',
                category TEXT NOT NULL,
                tags TEXT NOT NULL DEFAULT '[]',
                active INTEGER NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS products (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                category TEXT,
                description TEXT
            );
        """)
    finally:
        conn.close()


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def row_to_financials(row: sqlite3.Row) -> StoreFinancials:
    return StoreFinancials(
        store_id=row["store_id"],
        credits_balance=row["credits_balance"],
        overdraft_limit=row["overdraft_limit"],
        plan_tier=PlanTier(row["plan_tier"]),
        billing_status=BillingStatus(row["billing_status"]),
        sandbox_mode=bool(row["sandbox_mode"]),
    )


def row_to_reservation(row: sqlite3.Row) -> Reservation:
    return Reservation(
        id=row["id"],
        store_id=row["store_id"],
        status=ReservationStatus(row["status"]),
        amount=row["amount"],
        created_at=datetime.fromisoformat(row["created_at"]),
        expires_at=datetime.fromisoformat(row["expires_at"]),
        confirmed_at=_from_iso(row["confirmed_at"]),
        cancelled_at=_from_iso(row["cancelled_at"]),
    )


def row_to_job(row: sqlite3.Row) -> GenerationJob:
    result = json.loads(row["result"]) if row["result"] else None
    return GenerationJob(
        id=row["id"],
        store_id=row["store_id"],
        customer_id=row["customer_id"],
        customer_name=row["customer_name"],
        status=JobStatus(row["status"]),
        reservation_id=row["reservation_id"],
        person_image_url=row["person_image_url"],
        product_ids=json.loads(row["product_ids"]),
        options=json.loads(row["options"] or "{}"),
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        result=JobResult.from_dict(result) if result else None,
        error=row["error"],
        error_details=json.loads(row["error_details"]) if row["error_details"] else None,
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        started_at=_from_iso(row["started_at"]),
        completed_at=_from_iso(row["completed_at"]),
        failed_at=_from_iso(row["failed_at"]),
        viewed_at=_from_iso(row["viewed_at"]),
        credit_committed=bool(row["credit_committed"]),
        api_cost=row["api_cost"],
    )


def row_to_scenario(row: sqlite3.Row) -> ScenarioRecord:
    return ScenarioRecord(
        id=row["id"],
        image_url=row["image_url"],
        lighting_prompt=row["lighting_prompt"] or "",
        category=row["category"],
        tags=tuple(json.loads(row["tags"] or "[]")),
        active=bool(row["active"]),
    )


def upsert_store_financials(financials: StoreFinancials, db_path: str = DEFAULT_DB_PATH) -> None:
    """Create or replace a store's financial record.

    Account provisioning lives outside the core; this helper is what the
    CLI and the tests use to stand in for it.

    Args:
        financials: The record to persist
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO store_financials
            (store_id, credits_balance, overdraft_limit, plan_tier,
             billing_status, sandbox_mode)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(store_id) DO UPDATE SET
                credits_balance = excluded.credits_balance,
                overdraft_limit = excluded.overdraft_limit,
                plan_tier = excluded.plan_tier,
                billing_status = excluded.billing_status,
                sandbox_mode = excluded.sandbox_mode
        """, (
            financials.store_id,
            financials.credits_balance,
            financials.overdraft_limit,
            financials.plan_tier.value,
            financials.billing_status.value,
            int(financials.sandbox_mode),
        ))
    finally:
        conn.close()


def fetch_store_financials(store_id: str, db_path: str = DEFAULT_DB_PATH) -> Optional[StoreFinancials]:
    """Fetch a store's financial record, or None when it was never provisioned."""
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM store_financials WHERE store_id = ?", (store_id,)
        ).fetchone()
        return row_to_financials(row) if row else None
    finally:
        conn.close()


def insert_scenarios(scenarios: Iterable[ScenarioRecord], db_path: str = DEFAULT_DB_PATH) -> int:
    """Insert or replace scenarios atomically.

    Args:
        scenarios: Scenario records to store
        db_path: Path to SQLite database file

    Returns:
        Number of records written
    """
    scenarios = list(scenarios)
    if not scenarios:
        return 0

    conn = get_connection(db_path)
    try:
        with immediate_transaction(conn):
            for scenario in scenarios:
                conn.execute("""
                    INSERT OR REPLACE INTO scenarios
                    (id, image_url, lighting_prompt, category, tags, active)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    scenario.id,
                    scenario.image_url,
                    scenario.lighting_prompt,
                    scenario.category,
                    json.dumps(list(scenario.tags)),
                    int(scenario.active),
                ))
        return len(scenarios)
    finally:
        conn.close()


def fetch_active_scenarios(db_path: str = DEFAULT_DB_PATH) -> List[ScenarioRecord]:
    """Fetch every scenario flagged active, ordered by id."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            "SELECT * FROM scenarios WHERE active = 1 ORDER BY id"
        )
        return [row_to_scenario(row) for row in cursor.fetchall()]
    finally:
        conn.close()


class ScenarioRepository:
    """Loader for the scenario cache.

    Bound to one database file so it can be handed to ``ScenarioCache`` as
    a zero-argument callable.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def __call__(self) -> List[ScenarioRecord]:
        return fetch_active_scenarios(self.db_path)


def row_to_product(row: sqlite3.Row) -> ProductRecord:
    return ProductRecord(
        id=row["id"],
        name=row["name"],
        category=row["category"],
        description=row["description"],
    )


def insert_products(products: Iterable[ProductRecord], db_path: str = DEFAULT_DB_PATH) -> int:
    """Insert or replace catalog products atomically.

    Returns:
        Number of records written
    """
    products = list(products)
    if not products:
        return 0

    conn = get_connection(db_path)
    try:
        with immediate_transaction(conn):
            for product in products:
                conn.execute("""
                    INSERT OR REPLACE INTO products (id, name, category, description)
                    VALUES (?, ?, ?, ?)
                """, (product.id, product.name, product.category, product.description))
        return len(products)
    finally:
        conn.close()


def fetch_products(product_ids: Iterable[str], db_path: str = DEFAULT_DB_PATH) -> List[ProductRecord]:
    """Fetch products by id, in the order requested. Unknown ids are skipped."""
    product_ids = list(product_ids)
    if not product_ids:
        return []

    placeholders = ", ".join("?" for _ in product_ids)
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            f"SELECT * FROM products WHERE id IN ({placeholders})", product_ids
        )
        by_id = {row["id"]: row_to_product(row) for row in cursor.fetchall()}
    finally:
        conn.close()
    return [by_id[pid] for pid in product_ids if pid in by_id]


class ProductRepository:
    """Product lookup for scenario selection, bound to one database file."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def __call__(self, product_ids: List[str]) -> List[ProductRecord]:
        return fetch_products(product_ids, self.db_path)

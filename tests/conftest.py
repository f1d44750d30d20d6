"""
Pytest configuration and fixtures for medallion-etl tests

This module provides shared fixtures for unit, integration, and E2E tests.
"""
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Generator

import pytest

from medallion.batch import BatchTracker, LayerLoader
from medallion.config import PipelineSettings
from medallion.core.keys import InMemoryDimensionStore
from medallion.core.schema import StarSchema, StarSchemaLoader
from medallion.warehouse.layer_store import InMemoryLayerStore

PROJECT_ROOT = Path(__file__).resolve().parent.parent

T0 = datetime(2025, 3, 1, 6, 0, tzinfo=timezone.utc)


# =======================
# PYTEST CONFIGURATION
# =======================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests that don't require external services"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests that require Docker containers"
    )
    config.addinivalue_line(
        "markers", "e2e: End-to-end tests that test the full pipeline"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take more than 5 seconds to run"
    )


# =======================
# SCHEMA FIXTURES
# =======================

@pytest.fixture(scope="session")
def sales_schema_path() -> Path:
    """Path to the example sales star schema"""
    return PROJECT_ROOT / "config" / "sales_schema.yaml"


@pytest.fixture(scope="session")
def sales_schema(sales_schema_path) -> StarSchema:
    """Sales star schema loaded from config/sales_schema.yaml"""
    return StarSchemaLoader(sales_schema_path).load()


@pytest.fixture
def make_order() -> Callable[..., dict[str, Any]]:
    """
    Factory for raw sales payloads in the loosely-typed form sources send

    Usage:
        make_order(order_id=1, city="York")
    """
    def _make(**overrides: Any) -> dict[str, Any]:
        payload = {
            "order_id": "1001",
            "customer_id": "cust-007",
            "customer_name": "ada park",
            "city": "leeds",
            "product_id": "sku-1",
            "product_name": "Kettle",
            "category": "Kitchen",
            "order_date": "2025-03-01",
            "load_ts": "2025-03-01T05:00:00Z",
            "quantity": "2",
            "revenue": "59.90",
        }
        payload.update({k: (str(v) if isinstance(v, int) and not isinstance(v, bool) else v) for k, v in overrides.items()})
        return payload

    return _make


@pytest.fixture
def order_batch(make_order) -> list[dict[str, Any]]:
    """Six orders, two customers, two products, one duplicated order id"""
    return [
        make_order(order_id=1, customer_id="CUST-007", product_id="SKU-1"),
        make_order(order_id=2, customer_id="CUST-007", product_id="SKU-2", product_name="Toaster", revenue="24.00"),
        make_order(order_id=3, customer_id="CUST-008", customer_name="bo chen", city="york", product_id="SKU-1"),
        make_order(order_id=4, customer_id="CUST-008", customer_name="bo chen", city="york", product_id="SKU-2",
                   product_name="Toaster", quantity=1, revenue="12.00"),
        make_order(order_id=5, customer_id="CUST-007", product_id="SKU-1", quantity=5, revenue="149.75"),
        make_order(order_id=5, customer_id="CUST-007", product_id="SKU-1", quantity=6, revenue="179.70",
                   load_ts="2025-03-01T05:30:00Z"),
    ]


# =======================
# IN-MEMORY PIPELINE FIXTURES
# =======================

@pytest.fixture
def settings() -> PipelineSettings:
    """Short timeouts so contention tests finish quickly"""
    return PipelineSettings(lock_timeout=2.0, storage_timeout=2.0, max_attempts=3)


@pytest.fixture
def layer_store() -> InMemoryLayerStore:
    return InMemoryLayerStore(timeout=2.0)


@pytest.fixture
def dimension_store() -> InMemoryDimensionStore:
    return InMemoryDimensionStore(timeout=2.0)


@pytest.fixture
def tracker() -> BatchTracker:
    return BatchTracker(timeout=2.0)


@pytest.fixture
def loader(sales_schema, layer_store, dimension_store, tracker, settings) -> LayerLoader:
    """LayerLoader wired to fresh in-memory stores"""
    return LayerLoader(sales_schema, layer_store, dimension_store, tracker, settings)


@pytest.fixture
def ingest(loader) -> Callable[..., str]:
    """
    Ingest payloads as a new batch and return its id

    Batches ingested later get later ingestion timestamps.
    """
    counter = {"n": 0}

    def _ingest(payloads: list[dict[str, Any]], batch_id: str | None = None, ingested_at: datetime | None = None) -> str:
        counter["n"] += 1
        batch_id = batch_id or f"orders_{counter['n']:03d}"
        loader.ingest(
            batch_id,
            "orders_jsonl",
            payloads,
            ingested_at=ingested_at or T0 + timedelta(days=counter["n"]),
            file_name=f"{batch_id}.jsonl",
        )
        return batch_id

    return _ingest


# =======================
# DATABASE FIXTURES (Testcontainers)
# =======================

@pytest.fixture(scope="session")
def postgres_container():
    """
    Start PostgreSQL container for integration tests

    Skips the dependent tests when Docker is not available.

    Yields:
        PostgresContainer instance
    """
    from testcontainers.postgres import PostgresContainer

    try:
        container = PostgresContainer(
            image="postgres:16.2-alpine",
            username="test_pipeline",
            password="test_password",
            dbname="test_datawarehouse",
        )
        container.start()
    except Exception as e:
        pytest.skip(f"Docker is not available for integration tests: {e}")

    try:
        yield container
    finally:
        container.stop()


@pytest.fixture(scope="session")
def pg_pool(postgres_container):
    """
    Open connection pool against the test container with tables created

    Yields:
        DatabaseConnectionPool
    """
    from medallion.warehouse.connection import DatabaseConnectionPool
    from medallion.warehouse.postgres_store import create_tables

    pool = DatabaseConnectionPool(
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        database="test_datawarehouse",
        user="test_pipeline",
        password="test_password",
        min_size=1,
        max_size=5,
        timeout=10.0,
    )
    pool.open()
    create_tables(pool, "medallion_test")
    yield pool
    pool.close()


@pytest.fixture(scope="function")
def clean_db(pg_pool) -> Generator[Any, None, None]:
    """
    Provide a clean database by truncating all pipeline tables before each test

    Yields:
        DatabaseConnectionPool with empty tables
    """
    with pg_pool.get_cursor() as cur:
        for table in (
            "bronze_records", "silver_records", "gold_facts", "quarantine_records",
            "dimension_rows", "dimension_key_sequence", "batch_ledger",
        ):
            cur.execute(f"TRUNCATE TABLE medallion_test.{table}")

    yield pg_pool


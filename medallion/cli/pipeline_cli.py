"""
Command-line interface for the medallion pipeline.

Usage:
    python -m medallion.cli.pipeline_cli init-db
    python -m medallion.cli.pipeline_cli ingest --batch-id <id> --source <source_id> --input <file.jsonl>
    python -m medallion.cli.pipeline_cli load --batch-id <id> --schema <schema.yaml>
    python -m medallion.cli.pipeline_cli status [--batch-id <id>]
    python -m medallion.cli.pipeline_cli retry --batch-id <id> --schema <schema.yaml>
"""

import argparse
import json
import sys
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from medallion.batch import BatchTracker, LayerLoader
from medallion.config import PipelineSettings
from medallion.core.errors import MedallionError
from medallion.core.schema import StarSchemaLoader
from medallion.observability.logger import get_logger, setup_logger
from medallion.observability.metrics import start_metrics_server, write_metrics_file
from medallion.utils.validation import validate_batch_id, validate_limit
from medallion.warehouse.connection import DatabaseConnectionPool
from medallion.warehouse.postgres_store import (
    PostgresBatchLedger,
    PostgresDimensionStore,
    PostgresLayerStore,
    create_tables,
)

logger = get_logger(__name__)


def read_jsonl(path: Path) -> Iterator[dict[str, Any]]:
    """
    Yield one payload per non-blank line of a JSON Lines file.

    Raises:
        ValueError: If a line is not a JSON object
    """
    with open(path, "r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            if not line.strip():
                continue
            payload = json.loads(line)
            if not isinstance(payload, dict):
                raise ValueError(f"{path}:{line_number}: expected a JSON object, got {type(payload).__name__}")
            yield payload


def open_pool(args) -> DatabaseConnectionPool:
    logger.info("Initializing database connection...")
    pool = DatabaseConnectionPool(
        host=args.db_host,
        port=args.db_port,
        database=args.db_name,
        user=args.db_user,
        password=args.db_password,
    )
    pool.open()
    return pool


def build_loader(pool: DatabaseConnectionPool, schema_path: str, settings: PipelineSettings) -> LayerLoader:
    """Wire a loader against the Postgres stores."""
    schema = StarSchemaLoader(schema_path).load()
    store = PostgresLayerStore(pool, settings.db_schema, timeout=settings.storage_timeout)
    dimensions = PostgresDimensionStore(pool, settings.db_schema, timeout=settings.storage_timeout)
    tracker = BatchTracker(
        PostgresBatchLedger(pool, settings.db_schema),
        timeout=settings.lock_timeout,
        lease_timeout=settings.lease_timeout,
    )
    return LayerLoader(schema, store, dimensions, tracker, settings)


def init_db_command(args, settings: PipelineSettings) -> None:
    pool = open_pool(args)
    try:
        create_tables(pool, settings.db_schema)
    finally:
        pool.close()


def ingest_command(args, settings: PipelineSettings) -> None:
    input_path = Path(args.input)
    if not input_path.exists():
        logger.error(f"Input file not found: {args.input}")
        sys.exit(1)

    validate_batch_id(args.batch_id)
    payloads = list(read_jsonl(input_path))
    logger.info(f"Read {len(payloads)} payloads from {input_path}")

    pool = open_pool(args)
    try:
        loader = build_loader(pool, args.schema, settings)
        batch = loader.ingest(args.batch_id, args.source, payloads, file_name=input_path.name)
        logger.info(f"Batch {batch.batch_id} registered ({batch.status})")
    finally:
        pool.close()


def load_command(args, settings: PipelineSettings) -> None:
    pool = open_pool(args)
    try:
        loader = build_loader(pool, args.schema, settings)
        if args.retries:
            report = loader.run_with_retries(args.batch_id)
        else:
            report = loader.run(args.batch_id)
        print_report(report.model_dump(mode="json"))
    finally:
        pool.close()


def retry_command(args, settings: PipelineSettings) -> None:
    pool = open_pool(args)
    try:
        loader = build_loader(pool, args.schema, settings)
        batch = loader.retry(args.batch_id)
        logger.info(f"Batch {batch.batch_id} released for retry (attempt {batch.attempts})")
        if not args.no_run:
            print_report(loader.run(args.batch_id).model_dump(mode="json"))
    finally:
        pool.close()


def status_command(args, settings: PipelineSettings) -> None:
    pool = open_pool(args)
    try:
        tracker = BatchTracker(PostgresBatchLedger(pool, settings.db_schema), timeout=settings.lock_timeout)
        if args.batch_id:
            batches = [tracker.get(args.batch_id)]
        else:
            batches = tracker.list_batches(args.status)[-validate_limit(args.limit):]

        for batch in batches:
            print(
                f"{batch.batch_id:<40} {batch.status:<12} attempts={batch.attempts} "
                f"checkpoint={batch.checkpoint or '-'}"
                + (f" reason={batch.failure_reason}" if batch.failure_reason else "")
            )
    finally:
        pool.close()


def print_report(report: dict[str, Any]) -> None:
    logger.info("=" * 60)
    logger.info(f"LOAD COMPLETE: {report['batch_id']}")
    logger.info("=" * 60)
    for name in ("read", "normalized", "deduplicated_out", "newly_keyed", "scd_versioned", "written", "failed"):
        logger.info(f"{name:<18} {report[name]}")
    if report.get("resumed_from"):
        logger.info(f"Resumed from checkpoint: {report['resumed_from']}")
    logger.info("=" * 60)


def add_db_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--db-host", default=None, help="Database host (default: DB_HOST or localhost)")
    parser.add_argument("--db-port", type=int, default=None, help="Database port (default: DB_PORT or 5432)")
    parser.add_argument("--db-name", default=None, help="Database name (default: DB_NAME or datawarehouse)")
    parser.add_argument("--db-user", default=None, help="Database user (default: DB_USER or pipeline)")
    parser.add_argument("--db-password", default=None, help="Database password (default: DB_PASSWORD)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Medallion (Bronze -> Silver -> Gold) batch loader",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create tables
  python -m medallion.cli.pipeline_cli init-db

  # Land a JSON Lines file in Bronze
  python -m medallion.cli.pipeline_cli ingest --batch-id orders_20250301_001 \\
      --source orders_csv --input data/orders.jsonl

  # Load it through Silver into Gold, retrying transient failures
  python -m medallion.cli.pipeline_cli load --batch-id orders_20250301_001 \\
      --schema config/sales_schema.yaml --retries
        """
    )
    parser.add_argument("--env-file", default=None, help="Optional .env file with MEDALLION_* / DB_* settings")
    parser.add_argument("--log-level", default=None, help="Log level (default: LOG_LEVEL or INFO)")
    parser.add_argument("--metrics-port", type=int, default=None, help="Expose Prometheus metrics on this port")
    parser.add_argument("--metrics-file", default=None, help="Write Prometheus metrics to this file when the command ends")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    init_parser = subparsers.add_parser("init-db", help="Create pipeline tables")
    add_db_arguments(init_parser)

    ingest_parser = subparsers.add_parser("ingest", help="Write a JSON Lines file to Bronze and register the batch")
    ingest_parser.add_argument("--batch-id", required=True, help="Batch id")
    ingest_parser.add_argument("--source", required=True, help="Data source ID")
    ingest_parser.add_argument("--input", required=True, help="Path to a JSON Lines file")
    ingest_parser.add_argument("--schema", default="config/sales_schema.yaml", help="Star schema YAML file")
    add_db_arguments(ingest_parser)

    load_parser = subparsers.add_parser("load", help="Load a batch Bronze -> Silver -> Gold")
    load_parser.add_argument("--batch-id", required=True, help="Batch id")
    load_parser.add_argument("--schema", default="config/sales_schema.yaml", help="Star schema YAML file")
    load_parser.add_argument("--retries", action="store_true", help="Retry transient failures up to MEDALLION_MAX_ATTEMPTS")
    add_db_arguments(load_parser)

    status_parser = subparsers.add_parser("status", help="Show batch ledger entries")
    status_parser.add_argument("--batch-id", default=None, help="Show a single batch")
    status_parser.add_argument(
        "--status", default=None, choices=["pending", "in_progress", "completed", "failed"], help="Filter by status"
    )
    status_parser.add_argument("--limit", type=int, default=50, help="Most recent entries to show (default: 50)")
    add_db_arguments(status_parser)

    retry_parser = subparsers.add_parser("retry", help="Release a failed batch's partial output and load it again")
    retry_parser.add_argument("--batch-id", required=True, help="Batch id")
    retry_parser.add_argument("--schema", default="config/sales_schema.yaml", help="Star schema YAML file")
    retry_parser.add_argument("--no-run", action="store_true", help="Only release the batch, do not load it")
    add_db_arguments(retry_parser)

    return parser


COMMANDS = {
    "init-db": init_db_command,
    "ingest": ingest_command,
    "load": load_command,
    "status": status_command,
    "retry": retry_command,
}


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    settings = PipelineSettings.from_env(args.env_file)
    setup_logger(level=args.log_level)

    metrics_port = args.metrics_port or settings.metrics_port
    if metrics_port:
        start_metrics_server(metrics_port)

    try:
        COMMANDS[args.command](args, settings)
    except MedallionError as e:
        logger.error(f"{args.command} failed: {e}")
        sys.exit(2)
    except Exception as e:
        logger.error(f"Error during {args.command}: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if args.metrics_file:
            write_metrics_file(args.metrics_file)


if __name__ == "__main__":
    main()

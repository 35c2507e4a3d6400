#!/usr/bin/env python3
"""
Shopify bulk operations command line.

Credentials come from a JSON config file (--config, same "parameters" shape
as the extraction component) or from the SHOPIFY_STORE_NAME,
SHOPIFY_API_TOKEN and SHOPIFY_API_VERSION environment variables.

Usage:
    python cli.py bulk-query products.graphql --poll --output products.json
    python cli.py bulk-mutation create.graphql variables.jsonl --poll
    python cli.py bulk-status [OPERATION_ID] [--type QUERY]
    python cli.py bulk-cancel OPERATION_ID
    python cli.py bulk-results OPERATION_ID_OR_URL [--raw] [--output FILE]
    python cli.py analyze results.csv [--force-import] [--tmp-dir DIR]
"""

import argparse
import json
import logging
import os
import re
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import duckdb

from component import sql_literal
from configuration import Configuration
from shopify_bulk.bulk_operations import BulkOperations
from shopify_bulk.client import ShopifyGraphQLClient
from shopify_bulk.exceptions import BulkOperationError, ShopifyBulkException
from shopify_bulk.jsonl import read_variables_file
from shopify_bulk.models import Operation, OperationStatus, OperationType

RESERVED_COLUMN_NAMES = {"select", "type", "id"}


def load_configuration(config_path: str | None) -> Configuration:
    """Load credentials from a config file or the environment"""
    if config_path:
        with open(config_path, encoding="utf-8") as f:
            config = json.load(f)
        return Configuration(**config.get("parameters", config))

    parameters = {
        "store_name": os.environ.get("SHOPIFY_STORE_NAME", ""),
        "api_token": os.environ.get("SHOPIFY_API_TOKEN", ""),
    }
    if os.environ.get("SHOPIFY_API_VERSION"):
        parameters["api_version"] = os.environ["SHOPIFY_API_VERSION"]
    return Configuration(**parameters)


def create_bulk_operations(args: argparse.Namespace) -> BulkOperations:
    params = load_configuration(args.config)
    client = ShopifyGraphQLClient(params.store_name, params.api_token, params.api_version)
    return BulkOperations(client)


def underscore(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", value.lower()).strip("_")


def header_to_column(header: str) -> str:
    column = underscore(header)
    return f"{column}_1" if column in RESERVED_COLUMN_NAMES else column


def display_operation_status(operation: Operation):
    print(f"Operation ID: {operation.id}")
    print(f"Type: {operation.type.value if operation.type else 'UNKNOWN'}")
    print(f"Status: {operation.status.value}")
    print(f"Created: {operation.created_at}")
    if operation.completed_at:
        print(f"Completed: {operation.completed_at}")
    print(f"Objects: {operation.object_count}")
    if operation.file_size is not None:
        print(f"File Size: {operation.file_size} bytes")
    if operation.error_code:
        print(f"Error Code: {operation.error_code}")
    if operation.url:
        print(f"Results URL: {operation.url}")
    if operation.partial_data_url:
        print(f"Partial Results URL: {operation.partial_data_url}")


def output_content(content: str, output_file: str | None = None):
    if output_file:
        Path(output_file).write_text(content, encoding="utf-8")
        print(f"Results written to: {output_file}")
    else:
        print(content)


def output_results(results: list[Any], output_file: str | None = None):
    output_content("\n".join(json.dumps(result, indent=2) for result in results), output_file)


def print_progress(operation: Operation):
    elapsed = ""
    if operation.created_at:
        elapsed = f", Elapsed: {(datetime.now(timezone.utc) - operation.created_at).total_seconds():.0f}s"
    print(f"Status: {operation.status.value}, Objects: {operation.object_count}{elapsed}")


def finish_operation(operations: BulkOperations, operation: Operation, args: argparse.Namespace) -> int:
    """Report a submitted operation and, with --poll, wait and download its results"""
    print(f"Bulk operation submitted: {operation.id}")
    print(f"Status: {operation.status.value}")

    if not args.poll:
        print(f"Use 'bulk-status {operation.id}' to check status")
        return 0

    print(f"Polling for completion (timeout: {args.timeout}s)...")
    completed = operations.poll_until_terminal(
        operation.id, poll_interval=args.poll_interval, timeout=args.timeout, on_update=print_progress
    )

    if completed.status != OperationStatus.COMPLETED:
        print(f"Operation finished with status: {completed.status.value}")
        if completed.error_code:
            print(f"Error code: {completed.error_code}")
        return 1

    print("Operation completed successfully!")
    if not completed.url:
        print("No results URL available (query may have returned no data)")
        return 0

    output_results(operations.download(completed), args.output)
    return 0


def bulk_query(args: argparse.Namespace) -> int:
    query_file = Path(args.query_file)
    if not query_file.exists():
        print(f"Error: Query file '{query_file}' not found")
        return 1

    operations = create_bulk_operations(args)
    print(f"Submitting bulk query from {query_file}...")
    operation = operations.submit_query(query_file.read_text(encoding="utf-8"), group_objects=args.group_objects)
    return finish_operation(operations, operation, args)


def bulk_mutation(args: argparse.Namespace) -> int:
    mutation_file = Path(args.mutation_file)
    variables_file = Path(args.variables_file)
    for path, kind in ((mutation_file, "Mutation"), (variables_file, "Variables")):
        if not path.exists():
            print(f"Error: {kind} file '{path}' not found")
            return 1

    try:
        variables = read_variables_file(variables_file)
    except ValueError as e:
        print(f"Error parsing variables file: {e}")
        return 1

    operations = create_bulk_operations(args)
    print(f"Submitting bulk mutation from {mutation_file} with {len(variables)} operations...")
    operation = operations.submit_mutation(
        mutation_file.read_text(encoding="utf-8"),
        variables,
        group_objects=args.group_objects,
        client_identifier=args.client_identifier,
    )
    return finish_operation(operations, operation, args)


def bulk_status(args: argparse.Namespace) -> int:
    operations = create_bulk_operations(args)

    if args.operation_id:
        operation = operations.get_operation(args.operation_id)
        if operation is None:
            print(f"Operation not found: {args.operation_id}")
            return 1
        display_operation_status(operation)
        return 0

    operation = operations.current_operation(args.type)
    if operation is None:
        print("No current bulk operation found")
        if args.type:
            print(f"(filtered by type: {args.type})")
        return 0

    display_operation_status(operation)
    return 0


def bulk_cancel(args: argparse.Namespace) -> int:
    operations = create_bulk_operations(args)

    print(f"Canceling bulk operation: {args.operation_id}")
    operation = operations.cancel(args.operation_id)

    print("Cancel requested")
    if operation:
        print(f"Current status: {operation.status.value}")
    return 0


def bulk_results(args: argparse.Namespace) -> int:
    operations = create_bulk_operations(args)

    if args.operation_id_or_url.startswith("http"):
        url = args.operation_id_or_url
    else:
        operation = operations.get_operation(args.operation_id_or_url)
        if operation is None:
            print(f"Operation not found: {args.operation_id_or_url}")
            return 1

        if operation.status != OperationStatus.COMPLETED:
            print(f"Operation is not completed (status: {operation.status.value})")
            return 1

        url = operation.url or operation.partial_data_url
        if not url:
            print("No results URL available for operation")
            return 1

    print(f"Downloading results from: {url}")
    results = operations.download(url, parse=not args.raw)

    if args.raw:
        data = results.encode("utf-8", errors="surrogateescape")
        if args.output:
            Path(args.output).write_bytes(data)
            print(f"Results written to: {args.output}")
        else:
            print(data.decode("utf-8", errors="replace"))
        print(f"Downloaded {len(data)} bytes")
    else:
        output_results(results, args.output)
        print(f"Downloaded {len(results)} records")
    return 0


def analyze(args: argparse.Namespace) -> int:
    """Import a results CSV into a local DuckDB database and summarize it"""
    csv_path = Path(args.csv_path).expanduser().resolve()
    if not csv_path.exists():
        print(f"Error: CSV file '{csv_path}' not found")
        return 1

    database = Path(args.tmp_dir) / f"shopify-bulk-analyze-{underscore(csv_path.name)}.duckdb"
    should_import = args.force_import or not database.exists()

    if should_import and database.exists():
        database.unlink()

    conn = duckdb.connect(str(database))
    try:
        if should_import:
            print(f"==> Importing {csv_path} into {database}")
            source = f"read_csv({sql_literal(csv_path)}, header = true, all_varchar = true)"
            columns = [row[0] for row in conn.execute(f"DESCRIBE SELECT * FROM {source}").fetchall()]
            select_clause = ", ".join(f'"{column}" AS "{header_to_column(column)}"' for column in columns)
            conn.execute(f"CREATE OR REPLACE TABLE results AS SELECT {select_clause} FROM {source}")

        columns = [row[0] for row in conn.execute("DESCRIBE results").fetchall()]
        row_count = conn.execute("SELECT COUNT(*) FROM results").fetchone()[0]

        print(f"==> {csv_path.name}: {row_count} rows, columns: {', '.join(columns)}")
        if "import_result" in columns:
            breakdown = conn.execute(
                "SELECT import_result, COUNT(*) AS total FROM results GROUP BY import_result ORDER BY total DESC"
            ).fetchall()
            for import_result, total in breakdown:
                print(f"   -> {import_result}: {total}")
        print(f"==> Open the database with: duckdb {database}")
    finally:
        conn.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Shopify bulk operations toolkit")
    parser.add_argument("--config", "-c", help="Path to a JSON config file with store credentials")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_submit_options(subparser: argparse.ArgumentParser):
        subparser.add_argument("--group-objects", action="store_true", help="Group objects by type in results")
        subparser.add_argument("--poll", action="store_true", help="Poll until completion and download results")
        subparser.add_argument("--timeout", type=float, default=1800, help="Polling timeout in seconds")
        subparser.add_argument("--poll-interval", type=float, default=5, help="Seconds between status checks")
        subparser.add_argument("--output", help="Output file for results (defaults to stdout)")

    query_parser = subparsers.add_parser("bulk-query", help="Submit a bulk GraphQL query")
    query_parser.add_argument("query_file")
    add_submit_options(query_parser)
    query_parser.set_defaults(handler=bulk_query)

    mutation_parser = subparsers.add_parser("bulk-mutation", help="Submit a bulk GraphQL mutation")
    mutation_parser.add_argument("mutation_file")
    mutation_parser.add_argument("variables_file", help="JSON array or .jsonl file with one variables object per line")
    add_submit_options(mutation_parser)
    mutation_parser.add_argument("--client-identifier", help="Client identifier for tracking")
    mutation_parser.set_defaults(handler=bulk_mutation)

    status_parser = subparsers.add_parser("bulk-status", help="Check the status of a bulk operation")
    status_parser.add_argument("operation_id", nargs="?")
    status_parser.add_argument("--type", choices=[t.value for t in OperationType], help="Operation type filter")
    status_parser.set_defaults(handler=bulk_status)

    cancel_parser = subparsers.add_parser("bulk-cancel", help="Cancel a running bulk operation")
    cancel_parser.add_argument("operation_id")
    cancel_parser.set_defaults(handler=bulk_cancel)

    results_parser = subparsers.add_parser("bulk-results", help="Download results from a completed bulk operation")
    results_parser.add_argument("operation_id_or_url")
    results_parser.add_argument("--raw", action="store_true", help="Output raw JSONL without parsing")
    results_parser.add_argument("--output", help="Output file for results (defaults to stdout)")
    results_parser.set_defaults(handler=bulk_results)

    analyze_parser = subparsers.add_parser("analyze", help="Import a results CSV into a local DuckDB database")
    analyze_parser.add_argument("csv_path")
    analyze_parser.add_argument("--force-import", action="store_true", help="Re-import even if the database exists")
    analyze_parser.add_argument("--tmp-dir", default=tempfile.gettempdir(), help="Directory for the database file")
    analyze_parser.set_defaults(handler=analyze)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return args.handler(args)
    except BulkOperationError as e:
        print(f"Bulk operation error: {e}")
        return 1
    except ShopifyBulkException as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

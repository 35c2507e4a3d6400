# src/component.py
import logging
import shutil
import time
from collections import OrderedDict
from pathlib import Path
from typing import Any

import duckdb
from keboola.component.base import ComponentBase, sync_action
from keboola.component.dao import BaseType, ColumnDefinition, SupportedDataTypes
from keboola.component.exceptions import UserException

from configuration import BulkMutation, Configuration
from shopify_bulk.bulk_operations import BulkOperationResult, BulkOperations
from shopify_bulk.client import ShopifyGraphQLClient
from shopify_bulk.exceptions import BulkOperationError, ConfigurationError
from shopify_bulk.jsonl import read_variables_file
from shopify_bulk.models import Operation, OperationStatus


def sql_literal(value: Any) -> str:
    """Quote a value as a DuckDB string literal"""
    return "'" + str(value).replace("'", "''") + "'"


class Component(ComponentBase):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.logger = logging.getLogger(__name__)
        self.params = Configuration(**self.configuration.parameters)

        self.conn = duckdb.connect()
        self.conn.execute("SET temp_directory='./duckdb_temp'")
        self.conn.execute("SET preserve_insertion_order=false")

    def run(self):
        """
        Main execution code
        """
        params = self.params
        operations = self._create_bulk_operations()

        Path(self.tables_out_path).mkdir(parents=True, exist_ok=True)
        Path(self.files_out_path).mkdir(parents=True, exist_ok=True)

        self.logger.info(
            f"Starting {len(params.bulk_queries)} bulk queries and "
            f"{len(params.bulk_mutations)} bulk mutations on {params.shop_url}"
        )

        # Shopify runs one bulk operation of a kind at a time, so jobs go strictly in sequence
        for bulk_query in params.bulk_queries:
            self.logger.info(f"Processing bulk query: {bulk_query.name}")
            api_wait_start = time.time()
            operation = operations.submit_query(bulk_query.query, group_objects=bulk_query.group_objects)
            self._process_operation(operations, operation, bulk_query.name, api_wait_start)

        for bulk_mutation in params.bulk_mutations:
            self.logger.info(f"Processing bulk mutation: {bulk_mutation.name}")
            variables = self._load_variables(bulk_mutation)
            api_wait_start = time.time()
            operation = operations.submit_mutation(
                bulk_mutation.mutation,
                variables,
                group_objects=bulk_mutation.group_objects,
                client_identifier=bulk_mutation.client_identifier,
            )
            self._process_operation(operations, operation, bulk_mutation.name, api_wait_start)

        self.logger.info("Bulk operations completed successfully")

    @sync_action("bulk_status")
    def bulk_status(self) -> dict[str, Any]:
        """Report the configured operation, or the shop's current one"""
        operations = self._create_bulk_operations()

        if self.params.operation_id:
            operation = operations.get_operation(self.params.operation_id)
        else:
            operation = operations.current_operation(self.params.operation_type)

        if operation is None:
            self.logger.info("No bulk operation found")
            return {"status": "NONE"}

        self._log_status(operation)
        return operation.to_dict()

    @sync_action("bulk_cancel")
    def bulk_cancel(self) -> dict[str, Any]:
        """Cancel the configured operation"""
        if not self.params.operation_id:
            raise ConfigurationError("operation_id is required for the bulk_cancel action")

        operations = self._create_bulk_operations()
        operation = operations.cancel(self.params.operation_id)
        if operation is None:
            return {"id": self.params.operation_id, "status": "NONE"}

        self.logger.info(f"Cancel requested, operation status: {operation.status.value}")
        return operation.to_dict()

    def _create_bulk_operations(self) -> BulkOperations:
        client = ShopifyGraphQLClient(
            store_name=self.params.store_name,
            api_token=self.params.api_token,
            api_version=self.params.api_version,
        )
        return BulkOperations(client)

    def _load_variables(self, bulk_mutation: BulkMutation) -> list[dict[str, Any]]:
        if not bulk_mutation.variables_file:
            return bulk_mutation.variables

        variables_path = Path(self.files_in_path) / bulk_mutation.variables_file
        if not variables_path.exists():
            raise ConfigurationError(f"Variables file not found: {variables_path}")

        try:
            return read_variables_file(variables_path)
        except ValueError as e:
            raise ConfigurationError(f"Error parsing variables file {variables_path}: {e}")

    def _log_status(self, operation: Operation):
        self.logger.info(f"Bulk operation status: {operation.status.value}, objects: {operation.object_count}")

    def _process_operation(self, operations: BulkOperations, operation: Operation, name: str, api_wait_start: float):
        """Wait for a submitted operation and export its results"""
        completed = operations.poll_until_terminal(
            operation.id,
            poll_interval=self.params.polling.poll_interval,
            timeout=self.params.polling.timeout,
            on_update=self._log_status,
        )

        if completed.status != OperationStatus.COMPLETED:
            error = completed.error_code or "Unknown error"
            raise BulkOperationError(
                f"Bulk operation {completed.status.value.lower()}: {error}", error_code=completed.error_code
            )

        api_wait_time = time.time() - api_wait_start
        file_def = self.create_out_file_definition(f"{name}_temp.jsonl")
        result = operations.export_results(completed, file_def.full_path, name, api_wait_time)

        # objectCount does not cover every line (mutation userErrors), the file size does
        if result.size_bytes > 0:
            self._process_bulk_results(result)
        else:
            self.logger.info(f"Bulk operation '{name}' returned no results")
            Path(result.file_path).unlink(missing_ok=True)

    def _process_bulk_results(self, bulk_result: BulkOperationResult):
        """Load bulk results into DuckDB and export them as a CSV table"""
        process_start = time.time()
        table_name = bulk_result.name

        self.logger.info(f"Processing {bulk_result.size_bytes} bytes of results from {bulk_result.file_path}")

        try:
            self.conn.execute(f'DROP TABLE IF EXISTS "{table_name}"')
            self.conn.execute(
                f'CREATE TABLE "{table_name}" AS SELECT * FROM read_json_auto({sql_literal(bulk_result.file_path)})'
            )

            columns_info = self.conn.execute(f'DESCRIBE "{table_name}"').fetchall()
            self._export_table_to_csv(table_name, columns_info)

            result_count = self.conn.execute(f'SELECT COUNT(*) FROM "{table_name}"').fetchone()
            row_count = result_count[0] if result_count else 0

            process_time = time.time() - process_start
            self.logger.info(
                f"Bulk operation '{table_name}' processing complete: {row_count} items in {process_time:.2f}s "
                f"(API wait: {bulk_result.api_wait_time:.2f}s, download: {bulk_result.download_time:.2f}s, "
                f"process: {process_time:.2f}s)"
            )
        finally:
            if self.params.debug:
                debug_file = Path(self.files_out_path) / f"bulk_{table_name}_download.jsonl"
                shutil.copy2(bulk_result.file_path, debug_file)
                self.logger.info(f"[DEBUG] Saved bulk results to {debug_file}")
            Path(bulk_result.file_path).unlink(missing_ok=True)

    def _export_table_to_csv(self, table_name: str, table_meta):
        """Export DuckDB table to CSV with a typed manifest, nested columns serialized as JSON"""
        column_names = [c[0] for c in table_meta]
        primary_key = ["id"] if "id" in column_names else []

        schema = OrderedDict(
            {
                c[0]: ColumnDefinition(
                    data_types=BaseType(dtype=self.convert_base_types(c[1])),
                    nullable=c[0] not in primary_key,
                    primary_key=c[0] in primary_key,
                )
                for c in table_meta
            }  # c[0] is the column name, c[1] is the data type
        )

        out_table = self.create_out_table_definition(
            f"{table_name}.csv",
            schema=schema,
            incremental=True,
            has_header=True,
        )

        select_parts = []
        for col_name, col_type, *_ in table_meta:
            if col_type.upper().startswith(("STRUCT", "MAP")) or col_type.endswith("[]"):
                select_parts.append(f'to_json("{col_name}") AS "{col_name}"')
            else:
                select_parts.append(f'"{col_name}"')

        select_clause = ", ".join(select_parts)

        q = (
            f'COPY (SELECT {select_clause} FROM "{table_name}") TO {sql_literal(out_table.full_path)} '
            "WITH (FORMAT CSV, HEADER, DELIMITER ',', QUOTE '\"')"
        )
        logging.debug(f"Running query: {q}; ")
        try:
            self.conn.execute(q)
        except duckdb.ConversionException as e:
            raise UserException(f"Error during query execution: {e}")

        self.write_manifest(out_table)

    @staticmethod
    def convert_base_types(dtype: str) -> SupportedDataTypes:
        if dtype in [
            "TINYINT",
            "SMALLINT",
            "INTEGER",
            "BIGINT",
            "HUGEINT",
            "UTINYINT",
            "USMALLINT",
            "UINTEGER",
            "UBIGINT",
            "UHUGEINT",
        ]:
            return SupportedDataTypes.INTEGER
        elif dtype == "REAL" or dtype.startswith("DECIMAL"):
            return SupportedDataTypes.NUMERIC
        elif dtype == "DOUBLE":
            return SupportedDataTypes.FLOAT
        elif dtype == "BOOLEAN":
            return SupportedDataTypes.BOOLEAN
        elif dtype in ["TIMESTAMP", "TIMESTAMP WITH TIME ZONE"]:
            return SupportedDataTypes.TIMESTAMP
        elif dtype == "DATE":
            return SupportedDataTypes.DATE
        else:
            return SupportedDataTypes.STRING


"""
    Main entrypoint
"""
if __name__ == "__main__":
    try:
        comp = Component()
        # this triggers the run method by default and is controlled by the configuration.action parameter
        comp.execute_action()
    except UserException as exc:
        logging.exception(exc)
        exit(1)
    except Exception as exc:
        logging.exception(exc)
        exit(2)

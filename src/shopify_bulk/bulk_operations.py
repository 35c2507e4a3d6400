"""
Bulk operation lifecycle on top of the Shopify Admin GraphQL API.

A bulk job is submitted (bulkOperationRunQuery, or bulkOperationRunMutation
after staging a JSONL variables file), polled until it reaches a terminal
status, and its JSONL result file is downloaded from the operation url.
Shopify runs at most one bulk operation of each kind per shop at a time;
this is observed only as an OPERATION_IN_PROGRESS user error on submission.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import wraps
from typing import Any, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

from . import staged_upload
from .exceptions import (
    CancelError,
    DownloadError,
    OperationInProgressError,
    OperationNotFoundError,
    PollingTimeoutError,
    SubmissionError,
    TransportError,
)
from .jsonl import dump_jsonl, parse_jsonl
from .models import Operation, OperationType, StagedUploadTarget, UserError
from .query_loader import QueryLoader

OPERATION_IN_PROGRESS = "OPERATION_IN_PROGRESS"
DOWNLOAD_CHUNK_SIZE = 8192


class GraphQLExecutor(Protocol):
    def execute_query(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]: ...


@dataclass
class BulkOperationResult:
    """Result file of a completed bulk operation"""

    name: str
    operation: Operation
    file_path: str
    item_count: int
    api_wait_time: float  # Time spent waiting for Shopify to process
    download_time: float  # Time spent downloading the JSONL file
    size_bytes: int = 0


def log_bulk_performance(func):
    """Decorator to log performance metrics for bulk operations"""

    @wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger(__name__)

        result = func(*args, **kwargs)

        if result:
            total_time = result.api_wait_time + result.download_time
            items_per_second = result.item_count / total_time if total_time > 0 else 0
            logger.info(
                f"{result.name.capitalize()} bulk operation: "
                f"API wait {result.api_wait_time:.2f}s, "
                f"download {result.download_time:.2f}s, "
                f"total {total_time:.2f}s "
                f"({result.item_count} items, {items_per_second:.2f} items/s)"
            )

        return result

    return wrapper


class BulkOperations:
    """
    Submits, tracks, cancels and retrieves Shopify bulk operations
    """

    def __init__(self, client: GraphQLExecutor, query_loader: QueryLoader | None = None, http_timeout: float = 300):
        """
        Args:
            client: Executor for GraphQL documents, usually ShopifyGraphQLClient
            query_loader: Loader for the bundled .graphql documents
            http_timeout: Timeout in seconds for staged upload and result download requests
        """
        self.client = client
        self.query_loader = query_loader or QueryLoader()
        self.http_timeout = http_timeout
        self.logger = logging.getLogger(__name__)

    def submit_query(self, query: str, group_objects: bool = False) -> Operation:
        """
        Submit a bulk query operation

        Args:
            query: GraphQL query to run in bulk
            group_objects: Whether to group nested objects under their parents in the result file

        Returns:
            The created operation

        Raises:
            OperationInProgressError: Another bulk query is already running
            SubmissionError: The platform rejected the submission
        """
        self.logger.info("Submitting bulk query")
        mutation = self.query_loader.load_query("BulkOperationRunQuery")
        result = self._execute(mutation, {"query": query, "groupObjects": group_objects})

        operation = self._handle_bulk_operation_response(result, "bulkOperationRunQuery")
        self.logger.info(f"Bulk operation started: {operation.id} ({operation.status.value})")
        return operation

    def submit_mutation(
        self,
        mutation: str,
        variables: list[dict[str, Any]],
        group_objects: bool = False,
        client_identifier: str | None = None,
    ) -> Operation:
        """
        Submit a bulk mutation operation

        The variables are staged as a JSONL file first; the mutation runs once
        per record. Not idempotent: every call stages a new file and creates a
        new operation.

        Args:
            mutation: GraphQL mutation to run for every variables record
            variables: One variables object per mutation call, in order
            group_objects: Whether to group objects in the result file
            client_identifier: Optional identifier for tracking the operation

        Returns:
            The created operation

        Raises:
            OperationInProgressError: Another bulk mutation is already running
            SubmissionError: Staging or submission was rejected
            StagedUploadError: The variables file upload failed
        """
        content = dump_jsonl(variables).encode("utf-8")
        self.logger.info(f"Submitting bulk mutation with {len(variables)} variable sets")

        target = self._create_staged_upload_target()
        staged_upload.upload(target, content, timeout=self.http_timeout)

        staged_upload_path = target.parameter("key")
        if not staged_upload_path:
            raise SubmissionError("Staged upload target is missing the 'key' parameter")

        variables_payload: dict[str, Any] = {
            "mutation": mutation,
            "stagedUploadPath": staged_upload_path,
            "groupObjects": group_objects,
        }
        if client_identifier is not None:
            variables_payload["clientIdentifier"] = client_identifier

        document = self.query_loader.load_query("BulkOperationRunMutation")
        result = self._execute(document, variables_payload)

        operation = self._handle_bulk_operation_response(result, "bulkOperationRunMutation")
        self.logger.info(f"Bulk operation started: {operation.id} ({operation.status.value})")
        return operation

    def current_operation(self, operation_type: OperationType | str | None = None) -> Operation | None:
        """
        Get the shop's current bulk operation

        Args:
            operation_type: Restrict to QUERY or MUTATION operations

        Returns:
            The operation, or None when the shop has none
        """
        if operation_type:
            query = self.query_loader.load_query("CurrentBulkOperationByType", "CurrentBulkOperation")
            variables = {"type": OperationType(operation_type).value}
        else:
            query = self.query_loader.load_query("CurrentBulkOperation")
            variables = None

        result = self._execute(query, variables)
        return self._to_operation(result.get("currentBulkOperation"))

    def get_operation(self, operation_id: str) -> Operation | None:
        """
        Get a bulk operation by id

        Returns:
            The operation, or None when the id does not resolve to a bulk operation
        """
        query = self.query_loader.load_query("BulkOperationNode")
        result = self._execute(query, {"id": operation_id})
        return self._to_operation(result.get("node"))

    def poll_until_terminal(
        self,
        operation_id: str,
        poll_interval: float = 5,
        timeout: float = 1800,
        on_update: Callable[[Operation], None] | None = None,
    ) -> Operation:
        """
        Poll a bulk operation until it reaches a terminal status

        Every fetched snapshot, the terminal one included, is passed to
        on_update before the status is checked. An operation that is already
        terminal on the first fetch is returned without waiting.

        Args:
            operation_id: Bulk operation id
            poll_interval: Seconds between status checks
            timeout: Maximum seconds to wait
            on_update: Optional callback receiving every snapshot

        Returns:
            The terminal operation snapshot

        Raises:
            PollingTimeoutError: The operation is still running after timeout seconds
            OperationNotFoundError: The id does not resolve to a bulk operation
        """
        if poll_interval <= 0 or timeout <= 0:
            raise ValueError("poll_interval and timeout must be positive")

        start_time = time.monotonic()

        while True:
            operation = self.get_operation(operation_id)
            if operation is None:
                raise OperationNotFoundError(f"Bulk operation not found: {operation_id}")

            if on_update:
                on_update(operation)

            if operation.is_terminal:
                self.logger.info(f"Bulk operation {operation.id} finished with status {operation.status.value}")
                return operation

            if time.monotonic() - start_time > timeout:
                raise PollingTimeoutError(f"Polling timeout exceeded ({timeout}s)", timeout=timeout)

            time.sleep(poll_interval)

    def cancel(self, operation_id: str) -> Operation | None:
        """
        Request cancellation of a running bulk operation

        Cancellation is asynchronous, the returned snapshot may still be
        CANCELING; poll for the final status.

        Raises:
            CancelError: The platform refused to cancel
        """
        self.logger.info(f"Canceling bulk operation: {operation_id}")
        mutation = self.query_loader.load_query("BulkOperationCancel")
        result = self._execute(mutation, {"id": operation_id})

        payload = result.get("bulkOperationCancel") or {}
        user_errors = [UserError.from_dict(e) for e in payload.get("userErrors") or []]
        if user_errors:
            raise CancelError(
                f"Failed to cancel bulk operation: {', '.join(e.message for e in user_errors)}",
                user_errors=user_errors,
            )

        return self._to_operation(payload.get("bulkOperation"))

    def download(self, operation_or_url: Operation | str | None, parse: bool = True) -> list[Any] | str | None:
        """
        Download the JSONL results of a bulk operation

        Args:
            operation_or_url: Operation snapshot (its url is used) or a direct URL
            parse: Parse the JSON lines; otherwise return the body unmodified, with
                undecodable bytes kept as surrogate escapes

        Returns:
            Parsed records, the raw body, or None when there is no result url
        """
        url = self._resolve_url(operation_or_url)
        if not url:
            return None

        self.logger.info(f"Downloading bulk operation results from: {url}")
        try:
            with urlopen(url, timeout=self.http_timeout) as response:
                self._check_download_status(response.status, response.reason)
                body = response.read()
        except HTTPError as e:
            raise DownloadError(
                f"Failed to download results: {e.code} {e.reason}", status_code=e.code, reason=str(e.reason)
            ) from e
        except URLError as e:
            raise TransportError(f"Failed to download results: {e.reason}") from e

        self.logger.info(f"Downloaded {len(body)} bytes of results")

        if parse:
            # Lines are decoded one by one so a corrupt line is skipped, not the whole file
            return parse_jsonl(body)
        return body.decode("utf-8", errors="surrogateescape")

    def download_to_file(self, operation_or_url: Operation | str | None, file_path: str) -> int | None:
        """
        Stream the JSONL results of a bulk operation to a file

        Returns:
            Number of bytes written, or None when there is no result url
        """
        url = self._resolve_url(operation_or_url)
        if not url:
            return None

        self.logger.info(f"Downloading bulk operation results from: {url}")
        size = 0
        try:
            with urlopen(url, timeout=self.http_timeout) as response:
                self._check_download_status(response.status, response.reason)
                with open(file_path, "wb") as f:
                    while True:
                        chunk = response.read(DOWNLOAD_CHUNK_SIZE)
                        if not chunk:
                            break
                        f.write(chunk)
                        size += len(chunk)
        except HTTPError as e:
            raise DownloadError(
                f"Failed to download results: {e.code} {e.reason}", status_code=e.code, reason=str(e.reason)
            ) from e
        except URLError as e:
            raise TransportError(f"Failed to download results: {e.reason}") from e

        self.logger.info(f"Downloaded {size} bytes of results, saved to {file_path}")
        return size

    @log_bulk_performance
    def export_results(
        self, operation: Operation, file_path: str, name: str, api_wait_time: float
    ) -> BulkOperationResult:
        """
        Save the results of a completed operation to a JSONL file

        An operation without a result url (empty dataset) produces an empty file.
        """
        download_start = time.time()

        size_bytes = self.download_to_file(operation, file_path)
        if size_bytes is None:
            self.logger.info("Bulk operation completed with no results (empty dataset)")
            with open(file_path, "w", encoding="utf-8"):
                pass
            return BulkOperationResult(
                name=name,
                operation=operation,
                file_path=file_path,
                item_count=0,
                api_wait_time=api_wait_time,
                download_time=0.0,
            )

        return BulkOperationResult(
            name=name,
            operation=operation,
            file_path=file_path,
            item_count=operation.object_count,
            api_wait_time=api_wait_time,
            download_time=time.time() - download_start,
            size_bytes=size_bytes,
        )

    def _execute(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            return self.client.execute_query(query, variables)
        except TransportError:
            raise
        except Exception as e:
            self.logger.error(f"GraphQL query failed: {e}")
            raise TransportError(f"GraphQL query failed: {e}") from e

    def _create_staged_upload_target(self) -> StagedUploadTarget:
        mutation = self.query_loader.load_query("StagedUploadsCreate")
        variables = {
            "input": [
                {
                    "resource": staged_upload.BULK_MUTATION_RESOURCE,
                    "filename": staged_upload.VARIABLES_FILENAME,
                    "mimeType": staged_upload.VARIABLES_MIME_TYPE,
                    "httpMethod": "POST",
                }
            ]
        }
        result = self._execute(mutation, variables)

        payload = result.get("stagedUploadsCreate") or {}
        user_errors = [UserError.from_dict(e) for e in payload.get("userErrors") or []]
        if user_errors:
            raise SubmissionError(
                f"Failed to create staged upload: {', '.join(e.message for e in user_errors)}",
                user_errors=user_errors,
            )

        targets = payload.get("stagedTargets") or []
        if not targets:
            raise SubmissionError("Failed to create staged upload: no staged target returned")

        return StagedUploadTarget.from_dict(targets[0])

    def _handle_bulk_operation_response(self, result: dict[str, Any], operation_name: str) -> Operation:
        payload = result.get(operation_name)
        if payload is None:
            raise SubmissionError(f"No {operation_name} data in response")

        user_errors = [UserError.from_dict(e) for e in payload.get("userErrors") or []]
        if user_errors:
            messages = ", ".join(e.message for e in user_errors)
            if any(e.code == OPERATION_IN_PROGRESS for e in user_errors):
                raise OperationInProgressError(
                    f"Another bulk operation is already in progress: {messages}",
                    error_code=OPERATION_IN_PROGRESS,
                    user_errors=user_errors,
                )
            raise SubmissionError(f"Bulk operation failed: {messages}", user_errors=user_errors)

        operation = self._to_operation(payload.get("bulkOperation"))
        if operation is None:
            raise SubmissionError(f"No bulk operation returned by {operation_name}")
        return operation

    @staticmethod
    def _to_operation(node: dict[str, Any] | None) -> Operation | None:
        try:
            return Operation.from_node(node)
        except (KeyError, ValueError) as e:
            raise TransportError(f"Malformed bulk operation in response: {e}") from e

    @staticmethod
    def _resolve_url(operation_or_url: Operation | str | None) -> str | None:
        if isinstance(operation_or_url, Operation):
            return operation_or_url.url or None
        return operation_or_url or None

    @staticmethod
    def _check_download_status(status: int, reason: str) -> None:
        if not 200 <= status < 300:
            raise DownloadError(f"Failed to download results: {status} {reason}", status_code=status, reason=reason)

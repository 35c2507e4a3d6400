import os
import tempfile
import unittest
from urllib.error import HTTPError, URLError

import mock
from freezegun import freeze_time

from shopify_bulk.bulk_operations import BulkOperations
from shopify_bulk.exceptions import (
    CancelError,
    DownloadError,
    OperationInProgressError,
    OperationNotFoundError,
    PollingTimeoutError,
    SubmissionError,
    TransportError,
)
from shopify_bulk.jsonl import dump_jsonl
from shopify_bulk.models import Operation, OperationStatus, OperationType, StagedUploadTarget
from tests.helpers import bulk_operation_node, http_response

SAMPLE_QUERY = "{ products { edges { node { id title handle } } } }"
SAMPLE_MUTATION = """mutation createProduct($input: ProductInput!) {
  productCreate(input: $input) { product { id title } userErrors { field message } }
}"""
SAMPLE_VARIABLES = [
    {"input": {"title": "Product 1", "productType": "Apparel"}},
    {"input": {"title": "Product 2", "productType": "Apparel"}},
]

STAGED_UPLOAD_RESPONSE = {
    "stagedUploadsCreate": {
        "stagedTargets": [
            {
                "url": "https://shopify-staged-uploads.storage.googleapis.com/",
                "resourceUrl": None,
                "parameters": [
                    {"name": "key", "value": "tmp/12345/bulk/bulk_mutation_variables.jsonl"},
                    {"name": "Content-Type", "value": "text/jsonl"},
                    {"name": "policy", "value": "eyJjb25kaXRpb25zIjpbXX0="},
                ],
            }
        ],
        "userErrors": [],
    }
}


def run_query_response(node=None, user_errors=None):
    return {"bulkOperationRunQuery": {"bulkOperation": node, "userErrors": user_errors or []}}


def node_response(status, **overrides):
    return {"node": bulk_operation_node(status, **overrides)}


class BulkOperationsTestCase(unittest.TestCase):
    def setUp(self):
        self.client = mock.Mock()
        self.operations = BulkOperations(self.client)

    def executed_variables(self, call_index=-1):
        return self.client.execute_query.call_args_list[call_index][0][1]

    def executed_query(self, call_index=-1):
        return self.client.execute_query.call_args_list[call_index][0][0]


class TestSubmitQuery(BulkOperationsTestCase):
    def test_submits_bulk_query(self):
        self.client.execute_query.return_value = run_query_response(bulk_operation_node("CREATED"))

        operation = self.operations.submit_query(SAMPLE_QUERY)

        self.assertEqual(operation.id, "gid://shopify/BulkOperation/123456")
        self.assertEqual(operation.status, OperationStatus.CREATED)
        self.assertEqual(operation.type, OperationType.QUERY)
        self.assertIsNone(operation.completed_at)
        self.assertIn("bulkOperationRunQuery", self.executed_query())
        self.assertEqual(self.executed_variables(), {"query": SAMPLE_QUERY, "groupObjects": False})

    def test_submits_bulk_query_with_group_objects(self):
        self.client.execute_query.return_value = run_query_response(bulk_operation_node("CREATED"))

        self.operations.submit_query(SAMPLE_QUERY, group_objects=True)

        self.assertEqual(self.executed_variables(), {"query": SAMPLE_QUERY, "groupObjects": True})

    def test_operation_in_progress(self):
        self.client.execute_query.return_value = run_query_response(
            user_errors=[
                {"field": [], "message": "A bulk operation is already running", "code": "OPERATION_IN_PROGRESS"}
            ]
        )

        with self.assertRaises(OperationInProgressError) as ctx:
            self.operations.submit_query(SAMPLE_QUERY)

        self.assertIn("A bulk operation is already running", str(ctx.exception))
        self.assertEqual(ctx.exception.codes, ["OPERATION_IN_PROGRESS"])
        self.assertEqual(ctx.exception.user_errors[0].field, [])

    def test_other_user_errors_raise_submission_error(self):
        self.client.execute_query.return_value = run_query_response(
            user_errors=[{"field": ["query"], "message": "Query is invalid", "code": "INVALID"}]
        )

        with self.assertRaises(SubmissionError) as ctx:
            self.operations.submit_query(SAMPLE_QUERY)

        self.assertNotIsInstance(ctx.exception, OperationInProgressError)
        self.assertIn("Query is invalid", str(ctx.exception))
        self.assertEqual(ctx.exception.user_errors[0].field, ["query"])
        self.assertEqual(ctx.exception.codes, ["INVALID"])

    def test_missing_payload_raises_submission_error(self):
        self.client.execute_query.return_value = {}

        with self.assertRaisesRegex(SubmissionError, "No bulkOperationRunQuery data in response"):
            self.operations.submit_query(SAMPLE_QUERY)

    def test_executor_failure_is_wrapped(self):
        self.client.execute_query.side_effect = RuntimeError("Network error")

        with self.assertRaisesRegex(TransportError, "GraphQL query failed.*Network error") as ctx:
            self.operations.submit_query(SAMPLE_QUERY)

        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)

    def test_unknown_status_is_malformed_response(self):
        self.client.execute_query.return_value = run_query_response(bulk_operation_node("PAUSED"))

        with self.assertRaises(TransportError):
            self.operations.submit_query(SAMPLE_QUERY)


class TestSubmitMutation(BulkOperationsTestCase):
    def mutation_response(self, user_errors=None):
        node = bulk_operation_node("CREATED", id="gid://shopify/BulkOperation/789012", type="MUTATION")
        return {"bulkOperationRunMutation": {"bulkOperation": node, "userErrors": user_errors or []}}

    @mock.patch("shopify_bulk.staged_upload.upload")
    def test_submits_bulk_mutation(self, mock_upload):
        self.client.execute_query.side_effect = [STAGED_UPLOAD_RESPONSE, self.mutation_response()]

        operation = self.operations.submit_mutation(SAMPLE_MUTATION, SAMPLE_VARIABLES)

        self.assertEqual(operation.id, "gid://shopify/BulkOperation/789012")
        self.assertEqual(operation.type, OperationType.MUTATION)

        self.assertEqual(
            self.executed_variables(0),
            {
                "input": [
                    {
                        "resource": "BULK_MUTATION_VARIABLES",
                        "filename": "bulk_mutation_variables.jsonl",
                        "mimeType": "text/jsonl",
                        "httpMethod": "POST",
                    }
                ]
            },
        )

        target, content = mock_upload.call_args[0]
        self.assertEqual(
            target.parameters,
            [
                ("key", "tmp/12345/bulk/bulk_mutation_variables.jsonl"),
                ("Content-Type", "text/jsonl"),
                ("policy", "eyJjb25kaXRpb25zIjpbXX0="),
            ],
        )
        self.assertEqual(content, dump_jsonl(SAMPLE_VARIABLES).encode("utf-8"))

        self.assertIn("bulkOperationRunMutation", self.executed_query(1))
        self.assertEqual(
            self.executed_variables(1),
            {
                "mutation": SAMPLE_MUTATION,
                "stagedUploadPath": "tmp/12345/bulk/bulk_mutation_variables.jsonl",
                "groupObjects": False,
            },
        )

    @mock.patch("shopify_bulk.staged_upload.upload")
    def test_passes_client_identifier(self, mock_upload):
        self.client.execute_query.side_effect = [STAGED_UPLOAD_RESPONSE, self.mutation_response()]

        self.operations.submit_mutation(SAMPLE_MUTATION, SAMPLE_VARIABLES, group_objects=True, client_identifier="sync-42")

        self.assertEqual(self.executed_variables(1)["clientIdentifier"], "sync-42")
        self.assertTrue(self.executed_variables(1)["groupObjects"])

    @mock.patch("shopify_bulk.staged_upload.upload")
    def test_accepts_empty_variables(self, mock_upload):
        self.client.execute_query.side_effect = [STAGED_UPLOAD_RESPONSE, self.mutation_response()]

        self.operations.submit_mutation(SAMPLE_MUTATION, [])

        self.assertEqual(mock_upload.call_args[0][1], b"")

    @mock.patch("shopify_bulk.staged_upload.upload")
    def test_staged_upload_user_errors(self, mock_upload):
        self.client.execute_query.return_value = {
            "stagedUploadsCreate": {
                "stagedTargets": [],
                "userErrors": [{"field": ["input"], "message": "File size exceeds limit"}],
            }
        }

        with self.assertRaisesRegex(SubmissionError, "Failed to create staged upload: File size exceeds limit"):
            self.operations.submit_mutation(SAMPLE_MUTATION, SAMPLE_VARIABLES)

        mock_upload.assert_not_called()

    @mock.patch("shopify_bulk.staged_upload.upload")
    def test_missing_key_parameter(self, mock_upload):
        response = {
            "stagedUploadsCreate": {
                "stagedTargets": [{"url": "https://example.com/upload", "parameters": [{"name": "acl", "value": "x"}]}],
                "userErrors": [],
            }
        }
        self.client.execute_query.return_value = response

        with self.assertRaisesRegex(SubmissionError, "key"):
            self.operations.submit_mutation(SAMPLE_MUTATION, SAMPLE_VARIABLES)

        self.assertEqual(self.client.execute_query.call_count, 1)

    @mock.patch("shopify_bulk.staged_upload.upload")
    def test_mutation_in_progress(self, mock_upload):
        in_progress = self.mutation_response(
            user_errors=[{"field": None, "message": "Bulk mutation already running", "code": "OPERATION_IN_PROGRESS"}]
        )
        in_progress["bulkOperationRunMutation"]["bulkOperation"] = None
        self.client.execute_query.side_effect = [STAGED_UPLOAD_RESPONSE, in_progress]

        with self.assertRaisesRegex(OperationInProgressError, "Bulk mutation already running"):
            self.operations.submit_mutation(SAMPLE_MUTATION, SAMPLE_VARIABLES)


class TestStatusQueries(BulkOperationsTestCase):
    def test_current_operation(self):
        self.client.execute_query.return_value = {
            "currentBulkOperation": bulk_operation_node("RUNNING", objectCount="150")
        }

        operation = self.operations.current_operation()

        self.assertEqual(operation.status, OperationStatus.RUNNING)
        self.assertEqual(operation.object_count, 150)
        self.assertIsNone(self.executed_variables())

    def test_current_operation_none(self):
        self.client.execute_query.return_value = {"currentBulkOperation": None}

        self.assertIsNone(self.operations.current_operation())

    def test_current_operation_filters_by_type(self):
        self.client.execute_query.return_value = {"currentBulkOperation": None}

        self.operations.current_operation("MUTATION")

        self.assertEqual(self.executed_variables(), {"type": "MUTATION"})
        self.assertIn("currentBulkOperation(type: $type)", self.executed_query())

    def test_get_operation_of_other_node_type(self):
        self.client.execute_query.return_value = {"node": {}}

        self.assertIsNone(self.operations.get_operation("gid://shopify/Product/1"))


class TestPollUntilTerminal(BulkOperationsTestCase):
    @freeze_time("2024-01-15 10:00:00")
    def test_polls_until_completed(self):
        self.client.execute_query.side_effect = [
            node_response("RUNNING", objectCount="10"),
            node_response("RUNNING", objectCount="20"),
            node_response("COMPLETED", objectCount="30", url="https://storage.example.com/result.jsonl"),
        ]
        seen = []

        with mock.patch("shopify_bulk.bulk_operations.time.sleep") as mock_sleep:
            operation = self.operations.poll_until_terminal(
                "gid://shopify/BulkOperation/123456",
                poll_interval=2,
                timeout=60,
                on_update=lambda op: seen.append(op.status.value),
            )

        self.assertEqual(seen, ["RUNNING", "RUNNING", "COMPLETED"])
        self.assertEqual(operation.status, OperationStatus.COMPLETED)
        self.assertEqual(operation.url, "https://storage.example.com/result.jsonl")
        self.assertEqual(self.client.execute_query.call_count, 3)
        self.assertEqual(mock_sleep.call_count, 2)
        mock_sleep.assert_called_with(2)

    def test_terminal_on_first_fetch_returns_without_sleeping(self):
        self.client.execute_query.return_value = node_response("FAILED", errorCode="ACCESS_DENIED")

        with mock.patch("shopify_bulk.bulk_operations.time.sleep") as mock_sleep:
            operation = self.operations.poll_until_terminal("gid://shopify/BulkOperation/123456", timeout=0.001)

        self.assertEqual(operation.status, OperationStatus.FAILED)
        self.assertEqual(operation.error_code, "ACCESS_DENIED")
        mock_sleep.assert_not_called()

    def test_times_out(self):
        self.client.execute_query.return_value = node_response("RUNNING")

        with freeze_time("2024-01-15 10:00:00") as frozen:
            with mock.patch(
                "shopify_bulk.bulk_operations.time.sleep", side_effect=lambda seconds: frozen.tick(seconds)
            ):
                with self.assertRaises(PollingTimeoutError) as ctx:
                    self.operations.poll_until_terminal(
                        "gid://shopify/BulkOperation/123456", poll_interval=2, timeout=5
                    )

        fetches = self.client.execute_query.call_count
        self.assertGreaterEqual(fetches, 2)
        self.assertLessEqual(fetches, 5)
        self.assertEqual(ctx.exception.timeout, 5)

    def test_fetch_failure_propagates(self):
        self.client.execute_query.side_effect = [node_response("RUNNING"), RuntimeError("Connection reset")]

        with mock.patch("shopify_bulk.bulk_operations.time.sleep"):
            with self.assertRaisesRegex(TransportError, "Connection reset"):
                self.operations.poll_until_terminal("gid://shopify/BulkOperation/123456", poll_interval=1)

        self.assertEqual(self.client.execute_query.call_count, 2)

    def test_missing_operation(self):
        self.client.execute_query.return_value = {"node": None}

        with self.assertRaises(OperationNotFoundError):
            self.operations.poll_until_terminal("gid://shopify/BulkOperation/404")

    def test_rejects_non_positive_interval(self):
        with self.assertRaises(ValueError):
            self.operations.poll_until_terminal("gid://shopify/BulkOperation/123456", poll_interval=0)

        self.client.execute_query.assert_not_called()


class TestCancel(BulkOperationsTestCase):
    def test_cancel_returns_snapshot(self):
        self.client.execute_query.return_value = {
            "bulkOperationCancel": {"bulkOperation": bulk_operation_node("CANCELING"), "userErrors": []}
        }

        operation = self.operations.cancel("gid://shopify/BulkOperation/123456")

        self.assertEqual(operation.status, OperationStatus.CANCELING)
        self.assertFalse(operation.is_terminal)
        self.assertEqual(self.executed_variables(), {"id": "gid://shopify/BulkOperation/123456"})

    def test_cancel_user_errors(self):
        self.client.execute_query.return_value = {
            "bulkOperationCancel": {
                "bulkOperation": None,
                "userErrors": [
                    {"field": ["id"], "message": "Bulk operation is not running"},
                    {"field": ["id"], "message": "Try again later"},
                ],
            }
        }

        with self.assertRaisesRegex(
            CancelError, "Failed to cancel bulk operation: Bulk operation is not running, Try again later"
        ) as ctx:
            self.operations.cancel("gid://shopify/BulkOperation/123456")

        self.assertEqual(len(ctx.exception.user_errors), 2)


class TestDownload(BulkOperationsTestCase):
    RESULT_URL = "https://storage.googleapis.com/shopify/result.jsonl"

    def completed_operation(self, url=RESULT_URL):
        return Operation.from_node(bulk_operation_node("COMPLETED", url=url, objectCount="2"))

    @mock.patch("shopify_bulk.bulk_operations.urlopen")
    def test_no_url_returns_none_without_request(self, mock_urlopen):
        self.assertIsNone(self.operations.download(self.completed_operation(url=None)))
        self.assertIsNone(self.operations.download(self.completed_operation(url="")))
        self.assertIsNone(self.operations.download(None))

        mock_urlopen.assert_not_called()

    @mock.patch("shopify_bulk.bulk_operations.urlopen")
    def test_downloads_and_parses(self, mock_urlopen):
        mock_urlopen.return_value = http_response(body=b'{"id": "1"}\n\n{"id": "2"}\n')

        results = self.operations.download(self.completed_operation())

        self.assertEqual(results, [{"id": "1"}, {"id": "2"}])
        self.assertEqual(mock_urlopen.call_args[0][0], self.RESULT_URL)

    @mock.patch("shopify_bulk.bulk_operations.urlopen")
    def test_raw_download_is_unmodified(self, mock_urlopen):
        body = '  {"id": "1"}\n\n{"id": "2"}\n'
        mock_urlopen.return_value = http_response(body=body.encode("utf-8"))

        self.assertEqual(self.operations.download(self.RESULT_URL, parse=False), body)

    @mock.patch("shopify_bulk.bulk_operations.urlopen")
    def test_invalid_utf8_line_is_skipped(self, mock_urlopen):
        mock_urlopen.return_value = http_response(body=b'{"id": 1}\n{"id": "\xff\xfe"}\n{"id": 3}\n')

        with self.assertLogs("shopify_bulk.jsonl", level="WARNING") as logs:
            results = self.operations.download(self.RESULT_URL)

        self.assertEqual(results, [{"id": 1}, {"id": 3}])
        self.assertEqual(len(logs.records), 1)

    @mock.patch("shopify_bulk.bulk_operations.urlopen")
    def test_raw_download_keeps_undecodable_bytes(self, mock_urlopen):
        body = b'{"id": 1}\n{"id": "\xff"}\n'
        mock_urlopen.return_value = http_response(body=body)

        content = self.operations.download(self.RESULT_URL, parse=False)

        self.assertEqual(content.encode("utf-8", errors="surrogateescape"), body)

    @mock.patch("shopify_bulk.bulk_operations.urlopen")
    def test_export_results_reports_downloaded_size(self, mock_urlopen):
        response = http_response()
        response.read.side_effect = [b'{"data": {"productCreate": {"userErrors": []}}}\n', b""]
        mock_urlopen.return_value = response
        operation = Operation.from_node(bulk_operation_node("COMPLETED", url=self.RESULT_URL, objectCount="0"))

        with tempfile.TemporaryDirectory() as tmp_dir:
            result = self.operations.export_results(operation, os.path.join(tmp_dir, "result.jsonl"), "create", 0.5)

        self.assertEqual(result.item_count, 0)
        self.assertEqual(result.size_bytes, 48)

    @mock.patch("shopify_bulk.bulk_operations.urlopen")
    def test_http_error(self, mock_urlopen):
        mock_urlopen.side_effect = HTTPError(self.RESULT_URL, 403, "Forbidden", None, None)

        with self.assertRaisesRegex(DownloadError, "403 Forbidden") as ctx:
            self.operations.download(self.RESULT_URL)

        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(ctx.exception.reason, "Forbidden")

    @mock.patch("shopify_bulk.bulk_operations.urlopen")
    def test_network_error(self, mock_urlopen):
        mock_urlopen.side_effect = URLError("Name or service not known")

        with self.assertRaises(TransportError):
            self.operations.download(self.RESULT_URL)

    @mock.patch("shopify_bulk.bulk_operations.urlopen")
    def test_download_to_file_streams_chunks(self, mock_urlopen):
        response = http_response()
        response.read.side_effect = [b'{"id": "1"}\n', b'{"id": "2"}\n', b""]
        mock_urlopen.return_value = response

        with tempfile.TemporaryDirectory() as tmp_dir:
            file_path = os.path.join(tmp_dir, "result.jsonl")
            size = self.operations.download_to_file(self.completed_operation(), file_path)

            with open(file_path, "rb") as f:
                self.assertEqual(f.read(), b'{"id": "1"}\n{"id": "2"}\n')

        self.assertEqual(size, 24)

    @mock.patch("shopify_bulk.bulk_operations.urlopen")
    def test_export_results_without_url_writes_empty_file(self, mock_urlopen):
        with tempfile.TemporaryDirectory() as tmp_dir:
            file_path = os.path.join(tmp_dir, "result.jsonl")
            result = self.operations.export_results(self.completed_operation(url=None), file_path, "products", 1.5)

            self.assertTrue(os.path.exists(file_path))
            self.assertEqual(os.path.getsize(file_path), 0)

        self.assertEqual(result.item_count, 0)
        self.assertEqual(result.api_wait_time, 1.5)
        mock_urlopen.assert_not_called()


class TestStagedUploadTarget(unittest.TestCase):
    def test_keeps_parameter_order(self):
        target = StagedUploadTarget.from_dict(STAGED_UPLOAD_RESPONSE["stagedUploadsCreate"]["stagedTargets"][0])

        self.assertEqual([name for name, _ in target.parameters], ["key", "Content-Type", "policy"])
        self.assertEqual(target.parameter("key"), "tmp/12345/bulk/bulk_mutation_variables.jsonl")
        self.assertIsNone(target.parameter("missing"))


if __name__ == "__main__":
    unittest.main()

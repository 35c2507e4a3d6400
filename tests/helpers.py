from unittest import mock


def bulk_operation_node(status="CREATED", **overrides):
    node = {
        "id": "gid://shopify/BulkOperation/123456",
        "status": status,
        "query": "{ products { edges { node { id title } } } }",
        "createdAt": "2024-01-15T10:00:00Z",
        "completedAt": None,
        "objectCount": "0",
        "fileSize": None,
        "url": None,
        "partialDataUrl": None,
        "errorCode": None,
        "type": "QUERY",
    }
    node.update(overrides)
    return node


def http_response(status=200, reason="OK", body=b""):
    """Mock of the context manager returned by urlopen"""
    response = mock.MagicMock()
    response.status = status
    response.reason = reason
    response.read.return_value = body
    response.__enter__.return_value = response
    return response

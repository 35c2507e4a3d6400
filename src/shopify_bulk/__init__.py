from .bulk_operations import BulkOperationResult, BulkOperations
from .client import ShopifyGraphQLClient
from .models import Operation, OperationStatus, OperationType, StagedUploadTarget, UserError

__all__ = [
    "BulkOperationResult",
    "BulkOperations",
    "Operation",
    "OperationStatus",
    "OperationType",
    "ShopifyGraphQLClient",
    "StagedUploadTarget",
    "UserError",
]

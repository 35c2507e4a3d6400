from keboola.component.exceptions import UserException

from .models import UserError


class ShopifyBulkException(UserException):
    """
    Base for failures caused by user input or by the remote platform state.
    Entry points exit with status 1 on these and with 2 on anything else.
    """


class ConfigurationError(ShopifyBulkException):
    """Invalid or missing configuration"""


class BulkOperationError(ShopifyBulkException):
    """
    Error raised when a bulk operation call fails

    Attributes:
        error_code: Platform error code, when the failure carries one
        user_errors: Structured user errors returned by the failing call
    """

    def __init__(self, message: str, error_code: str | None = None, user_errors: list[UserError] | None = None):
        super().__init__(message)
        self.error_code = error_code
        self.user_errors = list(user_errors or [])

    @property
    def codes(self) -> list[str]:
        """Machine-readable codes of the attached user errors"""
        return [error.code for error in self.user_errors if error.code]


class OperationInProgressError(BulkOperationError):
    """Another bulk operation is already running for the shop"""


class SubmissionError(BulkOperationError):
    """Bulk operation submission was rejected"""


class StagedUploadError(BulkOperationError):
    """Uploading the mutation variables file to the staged target failed"""

    def __init__(self, message: str, status_code: int | None = None, reason: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


class CancelError(BulkOperationError):
    """Bulk operation cancel call returned user errors"""


class DownloadError(BulkOperationError):
    """Fetching the result file returned a non-success response"""

    def __init__(self, message: str, status_code: int | None = None, reason: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


class PollingTimeoutError(BulkOperationError):
    """Operation did not reach a terminal status within the polling timeout"""

    def __init__(self, message: str, timeout: float):
        super().__init__(message)
        self.timeout = timeout


class OperationNotFoundError(BulkOperationError):
    """Operation id did not resolve to a bulk operation"""


class TransportError(BulkOperationError):
    """Executing a request against the platform failed"""

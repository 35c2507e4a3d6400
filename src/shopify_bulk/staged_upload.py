import logging
import time
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .exceptions import StagedUploadError, TransportError
from .models import StagedUploadTarget

BULK_MUTATION_RESOURCE = "BULK_MUTATION_VARIABLES"
VARIABLES_FILENAME = "bulk_mutation_variables.jsonl"
VARIABLES_MIME_TYPE = "text/jsonl"

logger = logging.getLogger(__name__)


def encode_multipart(
    parameters: list[tuple[str, str]], content: bytes, filename: str, mime_type: str, boundary: str
) -> bytes:
    """
    Build a multipart/form-data body for a staged upload

    Args:
        parameters: Form fields in the order the platform issued them
        content: File content
        filename: Filename declared when the target was staged
        mime_type: MIME type declared when the target was staged
        boundary: Multipart boundary token

    Returns:
        Encoded request body
    """
    body = bytearray()

    for name, value in parameters:
        body += f"--{boundary}\r\n".encode()
        body += f'Content-Disposition: form-data; name="{name}"\r\n\r\n'.encode()
        body += str(value).encode()
        body += b"\r\n"

    # The file part must come after every policy field
    body += f"--{boundary}\r\n".encode()
    body += f'Content-Disposition: form-data; name="file"; filename="{filename}"\r\n'.encode()
    body += f"Content-Type: {mime_type}\r\n\r\n".encode()
    body += content
    body += b"\r\n"
    body += f"--{boundary}--\r\n".encode()

    return bytes(body)


def upload(
    target: StagedUploadTarget,
    content: bytes,
    filename: str = VARIABLES_FILENAME,
    mime_type: str = VARIABLES_MIME_TYPE,
    timeout: float = 300,
) -> None:
    """
    Upload a file to a staged upload target

    Sent exactly once: a retry could create a second staged file that the
    subsequent mutation submission would not reference.

    Raises:
        StagedUploadError: On any non-2xx response
        TransportError: When the request could not be sent
    """
    boundary = f"----ShopifyBulkUpload{time.time_ns()}"
    body = encode_multipart(target.parameters, content, filename, mime_type, boundary)

    request = Request(
        target.url,
        data=body,
        headers={"Content-Type": f"multipart/form-data; boundary={boundary}"},
        method="POST",
    )

    try:
        with urlopen(request, timeout=timeout) as response:
            status = response.status
            reason = response.reason
    except HTTPError as e:
        raise StagedUploadError(
            f"Failed to upload staged file: {e.code} {e.reason}", status_code=e.code, reason=str(e.reason)
        ) from e
    except URLError as e:
        raise TransportError(f"Failed to upload staged file: {e.reason}") from e

    if not 200 <= status < 300:
        raise StagedUploadError(f"Failed to upload staged file: {status} {reason}", status_code=status, reason=reason)

    logger.info(f"Successfully uploaded {len(content)} bytes to staged upload")

import logging
import time
from typing import Any

import requests

from .exceptions import TransportError


class ShopifyGraphQLClient:
    """
    Shopify Admin GraphQL API client
    """

    def __init__(self, store_name: str, api_token: str, api_version: str = "2025-10", timeout: float = 60):
        """
        Initialize Shopify GraphQL client

        Args:
            store_name: Shopify store name (without .myshopify.com)
            api_token: Shopify Admin API access token
            api_version: Shopify API version
            timeout: Request timeout in seconds
        """
        self.store_name = store_name
        self.api_version = api_version
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

        self.session = requests.Session()
        self.session.headers.update(
            {
                "Content-Type": "application/json",
                "X-Shopify-Access-Token": api_token,
            }
        )

    @property
    def graphql_url(self) -> str:
        return f"https://{self.store_name}.myshopify.com/admin/api/{self.api_version}/graphql.json"

    def execute_query(
        self, query: str, variables: dict[str, Any] | None = None, max_retries: int = 5
    ) -> dict[str, Any]:
        """
        Execute GraphQL query with retry logic for throttling

        Throttled requests are rejected by Shopify before execution, so they
        are the only ones retried.

        Args:
            query: GraphQL query string
            variables: Query variables
            max_retries: Maximum number of retries for throttled requests

        Returns:
            Query response data

        Raises:
            TransportError: On network failure, non-200 response, undecodable
                body or top-level GraphQL errors
        """
        retry_count = 0
        base_wait = 1  # Start with 1 second

        while retry_count <= max_retries:
            payload: dict[str, Any] = {"query": query}
            if variables:
                payload["variables"] = variables

            try:
                response = self.session.post(self.graphql_url, json=payload, timeout=self.timeout)
                response.raise_for_status()
                result = response.json()
            except (requests.RequestException, ValueError) as e:
                self.logger.error(f"GraphQL query failed: {e}")
                raise TransportError(f"GraphQL query failed: {e}") from e

            if "errors" in result:
                error_messages = [error.get("message", "Unknown error") for error in result["errors"]]

                if any("throttled" in msg.lower() for msg in error_messages):
                    if retry_count < max_retries:
                        wait_time = base_wait * (2**retry_count)  # Exponential backoff
                        self.logger.warning(
                            f"API throttled. Waiting {wait_time}s before retry {retry_count + 1}/{max_retries}"
                        )
                        time.sleep(wait_time)
                        retry_count += 1
                        continue

                self.logger.error(f"GraphQL query failed: {'; '.join(error_messages)}")
                raise TransportError(f"GraphQL query failed: {'; '.join(error_messages)}")

            return result.get("data") or {}

        # If all retries exhausted
        raise TransportError(f"GraphQL query failed after {max_retries} retries due to throttling")

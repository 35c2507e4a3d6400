import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from shopify_bulk.exceptions import ConfigurationError
from shopify_bulk.models import OperationType


def _sanitize_name(value: str) -> str:
    return value.strip().lower().replace(" ", "_").replace("-", "_")


class BulkQuery(BaseModel):
    """Bulk query configuration"""

    name: str = Field(..., description="Query name (used for output table name)")
    query: str = Field(..., description="GraphQL query to run as a bulk operation")
    group_objects: bool = Field(default=False, description="Group nested objects under their parents")

    @field_validator("name")
    def validate_name(cls, v):
        if not v or len(v.strip()) == 0:
            raise ConfigurationError("Bulk query name cannot be empty")
        return _sanitize_name(v)

    @field_validator("query")
    def validate_query(cls, v):
        if not v or len(v.strip()) == 0:
            raise ConfigurationError("Bulk query cannot be empty")
        return v.strip()


class BulkMutation(BaseModel):
    """Bulk mutation configuration"""

    name: str = Field(..., description="Mutation name (used for output table name)")
    mutation: str = Field(..., description="GraphQL mutation run once per variables record")
    variables: list[dict[str, Any]] = Field(default_factory=list, description="Inline variables records")
    variables_file: str | None = Field(
        default=None, description="Variables file in in/files (.jsonl one record per line, otherwise a JSON array)"
    )
    group_objects: bool = False
    client_identifier: str | None = Field(default=None, description="Identifier for tracking the operation")

    @field_validator("name")
    def validate_name(cls, v):
        if not v or len(v.strip()) == 0:
            raise ConfigurationError("Bulk mutation name cannot be empty")
        return _sanitize_name(v)

    @field_validator("mutation")
    def validate_mutation(cls, v):
        if not v or len(v.strip()) == 0:
            raise ConfigurationError("Bulk mutation cannot be empty")
        return v.strip()

    @model_validator(mode="after")
    def validate_variables_source(self):
        if self.variables and self.variables_file:
            raise ConfigurationError(f"Bulk mutation '{self.name}' sets both variables and variables_file")
        return self


class PollingOptions(BaseModel):
    poll_interval: float = Field(default=5, gt=0, description="Seconds between status checks")
    timeout: float = Field(default=1800, gt=0, description="Maximum seconds to wait for an operation")


class Configuration(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    store_name: str = Field(..., description="Shopify store name (without .myshopify.com)")
    api_version: str = Field(default="2025-10", description="Shopify API version")
    api_token: str = Field(alias="#api_token", description="Shopify Admin API access token")
    bulk_queries: list[BulkQuery] = Field(default_factory=list, description="Bulk queries to run")
    bulk_mutations: list[BulkMutation] = Field(default_factory=list, description="Bulk mutations to run")
    polling: PollingOptions = Field(default_factory=PollingOptions)
    operation_id: str | None = Field(default=None, description="Target of the status and cancel actions")
    operation_type: OperationType | None = Field(default=None, description="Filter for the status action")
    debug: bool = Field(default=False, description="Enable debug mode")

    def __init__(self, **data):
        try:
            super().__init__(**data)
        except ValidationError as e:
            error_messages = [f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise ConfigurationError(f"Validation Error: {', '.join(error_messages)}")

        if self.debug:
            logging.debug("Component will run in Debug mode")

    @field_validator("api_token")
    def validate_api_token(cls, v):
        if not v or len(v.strip()) == 0:
            raise ConfigurationError("API token cannot be empty")
        return v.strip()

    @field_validator("store_name")
    def validate_store_name(cls, v):
        if not v or len(v.strip()) == 0:
            raise ConfigurationError("Store name cannot be empty")
        # Remove .myshopify.com if present
        store_name = v.strip().lower()
        if store_name.endswith(".myshopify.com"):
            store_name = store_name[:-14]
        return store_name

    @property
    def shop_url(self) -> str:
        """Get the full Shopify shop URL"""
        return f"https://{self.store_name}.myshopify.com"

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class OperationType(str, Enum):
    QUERY = "QUERY"
    MUTATION = "MUTATION"


class OperationStatus(str, Enum):
    CREATED = "CREATED"
    RUNNING = "RUNNING"
    CANCELING = "CANCELING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        OperationStatus.COMPLETED,
        OperationStatus.FAILED,
        OperationStatus.CANCELED,
        OperationStatus.EXPIRED,
    }
)


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    # fromisoformat() accepts a trailing Z only from Python 3.11
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _parse_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


@dataclass
class UserError:
    """Structured rejection reason returned inside a successful response"""

    message: str
    field: list[str] = field(default_factory=list)
    code: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UserError":
        return cls(
            message=data.get("message") or "Unknown error",
            field=list(data.get("field") or []),
            code=data.get("code"),
        )


@dataclass
class StagedUploadTarget:
    """
    One-time upload destination issued by stagedUploadsCreate

    Parameters are kept as an ordered list of (name, value) pairs; the
    upload must send them back verbatim and in this order.
    """

    url: str
    parameters: list[tuple[str, str]] = field(default_factory=list)
    resource_url: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StagedUploadTarget":
        return cls(
            url=data["url"],
            parameters=[(param["name"], param["value"]) for param in data.get("parameters") or []],
            resource_url=data.get("resourceUrl"),
        )

    def parameter(self, name: str) -> str | None:
        """Get the first parameter value with the given name"""
        for param_name, value in self.parameters:
            if param_name == name:
                return value
        return None


@dataclass
class Operation:
    """Snapshot of a bulk operation as reported by the platform"""

    id: str
    status: OperationStatus
    type: OperationType | None = None
    query: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None
    object_count: int = 0
    file_size: int | None = None
    url: str | None = None
    partial_data_url: str | None = None
    error_code: str | None = None

    @classmethod
    def from_node(cls, node: dict[str, Any] | None) -> "Operation | None":
        """
        Build an operation from a BulkOperation GraphQL object

        Args:
            node: GraphQL object; None or a node of another type (no id)

        Returns:
            Operation, or None when the node is absent
        """
        if not node or not node.get("id"):
            return None

        operation_type = node.get("type")
        return cls(
            id=node["id"],
            status=OperationStatus(node["status"]),
            type=OperationType(operation_type) if operation_type else None,
            query=node.get("query"),
            created_at=_parse_timestamp(node.get("createdAt")),
            completed_at=_parse_timestamp(node.get("completedAt")),
            object_count=_parse_int(node.get("objectCount")) or 0,
            file_size=_parse_int(node.get("fileSize")),
            url=node.get("url"),
            partial_data_url=node.get("partialDataUrl"),
            error_code=node.get("errorCode"),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["type"] = self.type.value if self.type else None
        for key in ("created_at", "completed_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

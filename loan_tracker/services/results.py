from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

from pydantic import ValidationError


VALIDATION_ERROR = "VALIDATION_ERROR"
NOT_FOUND = "NOT_FOUND"
UNAUTHORIZED = "UNAUTHORIZED"
OUT_OF_STOCK = "OUT_OF_STOCK"
BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"
INTERNAL_ERROR = "INTERNAL_ERROR"

ERROR_STATUS_MAP = {
    VALIDATION_ERROR: 400,
    NOT_FOUND: 404,
    UNAUTHORIZED: 422,
    OUT_OF_STOCK: 409,
    BUSINESS_RULE_VIOLATION: 422,
    INTERNAL_ERROR: 500,
}

T = TypeVar("T")


def status_for(code: str) -> int:
    return ERROR_STATUS_MAP.get(code, 500)


@dataclass
class ServiceError:
    code: str
    message: str
    details: Any = None

    def to_dict(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


@dataclass
class ServiceResult(Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[ServiceError] = None

    @classmethod
    def ok(cls, data: T = None) -> ServiceResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, code: str, message: str, details: Any = None) -> ServiceResult[T]:
        return cls(success=False, error=ServiceError(code, message, details))


class OperationAborted(Exception):
    """Raised inside a store transaction to roll it back with a domain error."""

    def __init__(self, error: ServiceError):
        super().__init__(error.message)
        self.error = error


def format_issues(errors: list) -> list[dict]:
    issues = []
    for item in errors:
        location = ".".join(str(part) for part in item.get("loc", ()))
        issues.append(
            {
                "field": location or None,
                "message": item.get("msg", ""),
                "type": item.get("type", ""),
            }
        )
    return issues


def validation_failure(exc: ValidationError) -> ServiceResult:
    return ServiceResult.fail(VALIDATION_ERROR, "Validation failed", format_issues(exc.errors()))


def internal_failure(message: str, exc: Exception) -> ServiceResult:
    return ServiceResult.fail(INTERNAL_ERROR, message, str(exc))

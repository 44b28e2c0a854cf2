"""
Domain errors for the API factory
Every error carries an HTTP status and a stable machine-readable code
"""
from typing import Any, Dict, List, Optional


class ApiFactoryError(Exception):
    """Base class for all errors surfaced to API callers"""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.message, "code": self.code}
        body.update(self.details)
        return body


class ValidationError(ApiFactoryError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(ApiFactoryError):
    status_code = 404
    code = "NOT_FOUND"


class ProviderTimeout(ApiFactoryError):
    """AI provider did not answer within LLM_TIMEOUT"""

    status_code = 504
    code = "PROVIDER_TIMEOUT"


class ProviderError(ApiFactoryError):
    """AI provider answered with a non-success status"""

    status_code = 502
    code = "PROVIDER_ERROR"


class UnparseableResponse(ApiFactoryError):
    """AI output could not be coerced into a SchemaGraph"""

    status_code = 422
    code = "UNPARSEABLE_RESPONSE"

    def __init__(self, message: str, raw: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.raw = raw


class ExecutorUnavailable(ApiFactoryError):
    status_code = 500
    code = "EXECUTOR_UNAVAILABLE"

    def __init__(self, remediation: str):
        super().__init__(
            "The SQL executor function is not installed in the database",
            {"remediation": remediation},
        )


class MaterializationError(ApiFactoryError):
    """All creation strategies ran and some tables are still missing"""

    status_code = 500
    code = "MATERIALIZATION_FAILED"

    def __init__(self, missing_tables: List[str], attempts: Optional[List[Dict[str, Any]]] = None):
        super().__init__(
            f"Failed to create tables: {', '.join(missing_tables)}",
            {"missingTables": missing_tables, "attempts": attempts or []},
        )
        self.missing_tables = missing_tables


class DatabaseError(ApiFactoryError):
    status_code = 500
    code = "DATABASE_ERROR"

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        sqlstate: Optional[str] = None,
        hint: Optional[str] = None,
    ):
        super().__init__(message)
        self.table = table
        self.sqlstate = sqlstate
        self.hint = hint

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "Database operation failed",
            "code": self.code,
            "hint": self.hint or "Check that the table exists and the request matches its columns",
            "details": {
                "message": self.message,
                "table": self.table,
                "code": self.sqlstate,
            },
        }

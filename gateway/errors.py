"""
Exception types shared across the gateway.

Configuration errors are raised synchronously before any I/O happens.
Adapter failures are never raised through here -- they are returned as
typed results (see gateway.platforms.base.DeliveryResult).
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass
class ConfigIssue:
    """One validation problem, located by its dotted config path."""
    path: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "message": self.message}

    def __str__(self) -> str:
        return f"{self.path or '<root>'}: {self.message}"


class GatewayError(Exception):
    """Base class for gateway errors."""


class ConfigError(GatewayError):
    """Malformed config, ambiguous scope selection, unknown agent or channel."""

    def __init__(self, message: str, issues: Optional[List[ConfigIssue]] = None):
        super().__init__(message)
        self.issues: List[ConfigIssue] = list(issues or [])

    def __str__(self) -> str:
        base = super().__str__()
        if not self.issues:
            return base
        lines = [base] + [f"- {issue}" for issue in self.issues]
        return "\n".join(lines)


class StoreError(GatewayError):
    """A session store file is unreadable or does not hold a JSON object."""

    def __init__(self, message: str, path: Any = None):
        super().__init__(message)
        self.path = path


class PairingError(GatewayError):
    """Unknown pairing code / device request, or a missing confirm flag."""


class AgentRunError(GatewayError):
    """Every model in the chain failed for one turn."""

    def __init__(self, message: str, attempts: Optional[List[Dict[str, str]]] = None):
        super().__init__(message)
        self.attempts: List[Dict[str, str]] = list(attempts or [])


class RpcError(GatewayError):
    """Structured error returned to RPC / CLI callers."""

    INVALID_REQUEST = "INVALID_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    UNAVAILABLE = "UNAVAILABLE"
    UNAUTHORIZED = "UNAUTHORIZED"
    INTERNAL = "INTERNAL"

    def __init__(self, code: str, message: str, details: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            result["details"] = self.details
        return result

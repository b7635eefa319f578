"""
core/exceptions.py
Exception family for the trading core.

Advisory paths (market data, price feed, allowances) log and degrade instead
of raising. These types cover the failures that must reach the caller.
"""

from typing import Any


class TradingCoreError(Exception):
    """Base exception for all trading-core errors."""

    def __init__(self, message: str = "", details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = details or {}


class ClobRequestError(TradingCoreError):
    """An execution-API request failed (non-2xx, or 401 after the single retry)."""

    def __init__(self, method: str, path: str, status: int, body: str, retried: bool = False) -> None:
        suffix = " after retry" if retried else ""
        super().__init__(
            f"CLOB {method} {path} failed{suffix} ({status}): {body}",
            {"method": method, "path": path, "status": status},
        )
        self.status = status
        self.body = body
        self.retried = retried


class AuthenticationError(TradingCoreError):
    """L1 credential derivation failed or returned incomplete credentials."""


class OrderRejected(TradingCoreError, ValueError):
    """An order violates a protocol invariant and was refused before signing."""


class ExposureLimitError(TradingCoreError):
    """Opening a position would breach its strategy cap."""


class InvalidTransitionError(TradingCoreError, ValueError):
    """A position status change that the lifecycle does not permit."""

    def __init__(self, position_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Position {position_id}: cannot move from {current} to {target}",
            {"position_id": position_id, "current": current, "target": target},
        )

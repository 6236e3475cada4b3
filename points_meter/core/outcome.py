"""
Outcome type for best-effort side effects.

Used where an operation should be attempted and reported on, but must never
fail the primary billing flow (auto-creating price records, refreshing
cached balances, notifying subscribers).
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BestEffort:
    """Result of a best-effort operation."""
    operation: str
    ok: bool
    value: Any = None
    error: Optional[str] = None

    @classmethod
    def attempt(cls, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> "BestEffort":
        """Run ``func`` and capture its result or failure.

        Args:
            operation: Name used in logs and in the returned outcome
            func: Callable to run
            *args: Positional arguments for ``func``
            **kwargs: Keyword arguments for ``func``

        Returns:
            BestEffort with ``ok`` set and either ``value`` or ``error``
        """
        try:
            value = func(*args, **kwargs)
        except Exception as e:
            logger.warning("best_effort_failed", operation=operation, error=str(e))
            return cls(operation=operation, ok=False, error=str(e))
        return cls(operation=operation, ok=True, value=value)

    @classmethod
    def skipped(cls, operation: str) -> "BestEffort":
        """Outcome for an operation that did not need to run."""
        return cls(operation=operation, ok=True)

"""
Best-effort execution helpers.

Audit logging and progress callbacks must never break the main flow.
Call sites opt into that policy explicitly by going through these wrappers.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def best_effort(
    operation: Awaitable[T],
    description: str,
    default: Optional[T] = None,
) -> Optional[T]:
    """
    Await an operation whose failure must not propagate.

    Args:
        operation: Awaitable to run
        description: Short label used in the warning log
        default: Value returned when the operation fails

    Returns:
        The operation's result, or default on failure
    """
    try:
        return await operation
    except Exception as e:
        logger.warning(f"Best-effort operation failed ({description}): {e}")
        return default


async def best_effort_call(
    fn: Optional[Callable[..., Any]],
    *args: Any,
    description: str = "callback",
) -> None:
    """Invoke a sync or async callable, swallowing and logging its errors."""
    if fn is None:
        return
    try:
        result = fn(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning(f"Best-effort call failed ({description}): {e}")

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

import psycopg
import structlog

from ..errors import LearnMatchError, StoreServiceError

logger = structlog.get_logger()

T = TypeVar("T")


async def bounded(
    call: Awaitable[T],
    *,
    timeout: float,
    error: type[StoreServiceError],
    operation: str,
) -> T:
    """
    Awaits a store call under `timeout`.

    learnmatch errors pass through unchanged. Timeouts, connection problems
    and driver errors are raised as `error`; timeouts and connection problems
    are retryable.
    """
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except LearnMatchError:
        raise
    except (asyncio.TimeoutError, TimeoutError) as e:
        await logger.awarning(
            "store call timed out", service=error.service, operation=operation
        )
        raise error(f"{error.service} {operation} timed out", retryable=True) from e
    except Exception as e:
        retryable = isinstance(e, psycopg.OperationalError | ConnectionError)
        await logger.awarning(
            "store call failed",
            service=error.service,
            operation=operation,
            retryable=retryable,
            error=str(e),
        )
        raise error(
            f"{error.service} {operation} failed: {e}", retryable=retryable
        ) from e

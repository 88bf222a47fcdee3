"""Concurrent per-replica execution with aggregated errors.

`execute_parallel` runs one coroutine per identity and always waits for every
one of them. A failure never cancels its siblings; it is recorded against its
identity and folded into a single `MultiError` handed back with the results.
"""
import asyncio
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Hashable,
    Iterable,
    Optional,
    Tuple,
    TypeVar,
)

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
R = TypeVar("R")


class ReplicaCancelledError(Exception):
    """The operation for a replica did not complete before the deadline or cancellation."""


class MultiError(Exception):
    """Aggregate of per-identity failures."""

    def __init__(self, errors: Dict[Any, BaseException]):
        self.errors = dict(errors)
        super().__init__(self._format())

    def _format(self) -> str:
        parts = sorted(f"{key}: {err}" for key, err in self.errors.items())
        return f"{len(parts)} operation(s) failed: " + "; ".join(parts)

    def __iter__(self):
        return iter(self.errors.items())

    def __len__(self):
        return len(self.errors)

    @classmethod
    def combine(cls, *errors: Optional[BaseException]) -> Optional["MultiError"]:
        """Fold several optional errors (plain or MultiError) into one, or None."""
        merged: Dict[Any, BaseException] = {}
        for index, err in enumerate(errors):
            if err is None:
                continue
            if isinstance(err, MultiError):
                merged.update(err.errors)
            else:
                merged[f"#{index}"] = err
        return cls(merged) if merged else None


async def execute_parallel(
    identities: Iterable[K],
    fn: Callable[[K], Awaitable[R]],
    timeout: Optional[float] = None,
    default: Any = None,
) -> Tuple[Dict[K, Any], Optional[MultiError]]:
    """Run `fn(identity)` for every identity concurrently.

    Args:
        identities: Replica identities, each used once.
        fn: Coroutine function applied to each identity.
        timeout: Deadline in seconds for the whole batch. Operations still
            running at the deadline are cancelled and reported as
            `ReplicaCancelledError`.
        default: Result recorded for identities whose operation failed.

    Returns:
        A tuple of the results keyed by identity (every identity is present)
        and a `MultiError` naming the failed identities, or None.

    Raises:
        asyncio.CancelledError: the caller was cancelled. Every operation is
            cancelled and awaited first; no partial results are returned.
    """
    keys = list(dict.fromkeys(identities))
    if not keys:
        return {}, None

    tasks: Dict[K, asyncio.Task] = {key: asyncio.ensure_future(fn(key)) for key in keys}
    try:
        done, pending = await asyncio.wait(tasks.values(), timeout=timeout)
    except asyncio.CancelledError:
        for task in tasks.values():
            task.cancel()
        await asyncio.gather(*tasks.values(), return_exceptions=True)
        raise

    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)

    results: Dict[K, Any] = {}
    errors: Dict[K, BaseException] = {}
    for key, task in tasks.items():
        if task in pending or task.cancelled():
            results[key] = default
            errors[key] = ReplicaCancelledError(
                f"operation on {key} did not complete"
                + (f" within {timeout}s" if timeout is not None else "")
            )
            continue
        exc = task.exception()
        if exc is not None:
            results[key] = default
            errors[key] = exc
            logger.debug(f"Operation on {key} failed: {exc}")
        else:
            results[key] = task.result()

    return results, (MultiError(errors) if errors else None)

"""Unit tests for concurrent per-replica execution."""

import asyncio
import pytest
from chop.utils.parallel import MultiError, ReplicaCancelledError, execute_parallel


class TestExecuteParallel:
    """Tests for execute_parallel()."""

    @pytest.mark.asyncio
    async def test_all_succeed(self):
        async def double(x):
            return x * 2

        results, error = await execute_parallel([1, 2, 3], double)

        assert results == {1: 2, 2: 4, 3: 6}
        assert error is None

    @pytest.mark.asyncio
    async def test_empty_input(self):
        async def fail(x):
            raise AssertionError("not called")

        assert await execute_parallel([], fail) == ({}, None)

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_siblings(self):
        finished = []

        async def work(x):
            if x == "b":
                raise ValueError("bad replica")
            await asyncio.sleep(0.01)
            finished.append(x)
            return x.upper()

        results, error = await execute_parallel(["a", "b", "c"], work, default="?")

        assert sorted(finished) == ["a", "c"]
        assert results == {"a": "A", "b": "?", "c": "C"}
        assert isinstance(error, MultiError)
        assert list(error.errors) == ["b"]
        assert isinstance(error.errors["b"], ValueError)
        assert "b: bad replica" in str(error)

    @pytest.mark.asyncio
    async def test_deadline_cancels_stragglers(self):
        cancelled = []

        async def work(x):
            try:
                await asyncio.sleep(0 if x == "fast" else 10)
            except asyncio.CancelledError:
                cancelled.append(x)
                raise
            return x

        results, error = await execute_parallel(["fast", "slow"], work, timeout=0.05)

        assert results == {"fast": "fast", "slow": None}
        assert cancelled == ["slow"]
        assert isinstance(error.errors["slow"], ReplicaCancelledError)

    @pytest.mark.asyncio
    async def test_outer_cancellation_reaches_every_operation(self):
        started = asyncio.Event()
        cancelled = []

        async def work(x):
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(x)
                raise

        task = asyncio.ensure_future(execute_parallel([1, 2], work))
        await started.wait()
        await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert sorted(cancelled) == [1, 2]

    @pytest.mark.asyncio
    async def test_duplicate_identities_run_once(self):
        calls = []

        async def work(x):
            calls.append(x)

        await execute_parallel([1, 1, 2], work)

        assert sorted(calls) == [1, 2]


class TestMultiError:
    """Tests for MultiError."""

    def test_combine(self):
        first = MultiError({"a": ValueError("x")})

        combined = MultiError.combine(None, first, RuntimeError("y"))

        assert len(combined) == 2
        assert set(dict(combined)) == {"a", "#2"}

    def test_combine_nothing(self):
        assert MultiError.combine(None, None) is None

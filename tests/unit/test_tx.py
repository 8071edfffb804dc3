"""Unit tests for the bounded write-retry loop."""

from __future__ import annotations

import pytest
from neo4j.exceptions import ConstraintError
from neo4j.exceptions import TransientError

from memgarden.errors import ConcurrentModificationConflict
from memgarden.graph._tx import run_write


class _ScriptedSession:
    def __init__(self, driver: _ScriptedDriver) -> None:
        self._driver = driver

    async def __aenter__(self) -> _ScriptedSession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None

    async def execute_write(self, work):
        self._driver.attempts += 1
        if self._driver.failures:
            raise self._driver.failures.pop(0)
        return await work(None)


class _ScriptedDriver:
    """Fails ``execute_write`` with the queued errors, then runs the work."""

    def __init__(self, *failures: Exception) -> None:
        self.failures = list(failures)
        self.attempts = 0

    def session(self) -> _ScriptedSession:
        return _ScriptedSession(self)


async def _work(tx) -> str:
    return "done"


async def test_transient_error_is_retried():
    driver = _ScriptedDriver(TransientError("deadlock"), TransientError("deadlock"))
    assert await run_write(driver, _work, operation="test", max_attempts=3) == "done"
    assert driver.attempts == 3


async def test_exhausted_attempts_raise_conflict():
    driver = _ScriptedDriver(*(TransientError("deadlock") for _ in range(3)))
    with pytest.raises(ConcurrentModificationConflict) as exc_info:
        await run_write(driver, _work, operation="records.update", max_attempts=3)
    assert driver.attempts == 3
    assert "records.update" in str(exc_info.value)
    assert isinstance(exc_info.value.__cause__, TransientError)


async def test_constraint_error_surfaces_without_opt_in():
    driver = _ScriptedDriver(ConstraintError("duplicate"))
    with pytest.raises(ConstraintError):
        await run_write(driver, _work, operation="test", max_attempts=3)
    assert driver.attempts == 1


async def test_constraint_error_retried_with_opt_in():
    driver = _ScriptedDriver(ConstraintError("merge race"))
    result = await run_write(
        driver, _work, operation="test", max_attempts=3, retry_on_constraint=True
    )
    assert result == "done"
    assert driver.attempts == 2


async def test_constraint_race_exhaustion_raises_conflict():
    driver = _ScriptedDriver(ConstraintError("merge race"), ConstraintError("merge race"))
    with pytest.raises(ConcurrentModificationConflict):
        await run_write(
            driver, _work, operation="test", max_attempts=2, retry_on_constraint=True
        )
    assert driver.attempts == 2

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from topicchat.core import retry as retry_module
from topicchat.core.exceptions import NetworkError, NotFoundException, ValidationException
from topicchat.core.retry import (
    backoff_delay,
    is_network_error,
    should_retry_database,
    should_retry_network,
    with_database_retry,
    with_retry,
)


@pytest.fixture
def fake_sleep(monkeypatch) -> AsyncMock:
    sleep = AsyncMock()
    monkeypatch.setattr(retry_module, "_sleep", sleep)
    return sleep


def _flaky(failures, result="ok"):
    calls = {"count": 0}

    async def func():
        calls["count"] += 1
        if calls["count"] <= len(failures):
            raise failures[calls["count"] - 1]
        return result

    return func, calls


class TestClassification:
    def test_network_errors(self) -> None:
        assert is_network_error(NetworkError("down")) is True
        assert is_network_error(ConnectionResetError()) is True
        assert is_network_error(TimeoutError()) is True
        assert is_network_error(RuntimeError("Failed to fetch")) is True
        assert is_network_error(ValueError("boom")) is False

    def test_network_retry_skips_client_errors(self) -> None:
        assert should_retry_network(NotFoundException("timeout in message")) is False
        assert should_retry_network(ValidationException("network")) is False
        assert should_retry_network(NetworkError("down")) is True

    def test_database_retry_on_dropped_connection(self) -> None:
        exc = OperationalError("SELECT 1", {}, Exception("server closed the connection unexpectedly"))
        assert should_retry_database(exc) is True

    def test_database_retry_skips_constraint_violations(self) -> None:
        exc = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: users.email"))
        assert should_retry_database(exc) is False
        assert should_retry_database(RuntimeError("duplicate key value")) is False

    def test_database_retry_skips_unrelated_operational_errors(self) -> None:
        exc = OperationalError("SELECT", {}, Exception("no such table: chat_messages"))
        assert should_retry_database(exc) is False

    def test_backoff_is_capped(self) -> None:
        delays = [backoff_delay(n, initial_delay=1.0, max_delay=5.0) for n in range(5)]
        assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_retries_transient_failures(self, fake_sleep) -> None:
        func, calls = _flaky([ConnectionError("reset"), NetworkError("timeout")])

        result = await with_retry("op", func, max_retries=3, initial_delay=0.01)

        assert result == "ok"
        assert calls["count"] == 3
        assert fake_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_raises_immediately(self, fake_sleep) -> None:
        func, calls = _flaky([ValueError("bad input")])

        with pytest.raises(ValueError):
            await with_retry("op", func, max_retries=3)

        assert calls["count"] == 1
        fake_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reraises_last_error_when_exhausted(self, fake_sleep) -> None:
        errors = [NetworkError("first"), NetworkError("second"), NetworkError("third")]
        func, calls = _flaky(errors)

        with pytest.raises(NetworkError, match="third"):
            await with_retry("op", func, max_retries=2)

        assert calls["count"] == 3

    @pytest.mark.asyncio
    async def test_delays_grow_exponentially(self, fake_sleep) -> None:
        func, _ = _flaky([NetworkError("a"), NetworkError("b"), NetworkError("c")])

        await with_retry("op", func, max_retries=3, initial_delay=1.0, max_delay=10.0)

        delays = [call.args[0] for call in fake_sleep.await_args_list]
        assert 1.0 <= delays[0] <= 1.1
        assert 2.0 <= delays[1] <= 2.2
        assert 4.0 <= delays[2] <= 4.4

    @pytest.mark.asyncio
    async def test_database_profile_uses_database_classifier(self, fake_sleep) -> None:
        exc = OperationalError("SELECT 1", {}, Exception("database is locked"))
        func, calls = _flaky([exc])

        assert await with_database_retry("read", func) == "ok"
        assert calls["count"] == 2

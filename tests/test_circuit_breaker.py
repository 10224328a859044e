"""
Tests for the gateway circuit breaker.
"""
from typing import Any

import pytest

from boxoffice.integrations.circuit_breaker import CircuitBreaker, CircuitOpenError


async def succeed() -> str:
    return "ok"


async def fail() -> None:
    raise ConnectionError("gateway down")


@pytest.fixture
def clock(mocker: Any) -> Any:
    return mocker.patch(
        "boxoffice.integrations.circuit_breaker.time.monotonic", return_value=1000.0
    )


class TestCircuitBreaker:
    """Test suite for breaker state transitions."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, clock: Any) -> None:
        breaker = CircuitBreaker("stripe", failure_threshold=3, timeout=60)

        for _ in range(3):
            with pytest.raises(ConnectionError):
                await breaker.call(fail)

        assert breaker.state == "open"
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(succeed)
        assert exc_info.value.retryable is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, clock: Any) -> None:
        breaker = CircuitBreaker("stripe", failure_threshold=2)

        with pytest.raises(ConnectionError):
            await breaker.call(fail)
        assert await breaker.call(succeed) == "ok"
        with pytest.raises(ConnectionError):
            await breaker.call(fail)

        assert breaker.state == "closed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_half_open_then_closed(self, clock: Any) -> None:
        breaker = CircuitBreaker("stripe", failure_threshold=1, timeout=60, success_threshold=2)
        with pytest.raises(ConnectionError):
            await breaker.call(fail)

        clock.return_value = 1061.0
        await breaker.call(succeed)
        assert breaker.state == "half_open"
        await breaker.call(succeed)

        assert breaker.state == "closed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_while_half_open_reopens(self, clock: Any) -> None:
        breaker = CircuitBreaker("stripe", failure_threshold=1, timeout=60)
        with pytest.raises(ConnectionError):
            await breaker.call(fail)

        clock.return_value = 1061.0
        with pytest.raises(ConnectionError):
            await breaker.call(fail)

        assert breaker.state == "open"
        with pytest.raises(CircuitOpenError):
            await breaker.call(succeed)

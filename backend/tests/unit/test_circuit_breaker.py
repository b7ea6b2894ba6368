# backend/tests/unit/test_circuit_breaker.py
import pytest
from unittest.mock import AsyncMock

from whatsflow.utils.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState


@pytest.mark.asyncio
async def test_opens_after_consecutive_failures():
    breaker = CircuitBreaker("evolution_api", failure_threshold=2, timeout=60)
    failing = AsyncMock(side_effect=RuntimeError("down"))

    for _ in range(2):
        with pytest.raises(RuntimeError):
            await breaker.call(failing)

    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        await breaker.call(failing)
    assert failing.await_count == 2


@pytest.mark.asyncio
async def test_half_open_closes_after_successes():
    breaker = CircuitBreaker("evolution_api", failure_threshold=1, timeout=60, success_threshold=2)
    with pytest.raises(RuntimeError):
        await breaker.call(AsyncMock(side_effect=RuntimeError("down")))
    # Pretend the open period has elapsed
    breaker.last_failure_time -= 120

    ok = AsyncMock(return_value="fine")
    assert await breaker.call(ok) == "fine"
    assert breaker.state == CircuitState.HALF_OPEN
    assert await breaker.call(ok) == "fine"
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_success_resets_failure_count():
    breaker = CircuitBreaker("evolution_api", failure_threshold=2)
    with pytest.raises(RuntimeError):
        await breaker.call(AsyncMock(side_effect=RuntimeError("down")))
    await breaker.call(AsyncMock(return_value=None))
    assert breaker.failure_count == 0
    assert breaker.state == CircuitState.CLOSED

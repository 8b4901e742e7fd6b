"""Tests for delivery resilience patterns: errors, retry, breaker, limiter, health."""

import asyncio
import random
from datetime import datetime
from typing import Any, get_type_hints

import pytest

from src.resilience.config import (
    CircuitState,
    CircuitBreakerConfig,
    RetryConfig,
    RateLimiterConfig,
    DEFAULT_RETRY_CONFIG,
)
from src.resilience.errors import DeliveryError, ErrorKind, ErrorLog
from src.resilience.retry import RetryPolicy, compute_delay
from src.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerOpen
from src.resilience.rate_limiter import RateLimiter, RateLimitExceeded
from src.resilience.health import HealthMonitor, HealthStatus


# ── Helpers ──────────────────────────────────────────────────────────


def _failing(counter: list, exc: Exception = None):
    async def op():
        counter.append(1)
        raise exc or ConnectionError(f"boom {len(counter)}")
    return op


async def _ok():
    return "ok"


async def _boom():
    raise ValueError("downstream broke")


# ── Config Tests ─────────────────────────────────────────────────────


class TestResilienceConfig:
    def test_circuit_states(self):
        assert len(CircuitState) == 3
        assert CircuitState.CLOSED.value == "closed"
        assert CircuitState.OPEN.value == "open"
        assert CircuitState.HALF_OPEN.value == "half_open"

    def test_retry_defaults(self):
        cfg = RetryConfig()
        assert cfg.max_attempts == 3
        assert cfg.base_delay == 1.0
        assert cfg.max_delay == 30.0
        assert cfg.backoff_multiplier == 2.0
        assert cfg.timeout is None
        assert DEFAULT_RETRY_CONFIG == cfg

    def test_retry_config_is_frozen(self):
        with pytest.raises(Exception):
            DEFAULT_RETRY_CONFIG.max_attempts = 10

    @pytest.mark.parametrize("kwargs", [
        {"max_attempts": 0},
        {"backoff_multiplier": 1.0},
        {"base_delay": -1},
        {"timeout": 0},
    ])
    def test_retry_config_validation(self, kwargs):
        with pytest.raises(ValueError):
            RetryConfig(**kwargs)

    def test_breaker_and_limiter_defaults(self):
        cb = CircuitBreakerConfig()
        assert (cb.failure_threshold, cb.recovery_timeout, cb.half_open_attempts) == (5, 60.0, 3)
        rl = RateLimiterConfig()
        assert (rl.max_requests, rl.window_seconds) == (20, 60.0)


# ── Error Taxonomy Tests ─────────────────────────────────────────────


class TestErrorKind:
    def test_closed_set(self):
        assert len(ErrorKind) == 11

    @pytest.mark.parametrize("kind", [
        ErrorKind.NETWORK_ERROR,
        ErrorKind.SEND_FAILED,
        ErrorKind.RATE_LIMIT_EXCEEDED,
    ])
    def test_retryable_by_nature(self, kind):
        assert kind.default_retryable is True

    @pytest.mark.parametrize("kind", [
        ErrorKind.PERMISSION_DENIED,
        ErrorKind.INVALID_TOKEN,
        ErrorKind.DEVICE_UNSUPPORTED,
        ErrorKind.CONFIG_MISSING,
    ])
    def test_terminal_kinds(self, kind):
        assert kind.default_retryable is False

    def test_fatal_kinds(self):
        fatal = {k for k in ErrorKind if k.is_fatal}
        assert fatal == {ErrorKind.DEVICE_UNSUPPORTED, ErrorKind.CONFIG_MISSING}


class TestDeliveryError:
    def test_defaults_from_kind(self):
        err = DeliveryError(ErrorKind.NETWORK_ERROR, "offline")
        assert err.retryable is True
        assert err.message == "offline"
        assert str(err) == "offline"
        assert isinstance(err.timestamp, datetime)
        assert err.timestamp.tzinfo is not None

    def test_retryable_override(self):
        err = DeliveryError(ErrorKind.SEND_FAILED, "gave up", retryable=False)
        assert err.retryable is False

    def test_context_is_read_only(self):
        ctx = {"user_id": "u1"}
        err = DeliveryError(ErrorKind.STORAGE_ERROR, "x", context=ctx)
        ctx["user_id"] = "changed"
        assert err.context["user_id"] == "u1"
        with pytest.raises(TypeError):
            err.context["user_id"] = "u2"

    def test_properties_are_read_only(self):
        err = DeliveryError(ErrorKind.STORAGE_ERROR, "x")
        with pytest.raises(AttributeError):
            err.kind = ErrorKind.SEND_FAILED

    def test_to_dict(self):
        cause = ConnectionError("reset")
        err = DeliveryError(ErrorKind.SEND_FAILED, "failed", context={"a": 1}, caused_by=cause)
        d = err.to_dict()
        assert d["kind"] == "send_failed"
        assert d["retryable"] is True
        assert d["context"] == {"a": 1}
        assert d["caused_by"] == {"type": "ConnectionError", "message": "reset"}

    def test_repr(self):
        err = DeliveryError(ErrorKind.INVALID_TOKEN, "bad")
        assert "invalid_token" in repr(err)


class TestErrorLog:
    def test_ring_evicts_oldest(self):
        log = ErrorLog(max_errors=3)
        for i in range(5):
            log.log(DeliveryError(ErrorKind.SEND_FAILED, f"e{i}"))
        assert len(log) == 3
        assert [e.message for e in log.recent(10)] == ["e2", "e3", "e4"]

    def test_recent_limit(self):
        log = ErrorLog()
        for i in range(15):
            log.log(DeliveryError(ErrorKind.SEND_FAILED, f"e{i}"))
        recent = log.recent()
        assert len(recent) == 10
        assert recent[-1].message == "e14"
        assert log.recent(0) == []

    def test_by_kind_and_stats(self):
        log = ErrorLog()
        log.log(DeliveryError(ErrorKind.SEND_FAILED, "a"))
        log.log(DeliveryError(ErrorKind.SEND_FAILED, "b"))
        log.log(DeliveryError(ErrorKind.INVALID_TOKEN, "c"))
        assert len(log.by_kind(ErrorKind.SEND_FAILED)) == 2
        assert log.stats() == {"send_failed": 2, "invalid_token": 1}

    def test_clear(self):
        log = ErrorLog()
        log.log(DeliveryError(ErrorKind.SEND_FAILED, "a"))
        log.clear()
        assert len(log) == 0
        assert log.stats() == {}

    def test_failing_reporter_is_swallowed(self):
        seen = []

        def broken(err):
            raise RuntimeError("monitoring down")

        log = ErrorLog(reporters=[broken])
        log.add_reporter(seen.append)
        log.log(DeliveryError(ErrorKind.SEND_FAILED, "a"))
        assert len(log) == 1
        assert len(seen) == 1

    def test_debug_writes_diagnostic_record(self, caplog):
        log = ErrorLog(debug=True)
        with caplog.at_level("ERROR", logger="src.resilience.errors"):
            log.log(DeliveryError(ErrorKind.STORAGE_ERROR, "disk full"))
        assert "[Notification Error] storage_error: disk full" in caplog.text


# ── Retry Tests ──────────────────────────────────────────────────────


class TestComputeDelay:
    def test_exponential_growth_without_jitter(self):
        cfg = RetryConfig(base_delay=1.0, backoff_multiplier=2.0, max_delay=30.0)
        delays = [compute_delay(a, cfg, rand=lambda: 0.0) for a in range(1, 6)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_capped_at_max_delay(self):
        cfg = RetryConfig(base_delay=1.0, max_delay=5.0)
        assert compute_delay(10, cfg, rand=lambda: 0.0) == 5.0

    @pytest.mark.parametrize("attempt", range(1, 9))
    def test_jitter_bounds(self, attempt):
        cfg = RetryConfig(base_delay=0.5, backoff_multiplier=3.0, max_delay=20.0)
        base = min(0.5 * 3.0 ** (attempt - 1), 20.0)
        for _ in range(50):
            d = compute_delay(attempt, cfg, rand=random.random)
            assert base <= d <= base * 1.1
            assert d <= cfg.max_delay * 1.1


class TestRetryPolicy:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("n", [1, 2, 3, 5])
    async def test_permanent_failure_invoked_n_times(self, n, error_log, recorded_sleep):
        calls = []
        policy = RetryPolicy(error_log, RetryConfig(max_attempts=n), sleep=recorded_sleep)

        with pytest.raises(DeliveryError) as exc_info:
            await policy.execute(_failing(calls), ErrorKind.SEND_FAILED)

        err = exc_info.value
        assert len(calls) == n
        assert err.kind == ErrorKind.SEND_FAILED
        assert err.retryable is False
        assert str(err.caused_by) == f"boom {n}"
        assert err.__cause__ is err.caused_by
        assert len(recorded_sleep.delays) == n - 1

    @pytest.mark.asyncio
    async def test_every_attempt_logged(self, error_log, recorded_sleep):
        policy = RetryPolicy(error_log, RetryConfig(max_attempts=3), sleep=recorded_sleep)
        with pytest.raises(DeliveryError):
            await policy.execute(_failing([]), ErrorKind.NETWORK_ERROR, context={"op": "x"})

        logged = error_log.recent()
        assert [e.retryable for e in logged] == [True, True, False]
        assert [e.context["attempt"] for e in logged] == [1, 2, 3]
        assert all(e.context["op"] == "x" for e in logged)
        assert logged[0].message.startswith("Attempt 1/3 failed")

    @pytest.mark.asyncio
    async def test_backoff_delays(self, error_log, recorded_sleep):
        policy = RetryPolicy(
            error_log,
            RetryConfig(max_attempts=4, base_delay=1.0, max_delay=3.0),
            sleep=recorded_sleep,
            rand=lambda: 0.0,
        )
        with pytest.raises(DeliveryError):
            await policy.execute(_failing([]), ErrorKind.SEND_FAILED)
        assert recorded_sleep.delays == [1.0, 2.0, 3.0]

    @pytest.mark.asyncio
    async def test_single_attempt_has_no_delay(self, error_log, recorded_sleep):
        policy = RetryPolicy(error_log, RetryConfig(max_attempts=1), sleep=recorded_sleep)
        with pytest.raises(DeliveryError):
            await policy.execute(_failing([]), ErrorKind.SEND_FAILED)
        assert recorded_sleep.delays == []

    @pytest.mark.asyncio
    async def test_success_after_failures(self, error_log, recorded_sleep):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("flaky")
            return "delivered"

        policy = RetryPolicy(error_log, sleep=recorded_sleep)
        assert await policy.execute(flaky, ErrorKind.SEND_FAILED) == "delivered"
        assert len(attempts) == 3
        assert len(error_log) == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_stops_immediately(self, error_log, recorded_sleep):
        calls = []
        terminal = DeliveryError(ErrorKind.INVALID_TOKEN, "DeviceNotRegistered")
        policy = RetryPolicy(error_log, sleep=recorded_sleep)

        with pytest.raises(DeliveryError) as exc_info:
            await policy.execute(_failing(calls, terminal), ErrorKind.SEND_FAILED)

        assert len(calls) == 1
        assert exc_info.value.caused_by is terminal
        assert recorded_sleep.delays == []

    @pytest.mark.asyncio
    async def test_exception_outside_retryable_set_stops(self, error_log, recorded_sleep):
        calls = []
        policy = RetryPolicy(
            error_log,
            RetryConfig(retryable_exceptions=(ConnectionError,)),
            sleep=recorded_sleep,
        )
        with pytest.raises(DeliveryError):
            await policy.execute(_failing(calls, KeyError("bad payload")), ErrorKind.SEND_FAILED)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_per_call_config_overrides_default(self, error_log, recorded_sleep):
        calls = []
        policy = RetryPolicy(error_log, RetryConfig(max_attempts=5), sleep=recorded_sleep)
        with pytest.raises(DeliveryError):
            await policy.execute(_failing(calls), ErrorKind.SEND_FAILED, config=RetryConfig(max_attempts=2))
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_attempt_timeout_counts_as_failure(self, error_log, recorded_sleep):
        async def hung():
            await asyncio.sleep(5)

        policy = RetryPolicy(
            error_log,
            RetryConfig(max_attempts=2, timeout=0.01),
            sleep=recorded_sleep,
        )
        with pytest.raises(DeliveryError) as exc_info:
            await policy.execute(hung, ErrorKind.SEND_FAILED)

        assert isinstance(exc_info.value.caused_by, asyncio.TimeoutError)
        assert len(error_log) == 2

    @pytest.mark.asyncio
    async def test_cancellation_interrupts_backoff(self, error_log):
        calls = []
        policy = RetryPolicy(error_log, RetryConfig(max_attempts=3, base_delay=10.0, max_delay=10.0))

        task = asyncio.ensure_future(policy.execute(_failing(calls), ErrorKind.SEND_FAILED))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(calls) == 1


# ── Circuit Breaker Tests ────────────────────────────────────────────


class TestCircuitBreaker:
    def _breaker(self, clock, **kwargs):
        cfg = CircuitBreakerConfig(
            failure_threshold=kwargs.get("threshold", 3),
            recovery_timeout=kwargs.get("timeout", 60.0),
            half_open_attempts=kwargs.get("half_open", 2),
            name="push",
        )
        return CircuitBreaker(cfg, clock=clock)

    async def _trip(self, cb, times):
        for _ in range(times):
            with pytest.raises(ValueError):
                await cb.execute(_boom)

    @pytest.mark.asyncio
    async def test_starts_closed(self, clock):
        cb = self._breaker(clock)
        assert cb.state == CircuitState.CLOSED
        assert cb.next_attempt_time is None
        assert await cb.execute(_ok) == "ok"

    @pytest.mark.asyncio
    async def test_opens_after_threshold_and_rejects_without_calling(self, clock):
        cb = self._breaker(clock, threshold=3)
        await self._trip(cb, 3)
        assert cb.state == CircuitState.OPEN

        calls = []

        async def op():
            calls.append(1)

        with pytest.raises(CircuitBreakerOpen) as exc_info:
            await cb.execute(op)

        assert calls == []
        err = exc_info.value
        assert isinstance(err, DeliveryError)
        assert err.kind == ErrorKind.RATE_LIMIT_EXCEEDED
        assert err.retryable is False
        assert "OPEN" in err.message
        assert err.context["breaker"] == "push"
        assert datetime.fromisoformat(err.context["next_attempt_time"]).timestamp() == pytest.approx(
            clock.now + 60.0
        )
        assert err.context["retry_after_seconds"] == pytest.approx(60.0)
        assert cb.rejected_calls == 1

    @pytest.mark.asyncio
    async def test_original_error_reraised(self, clock):
        cb = self._breaker(clock)
        with pytest.raises(ValueError, match="downstream broke"):
            await cb.execute(_boom)
        assert cb.failure_count == 1
        assert cb.last_failure_time == clock.now

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, clock):
        cb = self._breaker(clock, threshold=3)
        await self._trip(cb, 2)
        await cb.execute(_ok)
        assert cb.failure_count == 0
        await self._trip(cb, 2)
        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_state_does_not_transition_on_read(self, clock):
        cb = self._breaker(clock, threshold=1)
        await self._trip(cb, 1)
        clock.advance(120)
        assert cb.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_half_open_successes_close(self, clock):
        cb = self._breaker(clock, threshold=2, half_open=2)
        await self._trip(cb, 2)
        clock.advance(60.0)

        assert await cb.execute(_ok) == "ok"
        assert cb.state == CircuitState.HALF_OPEN
        assert cb.success_count == 1

        await cb.execute(_ok)
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0
        assert cb.success_count == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens_and_resets_cooldown(self, clock):
        cb = self._breaker(clock, threshold=2, timeout=30.0)
        await self._trip(cb, 2)
        clock.advance(31.0)

        with pytest.raises(ValueError):
            await cb.execute(_boom)

        assert cb.state == CircuitState.OPEN
        assert cb.next_attempt_time == pytest.approx(clock.now + 30.0)

        clock.advance(29.0)
        with pytest.raises(CircuitBreakerOpen):
            await cb.execute(_ok)

    @pytest.mark.asyncio
    async def test_half_open_bounds_concurrent_calls(self, clock):
        cb = self._breaker(clock, threshold=1, half_open=1)
        await self._trip(cb, 1)
        clock.advance(60.0)

        gate = asyncio.Event()

        async def slow():
            await gate.wait()
            return "trial"

        pending = asyncio.ensure_future(cb.execute(slow))
        await asyncio.sleep(0)
        assert cb.state == CircuitState.HALF_OPEN

        with pytest.raises(CircuitBreakerOpen):
            await cb.execute(_ok)

        gate.set()
        assert await pending == "trial"
        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_half_open_call_frees_slot(self, clock):
        cb = self._breaker(clock, threshold=1, half_open=1)
        await self._trip(cb, 1)
        clock.advance(60.0)

        async def hang():
            await asyncio.Event().wait()

        task = asyncio.ensure_future(cb.execute(hang))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert cb.state == CircuitState.HALF_OPEN
        assert cb.failure_count == 1
        assert await cb.execute(_ok) == "ok"
        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_reset(self, clock):
        cb = self._breaker(clock, threshold=1)
        await self._trip(cb, 1)
        cb.reset()
        assert cb.state == CircuitState.CLOSED
        assert await cb.execute(_ok) == "ok"

    @pytest.mark.asyncio
    async def test_metrics(self, clock):
        cb = self._breaker(clock, threshold=1)
        await cb.execute(_ok)
        await self._trip(cb, 1)
        with pytest.raises(CircuitBreakerOpen):
            await cb.execute(_ok)

        m = cb.get_metrics()
        assert m["name"] == "push"
        assert m["state"] == "open"
        assert m["total_calls"] == 2
        assert m["rejected_calls"] == 1

    def test_metrics_annotated_with_builtin_dict(self):
        assert get_type_hints(CircuitBreaker.get_metrics)["return"] == dict[str, Any]
        assert get_type_hints(RateLimiter.get_metrics)["return"] == dict[str, Any]


# ── Rate Limiter Tests ───────────────────────────────────────────────


class TestRateLimiter:
    def _limiter(self, clock, n=3, window=10.0):
        return RateLimiter(RateLimiterConfig(max_requests=n, window_seconds=window, name="push"), clock=clock)

    @pytest.mark.asyncio
    async def test_rejects_call_over_limit(self, clock):
        rl = self._limiter(clock, n=3, window=10.0)
        for _ in range(3):
            assert await rl.throttle(_ok) == "ok"
            clock.advance(1.0)

        with pytest.raises(RateLimitExceeded) as exc_info:
            await rl.throttle(_ok)

        err = exc_info.value
        assert err.kind == ErrorKind.RATE_LIMIT_EXCEEDED
        assert err.retryable is True
        assert err.context["wait_time_ms"] > 0
        assert err.context["wait_time_ms"] == 7000
        assert err.context["max_requests"] == 3
        assert err.context["window_ms"] == 10000

    @pytest.mark.asyncio
    async def test_wait_time_positive_near_window_edge(self, clock):
        rl = self._limiter(clock, n=1, window=1.0)
        await rl.throttle(_ok)
        clock.advance(0.9996)

        with pytest.raises(RateLimitExceeded) as exc_info:
            await rl.throttle(_ok)
        assert exc_info.value.context["wait_time_ms"] >= 1

    @pytest.mark.asyncio
    async def test_admits_again_after_window(self, clock):
        rl = self._limiter(clock, n=2, window=10.0)
        await rl.throttle(_ok)
        await rl.throttle(_ok)
        with pytest.raises(RateLimitExceeded):
            await rl.throttle(_ok)

        clock.advance(10.0)
        assert await rl.throttle(_ok) == "ok"

    @pytest.mark.asyncio
    async def test_rejected_call_never_runs(self, clock):
        rl = self._limiter(clock, n=1)
        await rl.throttle(_ok)
        calls = []

        async def op():
            calls.append(1)

        with pytest.raises(RateLimitExceeded):
            await rl.throttle(op)
        assert calls == []

    @pytest.mark.asyncio
    async def test_operation_error_propagates_unchanged(self, clock):
        rl = self._limiter(clock)
        with pytest.raises(ValueError, match="downstream broke"):
            await rl.throttle(_boom)
        assert rl.remaining == 2

    def test_remaining_and_metrics(self, clock):
        rl = self._limiter(clock, n=3)
        rl.acquire()
        assert rl.remaining == 2
        m = rl.get_metrics()
        assert m["total_allowed"] == 1
        assert m["total_rejected"] == 0
        rl.reset()
        assert rl.remaining == 3


# ── Health Monitor Tests ─────────────────────────────────────────────


class TestHealthMonitor:
    def _log_errors(self, log, count):
        for i in range(count):
            log.log(DeliveryError(ErrorKind.SEND_FAILED, f"e{i}"))

    def test_healthy_by_default(self, error_log, clock):
        monitor = HealthMonitor(error_log)
        status = monitor.check_health(CircuitBreaker(clock=clock))
        assert status.healthy is True
        assert status.errors == 0
        assert status.circuit_state == CircuitState.CLOSED

    def test_four_errors_still_healthy(self, error_log, clock):
        self._log_errors(error_log, 4)
        status = HealthMonitor(error_log).check_health(CircuitBreaker(clock=clock))
        assert status.healthy is True

    def test_five_errors_unhealthy(self, error_log, clock):
        self._log_errors(error_log, 5)
        status = HealthMonitor(error_log).check_health(CircuitBreaker(clock=clock))
        assert status.healthy is False
        assert status.errors == 5

    def test_samples_only_recent_ten(self, error_log, clock):
        self._log_errors(error_log, 40)
        status = HealthMonitor(error_log).check_health(CircuitBreaker(clock=clock))
        assert status.errors == 10

    @pytest.mark.asyncio
    async def test_open_breaker_unhealthy(self, error_log, clock):
        cb = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1), clock=clock)
        with pytest.raises(ValueError):
            await cb.execute(_boom)
        status = HealthMonitor(error_log).check_health(cb)
        assert status.healthy is False
        assert status.circuit_state == CircuitState.OPEN

    def test_last_check_cached(self, error_log, clock):
        monitor = HealthMonitor(error_log)
        status = monitor.check_health(CircuitBreaker(clock=clock), queue_size=2)
        assert monitor.last_health_check is status
        assert status.details == {"queue_size": 2}
        assert isinstance(HealthStatus().to_dict()["last_check"], str)
        assert status.to_dict()["circuit_state"] == "closed"

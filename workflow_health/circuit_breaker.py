"""
Circuit Breaker pattern implementation for the quote pipeline's external services.
Prevents cascading failures by temporarily blocking calls to failing services
(email, PDF generation, AI completion) and substituting degraded results.

States:
    CLOSED    -> calls pass through
    OPEN      -> calls are rejected immediately (degradation strategy if any)
    HALF_OPEN -> trial calls allowed after the cool-down

Usage:
    registry = CircuitBreakerRegistry()
    registry.register("gmail-api", CircuitBreakerConfig(failure_threshold=3),
                      degradation_strategy=queue_email_for_later)

    result = registry.call("gmail-api", send_email, message)
"""

import asyncio
import functools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from workflow_health.errors import CircuitOpenError
from workflow_health.event_log import EventLog, EventType
from workflow_health.retry import RetryPolicy

logger = logging.getLogger("circuit_breaker")

DegradationStrategy = Callable[..., Any]
StateListener = Callable[["CircuitBreaker", "CircuitState", "CircuitState"], None]


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "CLOSED"        # Normal operation
    OPEN = "OPEN"            # Blocked, failures exceeded threshold
    HALF_OPEN = "HALF_OPEN"  # Testing recovery


@dataclass
class CircuitBreakerConfig:
    """Per-service breaker settings."""
    failure_threshold: int = 5              # consecutive failures that trip the breaker
    success_threshold: int = 2              # consecutive HALF_OPEN successes that close it
    reset_timeout_seconds: float = 60.0     # OPEN cool-down before HALF_OPEN
    monitoring_window_seconds: float = 300.0
    error_rate_threshold: float = 50.0      # percent, over the rolling window
    minimum_requests: int = 10              # window size before the error rate can trip
    call_timeout_seconds: Optional[float] = 30.0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CircuitBreakerConfig":
        data = data or {}
        config = cls()
        for key in ("failure_threshold", "success_threshold", "minimum_requests"):
            if key in data:
                setattr(config, key, int(data[key]))
        for key in ("reset_timeout_seconds", "monitoring_window_seconds", "error_rate_threshold"):
            if key in data:
                setattr(config, key, float(data[key]))
        if "call_timeout_seconds" in data:
            timeout = data["call_timeout_seconds"]
            config.call_timeout_seconds = float(timeout) if timeout else None
        return config


@dataclass
class ResilienceMetrics:
    """Lifetime counters for one service. Only reset() clears them."""
    service_name: str
    requests_total: int = 0
    requests_successful: int = 0
    requests_failed: int = 0
    requests_rejected: int = 0
    retries_total: int = 0
    circuit_breaker_trips: int = 0
    degradation_invocations: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ServiceHealth:
    """Point-in-time health snapshot for one service."""
    name: str
    state: CircuitState
    healthy: bool
    success_rate: float
    error_rate: float
    recent_requests: int
    degradation_active: bool
    last_error: Optional[str] = None
    last_error_time: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self), "state": self.state.value}


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class CircuitBreaker:
    """Individual circuit breaker for a service."""

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        degradation_strategy: Optional[DegradationStrategy] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.degradation_strategy = degradation_strategy
        self.retry_policy = retry_policy
        self._clock = clock
        self._lock = threading.RLock()
        self._listeners: List[StateListener] = []

        self._state = CircuitState.CLOSED
        self._window: Deque[Tuple[float, bool]] = deque()
        self.consecutive_failures = 0
        self.consecutive_successes = 0
        self.last_state_change = clock()
        self.last_failure_time: Optional[float] = None
        self.last_error: Optional[str] = None
        self.metrics = ResilienceMetrics(service_name=name)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._check_cooldown()
            return self._state

    def on_state_change(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _check_cooldown(self) -> None:
        """Move OPEN -> HALF_OPEN once the cool-down has elapsed."""
        if self._state is not CircuitState.OPEN:
            return
        elapsed = self._clock() - self.last_state_change
        if elapsed >= self.config.reset_timeout_seconds:
            self._transition(CircuitState.HALF_OPEN, "cool-down elapsed")

    def _transition(self, new_state: CircuitState, reason: str) -> None:
        old_state = self._state
        if old_state is new_state:
            return

        self._state = new_state
        self.last_state_change = self._clock()

        if new_state is CircuitState.OPEN:
            self.metrics.circuit_breaker_trips += 1
            logger.warning("[CircuitBreaker] %s: %s -> OPEN (%s)", self.name, old_state.value, reason)
        else:
            logger.info("[CircuitBreaker] %s: %s -> %s (%s)",
                        self.name, old_state.value, new_state.value, reason)

        if new_state is CircuitState.CLOSED:
            self.consecutive_failures = 0
            self.consecutive_successes = 0
        elif new_state is CircuitState.HALF_OPEN:
            self.consecutive_successes = 0

        for listener in list(self._listeners):
            try:
                listener(self, old_state, new_state)
            except Exception:
                logger.exception("Error in circuit breaker state change listener for %s", self.name)

    def _prune_window(self, now: float) -> None:
        cutoff = now - self.config.monitoring_window_seconds
        while self._window and self._window[0][0] <= cutoff:
            self._window.popleft()

    # ------------------------------------------------------------------
    # Call accounting
    # ------------------------------------------------------------------

    def allow_request(self) -> bool:
        """Check if a call may proceed (circuit not open)."""
        with self._lock:
            self._check_cooldown()
            return self._state is not CircuitState.OPEN

    def record_success(self) -> None:
        with self._lock:
            now = self._clock()
            self._window.append((now, True))
            self._prune_window(now)
            self.metrics.requests_total += 1
            self.metrics.requests_successful += 1
            self.consecutive_successes += 1
            self.consecutive_failures = 0

            if (self._state is CircuitState.HALF_OPEN
                    and self.consecutive_successes >= self.config.success_threshold):
                self._transition(
                    CircuitState.CLOSED,
                    f"{self.consecutive_successes} consecutive successes"
                )

    def record_failure(self, error: Optional[BaseException] = None) -> None:
        with self._lock:
            now = self._clock()
            self._window.append((now, False))
            self._prune_window(now)
            self.metrics.requests_total += 1
            self.metrics.requests_failed += 1
            self.consecutive_failures += 1
            self.consecutive_successes = 0
            self.last_failure_time = now
            if error is not None:
                self.last_error = f"{type(error).__name__}: {error}"
                logger.debug("[CircuitBreaker] %s failure: %s", self.name, self.last_error)

            if self._state is CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN, "failure during recovery")
            elif self._state is CircuitState.CLOSED:
                if self.consecutive_failures >= self.config.failure_threshold:
                    self._transition(
                        CircuitState.OPEN,
                        f"failures: {self.consecutive_failures}/{self.config.failure_threshold}"
                    )
                elif (len(self._window) >= self.config.minimum_requests
                      and self._error_rate() > self.config.error_rate_threshold):
                    self._transition(
                        CircuitState.OPEN,
                        f"error rate {self._error_rate():.1f}% over {len(self._window)} requests"
                    )

    def time_until_retry(self) -> Optional[float]:
        """Seconds until the circuit may move to HALF_OPEN, None unless OPEN."""
        with self._lock:
            if self.state is not CircuitState.OPEN:
                return None
            elapsed = self._clock() - self.last_state_change
            return max(0.0, self.config.reset_timeout_seconds - elapsed)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def _error_rate(self) -> float:
        if not self._window:
            return 0.0
        failures = sum(1 for _, ok in self._window if not ok)
        return failures / len(self._window) * 100

    def health(self) -> ServiceHealth:
        with self._lock:
            self._prune_window(self._clock())
            state = self.state
            error_rate = self._error_rate()
            return ServiceHealth(
                name=self.name,
                state=state,
                healthy=state is not CircuitState.OPEN,
                success_rate=100.0 - error_rate if self._window else 100.0,
                error_rate=error_rate,
                recent_requests=len(self._window),
                degradation_active=state is CircuitState.OPEN and self.degradation_strategy is not None,
                last_error=self.last_error,
                last_error_time=_iso(self.last_failure_time),
            )

    def reset(self) -> None:
        """Force CLOSED and clear the rolling window and lifetime metrics."""
        with self._lock:
            old_state = self._state
            self._transition(CircuitState.CLOSED, "manual reset")
            self._window.clear()
            self.consecutive_failures = 0
            self.consecutive_successes = 0
            self.last_failure_time = None
            self.last_error = None
            self.last_state_change = self._clock()
            self.metrics = ResilienceMetrics(service_name=self.name)
            logger.info("[CircuitBreaker] %s: reset (was %s)", self.name, old_state.value)

    def force_open(self) -> None:
        with self._lock:
            self._transition(CircuitState.OPEN, "forced by operator")

    def to_dict(self) -> Dict[str, Any]:
        health = self.health()
        return {
            "name": self.name,
            "state": health.state.value,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "failure_threshold": self.config.failure_threshold,
            "success_threshold": self.config.success_threshold,
            "reset_timeout_seconds": self.config.reset_timeout_seconds,
            "time_until_retry": self.time_until_retry(),
            "last_state_change": _iso(self.last_state_change),
            "degradation_active": health.degradation_active,
            "metrics": self.metrics.to_dict(),
        }


# =============================================================================
# DEGRADATION STRATEGIES
# =============================================================================

def queue_email_for_later(*args, **kwargs) -> Dict[str, Any]:
    logger.warning("Gmail API unavailable - emails will be queued")
    return {"success": False, "queued": True, "message": "Email queued for later delivery"}


def postpone_pdf_generation(*args, **kwargs) -> Dict[str, Any]:
    return {
        "success": False,
        "postponed": True,
        "message": "PDF generation temporarily unavailable - quote saved as draft",
    }


def canned_ai_response(*args, **kwargs) -> Dict[str, Any]:
    return {
        "success": False,
        "fallback": True,
        "content": None,
        "message": "AI completion unavailable - using template response",
    }


def cached_read(*args, **kwargs) -> Dict[str, Any]:
    logger.warning("Database connection unavailable - using cached data")
    return {"success": False, "cached": True, "message": "Database temporarily unavailable - using cached data"}


DEGRADATION_STRATEGIES: Dict[str, DegradationStrategy] = {
    "queue_email": queue_email_for_later,
    "postpone_pdf": postpone_pdf_generation,
    "canned_ai_response": canned_ai_response,
    "cached_read": cached_read,
}


# =============================================================================
# REGISTRY
# =============================================================================

class CircuitBreakerRegistry:
    """Per-process map of service name -> circuit breaker."""

    def __init__(
        self,
        default_config: Optional[CircuitBreakerConfig] = None,
        event_log: Optional[EventLog] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.breakers: Dict[str, CircuitBreaker] = {}
        self.default_config = default_config or CircuitBreakerConfig()
        self.event_log = event_log
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()

    def register(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        degradation_strategy: Optional[DegradationStrategy] = None,
    ) -> CircuitBreaker:
        """Register a new circuit breaker. Existing breakers are returned as-is."""
        with self._lock:
            if name in self.breakers:
                return self.breakers[name]
            breaker = CircuitBreaker(
                name,
                config=config or CircuitBreakerConfig(**asdict(self.default_config)),
                degradation_strategy=degradation_strategy,
                retry_policy=retry_policy,
                clock=self._clock,
            )
            breaker.on_state_change(self._record_transition)
            self.breakers[name] = breaker
            return breaker

    def register_services(self, definitions: Dict[str, Dict[str, Any]]) -> None:
        """Register breakers from the `services` block of the health policy."""
        for name, definition in (definitions or {}).items():
            definition = definition or {}
            strategy = None
            strategy_name = definition.get("degradation")
            if strategy_name:
                if strategy_name not in DEGRADATION_STRATEGIES:
                    raise ValueError(f"Unknown degradation strategy '{strategy_name}' for service '{name}'")
                strategy = DEGRADATION_STRATEGIES[strategy_name]
            retry_policy = RetryPolicy.from_dict(definition["retry"]) if definition.get("retry") else None
            self.register(
                name,
                config=CircuitBreakerConfig.from_dict(definition),
                retry_policy=retry_policy,
                degradation_strategy=strategy,
            )

    def get_breaker(self, name: str) -> CircuitBreaker:
        """Get a breaker by name, creating it with defaults on first use."""
        breaker = self.breakers.get(name)
        if breaker is None:
            breaker = self.register(name)
        return breaker

    def _record_transition(self, breaker: CircuitBreaker, old: CircuitState, new: CircuitState) -> None:
        if self.event_log is None:
            return
        self.event_log.log_event(
            EventType.CIRCUIT_STATE_CHANGED,
            {
                "service": breaker.name,
                "from": old.value,
                "to": new.value,
                "consecutive_failures": breaker.consecutive_failures,
                "trips": breaker.metrics.circuit_breaker_trips,
            },
        )

    def is_available(self, name: str) -> bool:
        breaker = self.breakers.get(name)
        if breaker is None:
            return True
        return breaker.allow_request()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _degrade(self, breaker: CircuitBreaker, args: tuple, kwargs: dict) -> Any:
        strategy = breaker.degradation_strategy
        if strategy is None:
            raise CircuitOpenError(breaker.name, breaker.time_until_retry())
        breaker.metrics.degradation_invocations += 1
        try:
            return strategy(*args, **kwargs)
        except Exception as exc:
            logger.error("Degradation strategy failed for %s: %s", breaker.name, exc)
            raise CircuitOpenError(breaker.name, breaker.time_until_retry()) from exc

    async def _degrade_async(self, breaker: CircuitBreaker, args: tuple, kwargs: dict) -> Any:
        strategy = breaker.degradation_strategy
        if strategy is None or not asyncio.iscoroutinefunction(strategy):
            return self._degrade(breaker, args, kwargs)
        breaker.metrics.degradation_invocations += 1
        try:
            return await strategy(*args, **kwargs)
        except Exception as exc:
            logger.error("Degradation strategy failed for %s: %s", breaker.name, exc)
            raise CircuitOpenError(breaker.name, breaker.time_until_retry()) from exc

    def _should_retry(self, breaker: CircuitBreaker, error: Exception, retry_count: int) -> bool:
        policy = breaker.retry_policy
        return (
            policy is not None
            and retry_count < policy.max_retries
            and policy.is_retryable(error)
            and breaker.allow_request()
        )

    def call(self, name: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Invoke `func` under the named breaker.

        Raises:
            CircuitOpenError: the circuit is OPEN and no degradation strategy
                is configured (the wrapped function is not invoked)
        """
        breaker = self.get_breaker(name)
        retry_count = 0
        while True:
            if not breaker.allow_request():
                breaker.metrics.requests_rejected += 1
                return self._degrade(breaker, args, kwargs)
            try:
                result = func(*args, **kwargs)
            except Exception as exc:
                breaker.record_failure(exc)
                if self._should_retry(breaker, exc, retry_count):
                    delay = breaker.retry_policy.calculate_delay(retry_count)
                    retry_count += 1
                    breaker.metrics.retries_total += 1
                    logger.info("Retrying %s in %.2fs (attempt %d): %s", name, delay, retry_count, exc)
                    self._sleep(delay)
                    continue
                if breaker.state is CircuitState.OPEN and breaker.degradation_strategy is not None:
                    return self._degrade(breaker, args, kwargs)
                raise
            breaker.record_success()
            return result

    async def _invoke_async(self, breaker: CircuitBreaker, func: Callable[..., Any],
                            args: tuple, kwargs: dict) -> Any:
        timeout = breaker.config.call_timeout_seconds
        if not timeout:
            return await func(*args, **kwargs)
        try:
            return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise TimeoutError(f"Request timeout after {timeout}s") from exc

    async def call_async(self, name: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Async variant of call(); enforces the per-service call timeout."""
        breaker = self.get_breaker(name)
        retry_count = 0
        while True:
            if not breaker.allow_request():
                breaker.metrics.requests_rejected += 1
                return await self._degrade_async(breaker, args, kwargs)
            try:
                result = await self._invoke_async(breaker, func, args, kwargs)
            except Exception as exc:
                breaker.record_failure(exc)
                if self._should_retry(breaker, exc, retry_count):
                    delay = breaker.retry_policy.calculate_delay(retry_count)
                    retry_count += 1
                    breaker.metrics.retries_total += 1
                    logger.info("Retrying %s in %.2fs (attempt %d): %s", name, delay, retry_count, exc)
                    await asyncio.sleep(delay)
                    continue
                if breaker.state is CircuitState.OPEN and breaker.degradation_strategy is not None:
                    return await self._degrade_async(breaker, args, kwargs)
                raise
            breaker.record_success()
            return result

    # ------------------------------------------------------------------
    # Health & operator actions
    # ------------------------------------------------------------------

    def get_service_health(self, name: str) -> Optional[ServiceHealth]:
        breaker = self.breakers.get(name)
        return breaker.health() if breaker else None

    def get_all_services_health(self) -> List[ServiceHealth]:
        return [breaker.health() for breaker in list(self.breakers.values())]

    def get_service_metrics(self, name: str) -> Optional[ResilienceMetrics]:
        breaker = self.breakers.get(name)
        return breaker.metrics if breaker else None

    def get_all_metrics(self) -> List[ResilienceMetrics]:
        return [breaker.metrics for breaker in list(self.breakers.values())]

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        """Get status of all circuit breakers."""
        return {name: breaker.to_dict() for name, breaker in list(self.breakers.items())}

    def reset(self, name: str) -> bool:
        breaker = self.breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def reset_all(self) -> None:
        for breaker in list(self.breakers.values()):
            breaker.reset()

    def force_open(self, name: str) -> None:
        self.get_breaker(name).force_open()

    def get_health_summary(self) -> Dict[str, Any]:
        """Overall resilience status plus per-service alert strings."""
        services = self.get_all_services_health()
        unhealthy = [s for s in services if not s.healthy]

        if not unhealthy:
            overall = "Healthy"
        elif len(unhealthy) == len(services):
            overall = "Critical"
        else:
            overall = "Degraded"

        alerts: List[str] = []
        for service in services:
            if service.state is CircuitState.OPEN:
                alerts.append(f"{service.name} circuit breaker is OPEN")
            if service.error_rate > 50:
                alerts.append(f"{service.name} has high error rate: {service.error_rate:.1f}%")
            if service.degradation_active:
                alerts.append(f"{service.name} is running in degraded mode")
        for metrics in self.get_all_metrics():
            if metrics.circuit_breaker_trips > 5:
                alerts.append(f"{metrics.service_name} has tripped {metrics.circuit_breaker_trips} times")

        return {
            "overall": overall,
            "services": [
                {
                    "name": s.name,
                    "status": "Healthy" if s.healthy else "Unhealthy",
                    "state": s.state.value,
                }
                for s in services
            ],
            "alerts": alerts,
        }

    def metrics_snapshot(self) -> List[Dict[str, Any]]:
        """Rows for the resilience_metrics table."""
        timestamp = datetime.now(timezone.utc).isoformat()
        rows = []
        for breaker in list(self.breakers.values()):
            health = breaker.health()
            metrics = breaker.metrics
            rows.append({
                "service_name": breaker.name,
                "circuit_state": health.state.value,
                "is_healthy": health.healthy,
                "success_rate": health.success_rate,
                "error_rate": health.error_rate,
                "recent_requests": health.recent_requests,
                "degradation_active": health.degradation_active,
                "total_requests": metrics.requests_total,
                "failed_requests": metrics.requests_failed,
                "retries_total": metrics.retries_total,
                "circuit_breaker_trips": metrics.circuit_breaker_trips,
                "degradation_invocations": metrics.degradation_invocations,
                "timestamp": timestamp,
            })
        return rows


def with_circuit_breaker(registry: CircuitBreakerRegistry, breaker_name: str):
    """
    Decorator to wrap a function with circuit breaker protection.

    Args:
        registry: Registry holding the breaker
        breaker_name: Name of the circuit breaker to use
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs) -> Any:
            return await registry.call_async(breaker_name, func, *args, **kwargs)

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs) -> Any:
            return registry.call(breaker_name, func, *args, **kwargs)

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator

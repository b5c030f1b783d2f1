"""
Provider gateway for every outbound image-model call.

Each provider (jimeng, volcengine, gpt, gemini) gets its own lane. A lane
holds a circuit breaker, a concurrency slot count and call pacing. Jimeng and
Volcengine accept one request per account at a time and answer 50430 /
"Concurrent Limit" when pushed, so their lanes run single file with a
minimum gap and back off for a cooldown when the limit is hit.

    gateway = get_gateway()
    data = await gateway.execute("volcengine", call_cv_process, creds, body, "volcengine")
"""
import asyncio
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, Optional

from imgflow.services.errors import CircuitOpenError, TaskValidationError
from imgflow.utils.logger import logger
from imgflow.utils.metrics import inc, observe


@dataclass(frozen=True)
class ServiceConfig:
    max_concurrent: int = 1
    timeout_seconds: float = 120.0
    max_retries: int = 2
    circuit_failure_threshold: int = 5
    circuit_recovery_seconds: float = 30.0
    base_backoff_seconds: float = 2.0
    max_backoff_seconds: float = 10.0
    min_interval_seconds: float = 0.0
    cooldown_seconds: float = 60.0


# Volcengine visual APIs (jimeng runs on the same account) are single-slot
_VISUAL_API = dict(max_concurrent=1, circuit_recovery_seconds=60.0, min_interval_seconds=1.0)
# Hosted LLM image endpoints are slow but tolerate a little parallelism
_LLM_IMAGE_API = dict(max_concurrent=2, timeout_seconds=300.0, max_retries=1, circuit_failure_threshold=3)

GATEWAY_CONFIG: Dict[str, ServiceConfig] = {
    "jimeng": ServiceConfig(timeout_seconds=180.0, max_retries=3, **_VISUAL_API),
    "volcengine": ServiceConfig(**_VISUAL_API),
    "gpt": ServiceConfig(**_LLM_IMAGE_API),
    "gemini": ServiceConfig(**_LLM_IMAGE_API),
}

HALF_OPEN_SUCCESSES_TO_CLOSE = 2
RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})
CONCURRENCY_LIMIT_MARKERS = ("429", "50430", "CONCURRENT_LIMIT", "Concurrent Limit")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class ProviderCircuit:
    """Trips after consecutive provider failures and probes again after a rest period."""

    def __init__(self, provider: str, threshold: int, recovery_seconds: float):
        self.provider = provider
        self.threshold = threshold
        self.recovery_seconds = recovery_seconds
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.probe_successes = 0
        self.opened_at = 0.0

    def _move(self, state: CircuitState, **extra) -> None:
        self.state = state
        log = logger.warning if state == CircuitState.OPEN else logger.info
        log(f"circuit.{state.value}", extra={"provider": self.provider, "circuit_state": state.value, **extra})

    def admits(self) -> bool:
        if self.state != CircuitState.OPEN:
            return True
        if time.monotonic() - self.opened_at < self.recovery_seconds:
            return False
        self.probe_successes = 0
        self._move(CircuitState.HALF_OPEN)
        return True

    def succeeded(self) -> None:
        if self.state != CircuitState.HALF_OPEN:
            self.failures = 0
            return
        self.probe_successes += 1
        if self.probe_successes >= HALF_OPEN_SUCCESSES_TO_CLOSE:
            self.failures = 0
            self._move(CircuitState.CLOSED)

    def failed(self) -> None:
        self.failures += 1
        if self.state == CircuitState.HALF_OPEN:
            self.opened_at = time.monotonic()
            self._move(CircuitState.OPEN, error="probe failed")
        elif self.state == CircuitState.CLOSED and self.failures >= self.threshold:
            self.opened_at = time.monotonic()
            self._move(CircuitState.OPEN, failed=self.failures)


class ProviderLane:
    """Breaker, slots and pacing for one provider."""

    def __init__(self, provider: str, config: ServiceConfig):
        self.provider = provider
        self.config = config
        self.circuit = ProviderCircuit(provider, config.circuit_failure_threshold, config.circuit_recovery_seconds)
        self.slots = asyncio.Semaphore(config.max_concurrent)
        self.last_started = 0.0
        self.resume_at = 0.0

    def cooldown_left(self) -> float:
        return max(0.0, self.resume_at - time.monotonic())

    def start_cooldown(self) -> None:
        self.resume_at = time.monotonic() + self.config.cooldown_seconds
        logger.warning(
            "gateway.cooldown",
            extra={"provider": self.provider, "wait_seconds": self.config.cooldown_seconds},
        )

    async def wait_turn(self) -> None:
        # Caller holds a slot
        pause = self.cooldown_left()
        gap = self.config.min_interval_seconds - (time.monotonic() - self.last_started)
        pause = max(pause, gap)
        if pause > 0:
            await asyncio.sleep(pause)
        self.last_started = time.monotonic()

    def backoff(self, attempt: int) -> float:
        base = min(self.config.base_backoff_seconds * 2 ** attempt, self.config.max_backoff_seconds)
        return base + random.uniform(0, base / 2)


def _http_status(exc: Exception) -> Optional[int]:
    raw = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    try:
        return int(raw) if raw else None
    except (TypeError, ValueError):
        return None


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, TaskValidationError):
        return False
    if _http_status(exc) in RETRYABLE_STATUS:
        return True
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError, OSError)):
        return True
    kind = type(exc).__name__.lower()
    return "timeout" in kind or "connect" in kind or "ratelimit" in kind


def hit_concurrency_limit(exc: Exception) -> bool:
    if _http_status(exc) == 429:
        return True
    text = str(exc)
    return any(marker in text for marker in CONCURRENCY_LIMIT_MARKERS)


class ServiceGateway:
    """Routes provider calls through their lanes. Unknown names pass straight through."""

    def __init__(self, config: Optional[Dict[str, ServiceConfig]] = None) -> None:
        config = GATEWAY_CONFIG if config is None else config
        self._lanes: Dict[str, ProviderLane] = {name: ProviderLane(name, cfg) for name, cfg in config.items()}

    def remaining_cooldown(self, service: str) -> float:
        lane = self._lanes.get(service)
        return lane.cooldown_left() if lane else 0.0

    def get_circuit_states(self) -> Dict[str, str]:
        return {name: lane.circuit.state.value for name, lane in self._lanes.items()}

    async def execute(self, service: str, fn: Callable[..., Coroutine], *args: Any, **kwargs: Any) -> Any:
        """
        Run ``fn(*args, **kwargs)`` against a provider.

        The circuit is checked before every attempt. Validation errors are
        raised untouched and never count against the provider. Transient
        errors are retried up to ``max_retries`` with jittered backoff.
        """
        lane = self._lanes.get(service)
        if lane is None:
            return await fn(*args, **kwargs)

        cfg = lane.config
        attempt = 0
        while True:
            if not lane.circuit.admits():
                inc(f"gateway.{service}.circuit_open")
                raise CircuitOpenError(service)

            started = time.monotonic()
            try:
                async with lane.slots:
                    await lane.wait_turn()
                    result = await asyncio.wait_for(fn(*args, **kwargs), timeout=cfg.timeout_seconds)
            except TaskValidationError:
                raise
            except Exception as exc:
                lane.circuit.failed()
                inc(f"{service}.error")
                if hit_concurrency_limit(exc):
                    lane.start_cooldown()
                if attempt >= cfg.max_retries or not is_transient(exc):
                    logger.error(
                        "gateway.failed",
                        extra={"provider": service, "attempt": attempt + 1, "error": str(exc)[:200]},
                    )
                    raise
                pause = lane.backoff(attempt)
                logger.warning(
                    "gateway.retry",
                    extra={
                        "provider": service,
                        "attempt": attempt + 1,
                        "error": str(exc)[:200],
                        "wait_seconds": round(pause, 2),
                    },
                )
                await asyncio.sleep(pause)
                attempt += 1
                continue

            lane.circuit.succeeded()
            inc(f"{service}.success")
            observe(f"{service}.duration_ms", (time.monotonic() - started) * 1000)
            return result


_gateway: Optional[ServiceGateway] = None


def get_gateway() -> ServiceGateway:
    global _gateway
    if _gateway is None:
        _gateway = ServiceGateway()
    return _gateway

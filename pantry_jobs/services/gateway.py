"""
Inference gateway: circuit breaker, concurrency cap, timeout and retry per provider.

Handlers never talk to the model SDK directly; InferenceClient routes every
call through here so one slow or failing provider cannot pile up worker
slots.

Usage:
    gw = get_gateway()
    response = await gw.execute("vision", client.chat.completions.create, model=..., messages=...)
"""
import asyncio
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import openai

from pantry_jobs.config import get_settings
from pantry_jobs.utils.logger import logger
from pantry_jobs.utils.metrics import inc, observe


@dataclass(frozen=True)
class ProviderLimits:
    max_concurrent: int
    timeout_seconds: float
    max_retries: int = 2
    failure_threshold: int = 5
    recovery_seconds: float = 30.0
    backoff_seconds: float = 1.0


def default_limits() -> Dict[str, ProviderLimits]:
    """Limits per provider, timeouts from settings."""
    settings = get_settings()
    return {
        "vision": ProviderLimits(max_concurrent=4, timeout_seconds=settings.vision_timeout_seconds),
        "chat": ProviderLimits(max_concurrent=8, timeout_seconds=settings.chat_timeout_seconds),
    }


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    def __init__(self, service: str):
        self.service = service
        super().__init__(f"{service} provider is failing; calls suspended until the circuit recovers")


class Circuit:
    """
    Consecutive-failure breaker for one provider.

    OPEN after failure_threshold failures in a row. After recovery_seconds calls
    go through again (HALF_OPEN); the next success closes it, the next failure
    reopens it.
    """

    def __init__(self, service: str, limits: ProviderLimits, clock: Callable[[], float] = time.monotonic):
        self.service = service
        self.limits = limits
        self.clock = clock
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.opened_at = 0.0

    def _move(self, state: CircuitState, **extra) -> None:
        self.state = state
        log = logger.warning if state == CircuitState.OPEN else logger.info
        log(f"circuit.{state.value}", extra={"service": self.service, "circuit_state": state.value, **extra})

    def allow(self) -> bool:
        if self.state == CircuitState.OPEN and self.clock() - self.opened_at >= self.limits.recovery_seconds:
            self._move(CircuitState.HALF_OPEN)
        return self.state != CircuitState.OPEN

    def succeeded(self) -> None:
        self.failures = 0
        if self.state != CircuitState.CLOSED:
            self._move(CircuitState.CLOSED)

    def failed(self) -> None:
        self.failures += 1
        if self.state == CircuitState.HALF_OPEN or self.failures >= self.limits.failure_threshold:
            self.opened_at = self.clock()
            if self.state != CircuitState.OPEN:
                self._move(CircuitState.OPEN, count=self.failures)


def is_transient(exc: BaseException) -> bool:
    """Errors worth another attempt: rate limits, timeouts, dropped connections, 5xx."""
    if isinstance(exc, (openai.RateLimitError, openai.APITimeoutError, openai.APIConnectionError)):
        return True
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code >= 500
    return isinstance(exc, (asyncio.TimeoutError, ConnectionError))


class ServiceGateway:
    def __init__(self, limits: Optional[Dict[str, ProviderLimits]] = None, clock: Callable[[], float] = time.monotonic):
        self.limits = limits if limits is not None else default_limits()
        self.circuits = {name: Circuit(name, cfg, clock) for name, cfg in self.limits.items()}
        self._slots: Dict[str, asyncio.Semaphore] = {}

    def _slot(self, service: str) -> asyncio.Semaphore:
        # Created on first use so the semaphore binds to the running loop
        if service not in self._slots:
            self._slots[service] = asyncio.Semaphore(self.limits[service].max_concurrent)
        return self._slots[service]

    async def execute(self, service: str, fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Call fn through the provider's breaker, slot, timeout and retry policy."""
        limits = self.limits.get(service)
        if limits is None:
            raise KeyError(f"Unknown inference provider: {service}")
        circuit = self.circuits[service]

        started = time.monotonic()
        attempt = 0
        while True:
            if not circuit.allow():
                inc(f"{service}.rejected")
                raise CircuitOpenError(service)
            attempt += 1
            try:
                async with self._slot(service):
                    result = await asyncio.wait_for(fn(*args, **kwargs), timeout=limits.timeout_seconds)
            except Exception as exc:
                circuit.failed()
                inc(f"{service}.error")
                if attempt > limits.max_retries or not is_transient(exc):
                    logger.error(
                        "gateway.failed",
                        extra={"service": service, "attempt": attempt, "error": str(exc)[:200],
                               "error_type": type(exc).__name__},
                    )
                    raise
                delay = limits.backoff_seconds * 2 ** (attempt - 1)
                delay += random.uniform(0, delay / 2)
                logger.warning(
                    "gateway.retry",
                    extra={"service": service, "attempt": attempt, "error": str(exc)[:200],
                           "duration_ms": round(delay * 1000)},
                )
                await asyncio.sleep(delay)
                continue

            circuit.succeeded()
            inc(f"{service}.success")
            observe(f"{service}.duration_ms", (time.monotonic() - started) * 1000)
            return result

    def get_circuit_states(self) -> Dict[str, str]:
        return {name: circuit.state.value for name, circuit in self.circuits.items()}


_gateway: Optional[ServiceGateway] = None


def get_gateway() -> ServiceGateway:
    global _gateway
    if _gateway is None:
        _gateway = ServiceGateway()
    return _gateway

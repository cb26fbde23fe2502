import asyncio
import enum
import logging
import time
from collections import deque

import httpx

from common.config import ResiliencePolicy
from common.errors import DependencyUnavailableError

RETRYABLE_STATUS = {408, 429}


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """Failure-ratio breaker over a rolling sampling window.

    Opens once at least `minimum_throughput` samples were taken in the last
    `sampling_duration` seconds and the failure ratio reached `failure_ratio`.
    After `break_duration` one trial request is let through; its outcome closes
    or re-opens the circuit.
    """

    def __init__(self, name: str, policy: ResiliencePolicy, clock=time.monotonic):
        self.name = name
        self.policy = policy
        self._clock = clock
        self._samples: deque[tuple[float, bool]] = deque()
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._opened_at is None:
            return CircuitState.CLOSED
        if self._clock() - self._opened_at >= self.policy.break_duration:
            return CircuitState.HALF_OPEN
        return CircuitState.OPEN

    def allow_request(self) -> bool:
        state = self.state
        if state is CircuitState.CLOSED:
            return True
        if state is CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        return False

    def _prune(self, now: float):
        while self._samples and now - self._samples[0][0] > self.policy.sampling_duration:
            self._samples.popleft()

    def record_success(self):
        if self._opened_at is not None:
            logging.info(f"Circuit '{self.name}' closed")
            self._opened_at = None
            self._trial_in_flight = False
            self._samples.clear()
            return
        now = self._clock()
        self._samples.append((now, True))
        self._prune(now)

    def record_failure(self):
        now = self._clock()
        if self._opened_at is not None:
            # only the half-open trial may re-open; late failures of older calls are ignored
            if self._trial_in_flight:
                self._open(now)
            return
        self._samples.append((now, False))
        self._prune(now)
        failures = sum(1 for _, ok in self._samples if not ok)
        if len(self._samples) >= self.policy.minimum_throughput \
                and failures / len(self._samples) >= self.policy.failure_ratio:
            self._open(now)

    def _open(self, now: float):
        self._opened_at = now
        self._trial_in_flight = False
        self._samples.clear()
        logging.warning(f"Circuit '{self.name}' opened for {self.policy.break_duration}s")


class ResilientClient:
    """HTTP client for one peer service with its own retry, timeout and breaker state."""

    def __init__(self, name: str, base_url: str, policy: ResiliencePolicy = ResiliencePolicy(),
                 transport: httpx.AsyncBaseTransport | None = None, sleep=asyncio.sleep, clock=time.monotonic):
        self.name = name
        self.policy = policy
        self.breaker = CircuitBreaker(name, policy, clock)
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Accept": "application/json"},
            timeout=policy.attempt_timeout,
            transport=transport,
        )

    async def get(self, path: str, **params) -> httpx.Response:
        return await self.request("GET", path, params=params or None)

    async def request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            async with asyncio.timeout(self.policy.total_timeout):
                return await self._with_retry(method, path, **kwargs)
        except TimeoutError:
            logging.error(f"{self.name}: {method} {path} exceeded {self.policy.total_timeout}s")
            raise DependencyUnavailableError(self.name, f"timed out after {self.policy.total_timeout}s")

    async def _attempt(self, method: str, path: str, **kwargs) -> tuple[httpx.Response | None, str | None]:
        try:
            async with asyncio.timeout(self.policy.attempt_timeout):
                response = await self._client.request(method, path, **kwargs)
        except TimeoutError:
            return None, f"attempt timed out after {self.policy.attempt_timeout}s"
        except httpx.TransportError as e:
            return None, f"{type(e).__name__}: {e}"
        if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS:
            return None, f"HTTP {response.status_code}"
        return response, None

    async def _with_retry(self, method: str, path: str, **kwargs) -> httpx.Response:
        last_error = None
        for attempt in range(1, self.policy.max_attempts + 1):
            if not self.breaker.allow_request():
                logging.warning(f"{self.name}: circuit open, not calling {method} {path}")
                raise DependencyUnavailableError(self.name, "circuit open")
            try:
                response, last_error = await self._attempt(method, path, **kwargs)
            except asyncio.CancelledError:
                self.breaker.record_failure()
                raise
            if response is not None:
                self.breaker.record_success()
                return response
            self.breaker.record_failure()
            if attempt < self.policy.max_attempts:
                delay = self.policy.base_delay * 2 ** (attempt - 1)
                logging.warning(f"{self.name}: attempt {attempt} of {method} {path} failed ({last_error}), "
                                f"retrying in {delay:.2f}s")
                await self._sleep(delay)
        raise DependencyUnavailableError(
            self.name, f"failed after {self.policy.max_attempts} attempts: {last_error}"
        )

    async def close(self):
        await self._client.aclose()

"""
Waits for objects that are created asynchronously by cluster controllers.

Some controllers only create their output (e.g. the credentials Secret of an
ObjectBucketClaim) some time after the owning resource was accepted by the API
server. The waiter bridges that gap by polling the control plane with bounded
exponential backoff:

    delay(i) = min(initial_delay * 2 ** (i - 1), max_delay)

for the i-th pause between two lookups. With ``n = max_attempts`` the loop
therefore never sleeps longer than

    sum(min(initial_delay * 2 ** i, max_delay) for i in range(n - 1))

seconds in total, plus the latency of the ``n`` lookups themselves. Use
:func:`worst_case_wait` to compute that bound when choosing the parameters.

Only an explicit "not found" answer from the accessor is retried, any other
failure ends the wait immediately.
"""

import asyncio
import enum
import itertools
import logging
import time
import typing as t

from deploy_utils.model import LocalBaseModel

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 20
DEFAULT_INITIAL_DELAY = 2.0
DEFAULT_MAX_DELAY = 15.0


class ObjectAccessor(t.Protocol):
    """
    Point lookup of a named object in a namespace.

    Returns the object's fields, or ``None`` if the object does not exist (yet).
    Any other failure must be raised.
    """

    def lookup(self, name: str, namespace: str) -> dict[str, str] | None: ...


class WaitState(enum.StrEnum):
    POLLING = 'polling'
    SUCCEEDED = 'succeeded'
    TIMED_OUT = 'timed-out'
    FATAL = 'fatal'

    @property
    def is_terminal(self) -> bool:
        return self is not WaitState.POLLING

    def transition(self, new_state: 'WaitState') -> 'WaitState':
        if self.is_terminal:
            raise RuntimeError(f'Cannot leave terminal wait state {self} for {new_state}')
        return new_state


class WaitRequest(LocalBaseModel):
    model_config = {**LocalBaseModel.model_config, 'frozen': True}

    target_name: str
    target_namespace: str
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    initial_delay: float = DEFAULT_INITIAL_DELAY
    max_delay: float = DEFAULT_MAX_DELAY

    @property
    def key(self) -> tuple[str, str]:
        return (self.target_name, self.target_namespace)

    @property
    def target(self) -> str:
        return f'{self.target_namespace}/{self.target_name}'

    def validate_bounds(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError(
                self, 'max_attempts', f'max_attempts must be at least 1, got {self.max_attempts}'
            )
        if self.initial_delay <= 0:
            raise ConfigurationError(
                self, 'initial_delay', f'initial_delay must be positive, got {self.initial_delay}s'
            )
        if self.max_delay < self.initial_delay:
            raise ConfigurationError(
                self,
                'max_delay',
                f'max_delay ({self.max_delay}s) must not be smaller than '
                f'initial_delay ({self.initial_delay}s)',
            )


class WaitResult(LocalBaseModel):
    resolved_fields: dict[str, str]
    attempts_used: int
    elapsed: float


class WaitError(Exception):
    """
    Base class of all waiter errors.

    Carries the identity of the awaited object along with the attempt count and
    elapsed seconds at the time the wait ended.
    """

    def __init__(self, request: WaitRequest, message: str, attempts: int = 0, elapsed: float = 0.0):
        super().__init__(message)
        self.target_name = request.target_name
        self.target_namespace = request.target_namespace
        self.attempts = attempts
        self.elapsed = elapsed


class ConfigurationError(WaitError, ValueError):
    def __init__(self, request: WaitRequest, field: str, reason: str):
        super().__init__(
            request, f'Invalid wait configuration for "{request.target}": {reason}'
        )
        self.field = field


class WaitTimeoutError(WaitError):
    def __init__(self, request: WaitRequest, elapsed: float):
        super().__init__(
            request,
            f'Timeout: "{request.target_name}" in namespace "{request.target_namespace}" '
            f'did not appear after {request.max_attempts} attempts ({elapsed:.1f}s elapsed). '
            'Check the logs of the controller that is expected to create it.',
            attempts=request.max_attempts,
            elapsed=elapsed,
        )


class WaitFatalError(WaitError):
    def __init__(self, request: WaitRequest, attempt: int, elapsed: float, cause: Exception):
        super().__init__(
            request,
            f'Unexpected error while looking up "{request.target_name}" in namespace '
            f'"{request.target_namespace}" (attempt {attempt}/{request.max_attempts}, '
            f'{elapsed:.1f}s elapsed): {cause}',
            attempts=attempt,
            elapsed=elapsed,
        )
        self.cause = cause


def iter_backoff(initial_delay: float, max_delay: float) -> t.Iterator[float]:
    """
    Endless sequence of delays, doubling from initial_delay and clamped at max_delay.
    """
    delay = initial_delay
    while True:
        yield delay
        delay = min(delay * 2, max_delay)


def backoff_delays(
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
) -> list[float]:
    """
    Delays slept between the attempts of a wait that never finds its target.
    """
    return list(itertools.islice(iter_backoff(initial_delay, max_delay), max(max_attempts - 1, 0)))


def worst_case_wait(
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
) -> float:
    """
    Upper bound of the time spent sleeping, excluding lookup latency.

    With the defaults (20 attempts, 2s initial, 15s max) this is 2 + 4 + 8 + 16 * 15 = 254s.
    """
    return sum(backoff_delays(max_attempts, initial_delay, max_delay))


class Waiter:
    """
    Polls an accessor until awaited objects show up.

    Results are kept per (name, namespace) for the lifetime of the waiter, so
    waiting again for an object that was already resolved doesn't hit the
    control plane. Concurrent waits for the same object are serialized. Timed out,
    failed or cancelled waits are not kept, waiting again starts a new poll.
    """

    def __init__(
        self,
        accessor: ObjectAccessor,
        sleep: t.Callable[[float], t.Awaitable[t.Any]] = asyncio.sleep,
        clock: t.Callable[[], float] = time.monotonic,
    ):
        self._accessor = accessor
        self._sleep = sleep
        self._clock = clock
        self._results: dict[tuple[str, str], WaitResult] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._states: dict[tuple[str, str], WaitState] = {}

    def state(self, request: WaitRequest) -> WaitState | None:
        """
        State of the latest wait for the request's target, None if it was never awaited.
        """
        return self._states.get(request.key)

    async def wait(self, request: WaitRequest) -> WaitResult:
        request.validate_bounds()

        if request.key in self._results:
            logger.debug(f'"{request.target}" already resolved, skipping lookup')
            return self._results[request.key]

        lock = self._locks.setdefault(request.key, asyncio.Lock())
        async with lock:
            # Resolved while queued behind another wait for the same target
            if request.key in self._results:
                return self._results[request.key]

            result = await self._poll(request)
            self._results[request.key] = result

        # Later waits are answered from the results without locking
        self._locks.pop(request.key, None)
        return result

    async def _poll(self, request: WaitRequest) -> WaitResult:
        logger.info(
            f'Waiting for "{request.target_name}" in namespace '
            f'"{request.target_namespace}" (max_attempts={request.max_attempts}, '
            f'initial_delay={request.initial_delay}s, max_delay={request.max_delay}s)'
        )

        self._states[request.key] = WaitState.POLLING
        try:
            return await self._poll_attempts(request)
        except asyncio.CancelledError:
            # A cancelled wait leaves nothing behind, the next one starts fresh
            self._states.pop(request.key, None)
            logger.info(f'Wait for "{request.target}" was cancelled')
            raise

    async def _poll_attempts(self, request: WaitRequest) -> WaitResult:
        state = self._states[request.key]
        delays = iter_backoff(request.initial_delay, request.max_delay)
        start = self._clock()

        for attempt in range(1, request.max_attempts + 1):
            try:
                fields = await asyncio.to_thread(
                    self._accessor.lookup, request.target_name, request.target_namespace
                )
            except Exception as e:
                self._states[request.key] = state = state.transition(WaitState.FATAL)
                elapsed = self._clock() - start
                logger.error(
                    f'Lookup of "{request.target}" failed on attempt '
                    f'{attempt}/{request.max_attempts} ({elapsed:.1f}s elapsed): {e}'
                )
                raise WaitFatalError(request, attempt, elapsed, e) from e

            elapsed = self._clock() - start
            if fields is not None:
                self._states[request.key] = state = state.transition(WaitState.SUCCEEDED)
                logger.info(
                    f'Found "{request.target}" after {attempt} '
                    f'attempts ({elapsed:.1f}s elapsed)'
                )
                return WaitResult(resolved_fields=fields, attempts_used=attempt, elapsed=elapsed)

            if attempt == request.max_attempts:
                break

            delay = next(delays)
            logger.info(
                f'Attempt {attempt}/{request.max_attempts}: "{request.target}" '
                f'not found, retrying in {delay}s ({elapsed:.1f}s elapsed)'
            )
            await self._sleep(delay)

        self._states[request.key] = state = state.transition(WaitState.TIMED_OUT)
        elapsed = self._clock() - start
        logger.error(
            f'Gave up on "{request.target}", still missing after '
            f'{request.max_attempts} attempts ({elapsed:.1f}s elapsed)'
        )
        raise WaitTimeoutError(request, elapsed)

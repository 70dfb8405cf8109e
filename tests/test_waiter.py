"""Tests for the deploy_utils.waiter module."""

import asyncio
import logging
import threading

import pydantic
import pytest

from deploy_utils.waiter import (
    ConfigurationError,
    Waiter,
    WaitError,
    WaitFatalError,
    WaitRequest,
    WaitState,
    WaitTimeoutError,
    backoff_delays,
    iter_backoff,
    worst_case_wait,
)

SECRET_DATA = {'AWS_ACCESS_KEY_ID': 'YWNjZXNz', 'AWS_SECRET_ACCESS_KEY': 'c2VjcmV0'}


class FakeAccessor:
    """Replays the given responses, repeating the last one forever."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self._in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def lookup(self, name, namespace):
        with self._lock:
            self.calls.append((name, namespace))
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
            response = self.responses[min(len(self.calls), len(self.responses)) - 1]
        try:
            if isinstance(response, Exception):
                raise response
            return response
        finally:
            with self._lock:
                self._in_flight -= 1


class FakeClock:
    """Clock that only advances when the waiter sleeps."""

    def __init__(self):
        self.now = 100.0
        self.delays = []

    def __call__(self):
        return self.now

    async def sleep(self, delay):
        self.delays.append(delay)
        self.now += delay
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def request_():
    return WaitRequest(
        target_name='harbor-registry-bucket',
        target_namespace='harbor',
        max_attempts=5,
        initial_delay=1.0,
        max_delay=8.0,
    )


def make_waiter(accessor, clock):
    return Waiter(accessor, sleep=clock.sleep, clock=clock)


def test_found_on_third_attempt(request_, clock):
    accessor = FakeAccessor(None, None, SECRET_DATA)

    result = asyncio.run(make_waiter(accessor, clock).wait(request_))

    assert result.attempts_used == 3
    assert result.resolved_fields == SECRET_DATA
    assert result.elapsed == 3.0
    assert clock.delays == [1.0, 2.0]
    assert accessor.calls == [('harbor-registry-bucket', 'harbor')] * 3


@pytest.mark.parametrize('found_on', [1, 2, 3, 4, 5])
def test_attempts_used_matches_lookups(request_, clock, found_on):
    accessor = FakeAccessor(*[None] * (found_on - 1), SECRET_DATA)

    result = asyncio.run(make_waiter(accessor, clock).wait(request_))

    assert result.attempts_used == found_on
    assert len(accessor.calls) == found_on
    assert len(clock.delays) == found_on - 1


def test_never_found_times_out(request_, clock):
    accessor = FakeAccessor(None)

    with pytest.raises(WaitTimeoutError) as exc_info:
        asyncio.run(make_waiter(accessor, clock).wait(request_))

    assert len(accessor.calls) == 5
    assert clock.delays == [1.0, 2.0, 4.0, 8.0]
    error = exc_info.value
    assert error.attempts == 5
    assert error.elapsed == 15.0
    assert error.target_name == 'harbor-registry-bucket'
    assert error.target_namespace == 'harbor'
    assert 'harbor-registry-bucket' in str(error)
    assert '5 attempts' in str(error)
    assert '15.0s elapsed' in str(error)


def test_authorization_failure_is_fatal(request_, clock):
    cause = PermissionError('secrets "harbor-registry-bucket" is forbidden')
    accessor = FakeAccessor(cause)

    with pytest.raises(WaitFatalError) as exc_info:
        asyncio.run(make_waiter(accessor, clock).wait(request_))

    assert len(accessor.calls) == 1
    assert clock.delays == []
    assert exc_info.value.__cause__ is cause
    assert exc_info.value.cause is cause
    assert exc_info.value.attempts == 1
    assert 'forbidden' in str(exc_info.value)


def test_fatal_error_ends_retries_early(request_, clock):
    accessor = FakeAccessor(None, None, ConnectionError('connection refused'), None)

    with pytest.raises(WaitFatalError) as exc_info:
        asyncio.run(make_waiter(accessor, clock).wait(request_))

    assert len(accessor.calls) == 3
    assert clock.delays == [1.0, 2.0]
    assert exc_info.value.attempts == 3
    assert exc_info.value.elapsed == 3.0


def test_single_attempt_never_sleeps(clock):
    request = WaitRequest(target_name='creds', target_namespace='default', max_attempts=1)
    accessor = FakeAccessor(None)

    with pytest.raises(WaitTimeoutError):
        asyncio.run(make_waiter(accessor, clock).wait(request))

    assert len(accessor.calls) == 1
    assert clock.delays == []


@pytest.mark.parametrize(
    'max_attempts, initial_delay, max_delay, field',
    [
        (0, 1.0, 1.0, 'max_attempts'),
        (-3, 1.0, 1.0, 'max_attempts'),
        (3, 0.0, 1.0, 'initial_delay'),
        (3, -1.0, 1.0, 'initial_delay'),
        (3, 2.0, 1.0, 'max_delay'),
    ],
)
def test_invalid_bounds_fail_before_lookup(clock, max_attempts, initial_delay, max_delay, field):
    request = WaitRequest(
        target_name='creds',
        target_namespace='default',
        max_attempts=max_attempts,
        initial_delay=initial_delay,
        max_delay=max_delay,
    )
    accessor = FakeAccessor(SECRET_DATA)

    with pytest.raises(ConfigurationError) as exc_info:
        asyncio.run(make_waiter(accessor, clock).wait(request))

    assert exc_info.value.field == field
    assert isinstance(exc_info.value, ValueError)
    assert isinstance(exc_info.value, WaitError)
    assert accessor.calls == []


def test_second_wait_uses_resolved_result(request_, clock):
    accessor = FakeAccessor(None, SECRET_DATA)
    waiter = make_waiter(accessor, clock)

    async def wait_twice():
        return await waiter.wait(request_), await waiter.wait(request_)

    first, second = asyncio.run(wait_twice())

    assert len(accessor.calls) == 2
    assert second.resolved_fields == first.resolved_fields
    assert second.attempts_used == first.attempts_used


def test_resolved_result_is_keyed_by_target(request_, clock):
    accessor = FakeAccessor(SECRET_DATA)
    waiter = make_waiter(accessor, clock)
    other = request_.model_copy(update={'target_name': 'other-bucket'})

    async def wait_both():
        await waiter.wait(request_)
        await waiter.wait(other)

    asyncio.run(wait_both())

    assert accessor.calls == [('harbor-registry-bucket', 'harbor'), ('other-bucket', 'harbor')]


def test_concurrent_waits_do_not_overlap(request_, clock):
    accessor = FakeAccessor(None, None, SECRET_DATA)
    waiter = make_waiter(accessor, clock)

    async def wait_concurrently():
        return await asyncio.gather(waiter.wait(request_), waiter.wait(request_))

    first, second = asyncio.run(wait_concurrently())

    assert len(accessor.calls) == 3
    assert accessor.max_in_flight == 1
    assert first == second


def test_timed_out_wait_is_not_cached(request_, clock):
    accessor = FakeAccessor(None, None, None, None, None, SECRET_DATA)
    waiter = make_waiter(accessor, clock)

    with pytest.raises(WaitTimeoutError):
        asyncio.run(waiter.wait(request_))
    assert waiter.state(request_) is WaitState.TIMED_OUT

    result = asyncio.run(waiter.wait(request_))

    assert result.attempts_used == 1
    assert len(accessor.calls) == 6
    assert waiter.state(request_) is WaitState.SUCCEEDED


def test_fatal_wait_is_not_cached(request_, clock):
    accessor = FakeAccessor(ConnectionError('connection refused'), SECRET_DATA)
    waiter = make_waiter(accessor, clock)

    with pytest.raises(WaitFatalError):
        asyncio.run(waiter.wait(request_))

    assert asyncio.run(waiter.wait(request_)).resolved_fields == SECRET_DATA
    assert len(accessor.calls) == 2


def test_resolved_targets_release_their_lock(request_, clock):
    accessor = FakeAccessor(None, SECRET_DATA)
    waiter = make_waiter(accessor, clock)

    async def wait_repeatedly():
        first = await asyncio.gather(waiter.wait(request_), waiter.wait(request_))
        return [*first, await waiter.wait(request_)]

    results = asyncio.run(wait_repeatedly())

    assert len(accessor.calls) == 2
    assert all(result == results[0] for result in results)
    assert waiter._locks == {}


def test_independent_waits_run_concurrently(clock):
    accessor = FakeAccessor(None, None, None, SECRET_DATA)
    waiter = make_waiter(accessor, clock)
    requests = [
        WaitRequest(target_name=name, target_namespace='harbor', initial_delay=1.0, max_delay=1.0)
        for name in ('a', 'b')
    ]

    async def wait_all():
        return await asyncio.gather(*(waiter.wait(request) for request in requests))

    results = asyncio.run(wait_all())

    assert {name for name, _ in accessor.calls} == {'a', 'b'}
    assert all(result.resolved_fields == SECRET_DATA for result in results)


def test_cancelled_wait_restarts_fresh(request_):
    accessor = FakeAccessor(None)

    async def sleep_forever(delay):
        await asyncio.Event().wait()

    waiter = Waiter(accessor, sleep=sleep_forever)

    async def cancel_then_retry():
        task = asyncio.create_task(waiter.wait(request_))
        while not accessor.calls:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert waiter.state(request_) is None

        accessor.responses = [SECRET_DATA]
        return await waiter.wait(request_)

    result = asyncio.run(cancel_then_retry())

    assert result.attempts_used == 1
    assert len(accessor.calls) == 2
    assert waiter.state(request_) is WaitState.SUCCEEDED


def test_backoff_doubles_and_clamps():
    assert backoff_delays(5, 1.0, 8.0) == [1.0, 2.0, 4.0, 8.0]
    assert backoff_delays(7, 1.0, 8.0) == [1.0, 2.0, 4.0, 8.0, 8.0, 8.0]
    assert backoff_delays(1, 1.0, 8.0) == []


@pytest.mark.parametrize('initial_delay, max_delay', [(0.5, 0.5), (2.0, 15.0), (3.0, 100.0)])
def test_backoff_is_monotonic_and_bounded(initial_delay, max_delay):
    delays = backoff_delays(30, initial_delay, max_delay)

    for i, delay in enumerate(delays, start=1):
        assert delay == min(initial_delay * 2 ** (i - 1), max_delay)
        assert 0 < delay <= max_delay
    assert delays == sorted(delays)


def test_iter_backoff_is_endless():
    delays = iter_backoff(2.0, 15.0)
    assert [next(delays) for _ in range(6)] == [2.0, 4.0, 8.0, 15.0, 15.0, 15.0]


def test_worst_case_wait():
    assert worst_case_wait(5, 1.0, 8.0) == 15.0
    # Defaults: 20 attempts, 2s initial, 15s max
    assert worst_case_wait() == 2.0 + 4.0 + 8.0 + 16 * 15.0
    assert worst_case_wait(1) == 0


def test_worst_case_wait_bounds_timeout(request_, clock):
    with pytest.raises(WaitTimeoutError):
        asyncio.run(make_waiter(FakeAccessor(None), clock).wait(request_))

    assert sum(clock.delays) == worst_case_wait(
        request_.max_attempts, request_.initial_delay, request_.max_delay
    )


def test_terminal_states_have_no_transitions():
    assert WaitState.POLLING.transition(WaitState.POLLING) is WaitState.POLLING
    assert WaitState.POLLING.transition(WaitState.SUCCEEDED) is WaitState.SUCCEEDED

    for state in (WaitState.SUCCEEDED, WaitState.TIMED_OUT, WaitState.FATAL):
        assert state.is_terminal
        with pytest.raises(RuntimeError):
            state.transition(WaitState.POLLING)


def test_request_defaults_and_immutability():
    request = WaitRequest(target_name='creds', target_namespace='default')

    assert (request.max_attempts, request.initial_delay, request.max_delay) == (20, 2.0, 15.0)
    assert request.key == ('creds', 'default')
    assert request.target == 'default/creds'
    with pytest.raises(pydantic.ValidationError):
        request.max_attempts = 3


@pytest.mark.parametrize(
    'responses, expected_state',
    [
        ((None, SECRET_DATA), WaitState.SUCCEEDED),
        ((None,), WaitState.TIMED_OUT),
        ((PermissionError('forbidden'),), WaitState.FATAL),
    ],
)
def test_waiter_reports_terminal_state(request_, clock, responses, expected_state):
    waiter = make_waiter(FakeAccessor(*responses), clock)
    assert waiter.state(request_) is None

    try:
        asyncio.run(waiter.wait(request_))
    except WaitError:
        pass

    assert waiter.state(request_) is expected_state


@pytest.mark.parametrize(
    'responses, expected',
    [
        ((None, SECRET_DATA), 'Found "harbor/harbor-registry-bucket" after 2 attempts (1.0s elapsed)'),
        ((None,), 'still missing after 5 attempts (15.0s elapsed)'),
        ((PermissionError('forbidden'),), 'failed on attempt 1/5 (0.0s elapsed): forbidden'),
    ],
)
def test_terminal_paths_are_logged(request_, clock, caplog, responses, expected):
    caplog.set_level(logging.INFO, logger='deploy_utils.waiter')

    try:
        asyncio.run(make_waiter(FakeAccessor(*responses), clock).wait(request_))
    except WaitError:
        pass

    assert expected in caplog.text

from __future__ import annotations

import threading
import time

import pytest
import requests

from provisioner.client.resilience import CircuitBreaker, CircuitState, retry_with_backoff
from provisioner.client.service_client import ResponseCache, ServiceClient, TransientServiceError
from provisioner.core.exceptions import CircuitOpenError
from provisioner.core.models.status import HealthState


def _boom():
    raise RuntimeError("downstream failure")


def test_breaker_opens_after_threshold_and_half_opens_after_timeout(clock):
    breaker = CircuitBreaker(failure_threshold=3, reset_timeout=30, clock=clock)

    for _ in range(3):
        with pytest.raises(RuntimeError):
            breaker.call(_boom)
    assert breaker.state is CircuitState.OPEN

    with pytest.raises(CircuitOpenError):
        breaker.call(lambda: "not called")

    clock.sleep(29)
    assert breaker.state is CircuitState.OPEN
    clock.sleep(1)
    assert breaker.state is CircuitState.HALF_OPEN

    assert breaker.call(lambda: "ok") == "ok"
    assert breaker.state is CircuitState.CLOSED
    assert breaker.failures == 0


def test_failed_trial_reopens_with_fresh_timestamp(clock):
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout=10, clock=clock)
    with pytest.raises(RuntimeError):
        breaker.call(_boom)
    clock.sleep(10)
    assert breaker.state is CircuitState.HALF_OPEN

    with pytest.raises(RuntimeError):
        breaker.call(_boom)

    assert breaker.state is CircuitState.OPEN
    clock.sleep(5)
    assert breaker.state is CircuitState.OPEN
    clock.sleep(5)
    assert breaker.state is CircuitState.HALF_OPEN


def test_success_resets_consecutive_failures(clock):
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout=10, clock=clock)
    with pytest.raises(RuntimeError):
        breaker.call(_boom)
    breaker.call(lambda: None)
    with pytest.raises(RuntimeError):
        breaker.call(_boom)

    assert breaker.state is CircuitState.CLOSED


def test_retry_with_backoff_doubles_delay(clock):
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise TransientServiceError("try again")
        return "done"

    result = retry_with_backoff(flaky, attempts=4, delay=0.5, exceptions=TransientServiceError, sleep=clock.sleep)

    assert result == "done"
    assert clock.sleeps == [0.5, 1.0]


def test_retry_gives_up_and_reraises(clock):
    def always_down():
        raise TransientServiceError("down")

    with pytest.raises(TransientServiceError):
        retry_with_backoff(
            always_down,
            attempts=2,
            exceptions=TransientServiceError,
            sleep=clock.sleep,
        )
    assert clock.sleeps == [1.0]


def test_response_cache_expires_entries(clock):
    cache = ResponseCache(ttl_seconds=60, clock=clock)
    cache.put("/collections", ["docs"])

    assert cache.get("/collections") == ["docs"]
    clock.sleep(60)
    assert cache.get("/collections") is None
    assert len(cache) == 0


def _client(settings, session, clock, **kwargs):
    return ServiceClient(
        "http://localhost:8000",
        api_key="sk-client",
        settings=settings,
        session=session,
        breaker=CircuitBreaker(2, 30, clock=clock),
        cache=ResponseCache(300, clock=clock),
        sleep=clock.sleep,
        **kwargs,
    )


def test_client_retries_server_errors_then_succeeds(settings, clock, scripted_session, fake_response):
    session = scripted_session(
        [fake_response({}, status_code=503), {"status": "ready", "version": "1.0"}],
        repeat_last=False,
    )
    client = _client(settings, session, clock)

    health = client.health()

    assert health.status is HealthState.READY
    assert len(session.requests) == 2
    assert session.headers["X-API-Key"] == "sk-client"
    assert session.requests[0][1] == "http://localhost:8000/health"


def test_client_does_not_retry_client_errors(settings, clock, scripted_session, fake_response):
    session = scripted_session([fake_response({"detail": "nope"}, status_code=404)])
    client = _client(settings, session, clock)

    with pytest.raises(requests.HTTPError):
        client.get_json("/missing")

    assert len(session.requests) == 1
    assert client.breaker.state is CircuitState.CLOSED


def test_client_caches_get_responses(settings, clock, scripted_session):
    session = scripted_session([{"collections": ["docs"]}])
    client = _client(settings, session, clock)

    first = client.get_json("/collections", {"limit": 10})
    second = client.get_json("/collections", {"limit": 10})

    assert first == second == {"collections": ["docs"]}
    assert len(session.requests) == 1


def test_open_circuit_stops_further_requests(settings, clock, scripted_session):
    session = scripted_session([requests.ConnectionError("refused")])
    client = _client(settings, session, clock)

    with pytest.raises(CircuitOpenError):
        client.post_json("/search", {"query": "vectors"})

    # Two failures open the breaker; the third attempt is rejected locally.
    assert len(session.requests) == 2
    assert client.breaker.state is CircuitState.OPEN


def test_map_concurrent_caps_in_flight_calls(settings, clock, scripted_session):
    client = _client(settings, scripted_session([{}]), clock)
    lock = threading.Lock()
    in_flight = 0
    peak = 0

    def work(item):
        nonlocal in_flight, peak
        with lock:
            in_flight += 1
            peak = max(peak, in_flight)
        time.sleep(0.01)
        with lock:
            in_flight -= 1
        return item * 2

    results = client.map_concurrent(work, range(20))

    assert results == [item * 2 for item in range(20)]
    assert 1 <= peak <= settings.client_max_concurrency == 5


def test_interrupted_trial_frees_the_half_open_slot(clock):
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout=10, clock=clock)
    with pytest.raises(RuntimeError):
        breaker.call(_boom)
    clock.sleep(10)

    def interrupted():
        raise KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        breaker.call(interrupted)

    assert breaker.state is CircuitState.HALF_OPEN
    assert breaker.call(lambda: "ok") == "ok"
    assert breaker.state is CircuitState.CLOSED

"""Tests for concurrent transitions and request-number allocation."""
import re
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from fixflow_core.exceptions import ErrorCode, IllegalTransitionError
from fixflow_core.models import Request, RequestAction, RequestStatus

REQUEST_NUMBER = re.compile(r"^REQ-\d{8}-\d{4}$")


class TestSingleWriter:
    """Only one of several concurrent transitions on a request may win."""

    def test_concurrent_accepts(self, lifecycle, seed, request_in, reload, log_count, dispatcher):
        request = request_in("assigned")
        logs_before = log_count(request.id)
        barrier = threading.Barrier(2)

        def accept():
            barrier.wait()
            try:
                return lifecycle.accept(request.id, seed.tech)
            except IllegalTransitionError as e:
                return e

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(lambda _: accept(), range(2)))

        successes = [r for r in results if isinstance(r, Request)]
        failures = [r for r in results if isinstance(r, IllegalTransitionError)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert failures[0].code == ErrorCode.CANNOT_ACCEPT
        assert failures[0].current_status == RequestStatus.ACCEPTED

        assert reload(request.id).status == RequestStatus.ACCEPTED
        assert log_count(request.id) == logs_before + 1
        assert len(dispatcher.of_type(RequestAction.ACCEPT)) == 1

    def test_concurrent_accept_and_reject(self, lifecycle, seed, request_in, reload, log_count):
        request = request_in("assigned")
        logs_before = log_count(request.id)
        barrier = threading.Barrier(2)

        def run(action):
            barrier.wait()
            try:
                return action()
            except IllegalTransitionError as e:
                return e

        actions = [
            lambda: lifecycle.accept(request.id, seed.tech),
            lambda: lifecycle.reject(request.id, seed.tech, "Double booked"),
        ]
        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(run, actions))

        winners = [r for r in results if isinstance(r, Request)]
        assert len(winners) == 1
        assert reload(request.id).status == winners[0].status
        assert log_count(request.id) == logs_before + 1


class TestRequestNumbers:
    """Concurrent creates never share a request number."""

    def test_hundred_concurrent_creates(self, lifecycle, seed, session_factory):
        def create(i):
            return lifecycle.create(
                seed.requester, f"Issue {i}", seed.category_id, seed.location_id
            ).request_number

        with ThreadPoolExecutor(max_workers=10) as pool:
            numbers = list(pool.map(create, range(100)))

        assert len(set(numbers)) == 100
        assert all(REQUEST_NUMBER.match(n) for n in numbers)
        assert len({n[:13] for n in numbers}) == 1
        assert sorted(int(n[-4:]) for n in numbers) == list(range(1, 101))

        with session_factory() as session:
            assert session.query(Request).count() == 100


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

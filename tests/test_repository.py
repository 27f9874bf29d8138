"""Tests for the request repository and request-number allocation."""
from datetime import date, datetime

import pytest
from fixflow_core.exceptions import RequestNotFoundError, StaleStateError
from fixflow_core.models import Request, RequestSequence, RequestStatus
from fixflow_core.repository import SqlAlchemyRequestRepository, _sequence_from_number
from fixflow_core.sequences import (
    RequestNumberAllocator,
    format_request_number,
    request_number_prefix,
)

DAY = date(2026, 5, 14)


def _stored_request(seed, number):
    return Request(
        request_number=number,
        status=RequestStatus.PENDING,
        requester_id=seed.requester.user_id,
        category_id=seed.category_id,
        location_id=seed.location_id,
        title="Imported",
    )


class TestRequestNumberFormat:
    def test_prefix_and_padding(self):
        prefix = request_number_prefix(DAY)
        assert prefix == "REQ-20260514-"
        assert format_request_number(prefix, 7) == "REQ-20260514-0007"
        assert format_request_number(prefix, 12345) == "REQ-20260514-12345"

    def test_sequence_parsing(self):
        assert _sequence_from_number("REQ-20260514-0042") == 42
        assert _sequence_from_number("garbage") == 0


class TestAllocator:
    """Test the per-day counter."""

    def test_first_number_of_the_day(self, db_session, seed):
        allocator = RequestNumberAllocator(db_session, SqlAlchemyRequestRepository(db_session))
        assert allocator.next_number(DAY) == "REQ-20260514-0001"
        assert allocator.next_number(DAY) == "REQ-20260514-0002"
        db_session.commit()

        counter = db_session.query(RequestSequence).one()
        assert counter.prefix == "REQ-20260514-"
        assert counter.last_value == 2

    def test_days_are_independent(self, db_session, seed):
        allocator = RequestNumberAllocator(db_session, SqlAlchemyRequestRepository(db_session))
        allocator.next_number(DAY)
        assert allocator.next_number(date(2026, 5, 15)) == "REQ-20260515-0001"

    def test_seeded_from_existing_numbers(self, db_session, seed):
        db_session.add(_stored_request(seed, "REQ-20260514-0041"))
        db_session.commit()

        allocator = RequestNumberAllocator(db_session, SqlAlchemyRequestRepository(db_session))
        assert allocator.next_number(DAY) == "REQ-20260514-0042"

    def test_resyncs_when_counter_is_behind(self, db_session, seed):
        db_session.add(RequestSequence(prefix="REQ-20260514-", last_value=3))
        db_session.add(_stored_request(seed, "REQ-20260514-0010"))
        db_session.commit()

        allocator = RequestNumberAllocator(db_session, SqlAlchemyRequestRepository(db_session))
        assert allocator.next_number(DAY) == "REQ-20260514-0011"
        assert allocator.next_number(DAY) == "REQ-20260514-0012"


class TestCompareAndSet:
    """Test the conditional status write."""

    def test_write_applies_when_status_matches(self, session_factory, new_request):
        request = new_request()
        with session_factory() as session:
            repository = SqlAlchemyRequestRepository(session)
            updated = repository.compare_and_set_status(
                request.id, RequestStatus.PENDING, title="Renamed"
            )
            session.commit()
            assert updated.title == "Renamed"
            assert updated.status == RequestStatus.PENDING

    def test_write_fails_when_status_changed(self, session_factory, new_request, reload):
        request = new_request()
        with session_factory() as session:
            repository = SqlAlchemyRequestRepository(session)
            loaded = repository.load_for_update(request.id)
            assert loaded.status == RequestStatus.PENDING

            # Another writer moves the request on
            with session_factory() as other:
                SqlAlchemyRequestRepository(other).compare_and_set_status(
                    request.id, RequestStatus.PENDING, status=RequestStatus.ASSIGNED
                )
                other.commit()

            with pytest.raises(StaleStateError) as exc_info:
                repository.compare_and_set_status(
                    request.id, RequestStatus.PENDING, status=RequestStatus.CANCELLED
                )
            session.rollback()

        assert exc_info.value.expected_status == RequestStatus.PENDING
        assert exc_info.value.actual_status == RequestStatus.ASSIGNED
        assert reload(request.id).status == RequestStatus.ASSIGNED

    def test_soft_deleted_request_is_not_writable(self, session_factory, new_request):
        request = new_request()
        with session_factory() as session:
            SqlAlchemyRequestRepository(session).compare_and_set_status(
                request.id, RequestStatus.PENDING, deleted_at=datetime(2026, 5, 14)
            )
            session.commit()

        with session_factory() as session:
            repository = SqlAlchemyRequestRepository(session)
            with pytest.raises(RequestNotFoundError):
                repository.load_for_update(request.id)
            with pytest.raises(StaleStateError):
                repository.compare_and_set_status(request.id, RequestStatus.PENDING, title="Nope")

    def test_highest_sequence_for_prefix(self, db_session, seed):
        repository = SqlAlchemyRequestRepository(db_session)
        assert repository.highest_sequence_for_prefix("REQ-20260514-") == 0

        db_session.add_all([
            _stored_request(seed, "REQ-20260514-0003"),
            _stored_request(seed, "REQ-20260514-0017"),
            _stored_request(seed, "REQ-20260515-0099"),
        ])
        db_session.commit()
        assert repository.highest_sequence_for_prefix("REQ-20260514-") == 17

    def test_highest_sequence_past_padding(self, db_session, seed):
        db_session.add_all([
            _stored_request(seed, "REQ-20260514-9999"),
            _stored_request(seed, "REQ-20260514-10000"),
        ])
        db_session.commit()
        repository = SqlAlchemyRequestRepository(db_session)
        assert repository.highest_sequence_for_prefix("REQ-20260514-") == 10000


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

"""Request repository: the persistence contract consumed by the lifecycle engine."""
import logging
from abc import ABC, abstractmethod
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, joinedload

from .exceptions import RequestNotFoundError, StaleStateError
from .models import (
    Category,
    Location,
    Request,
    RequestStatus,
    Technician,
    User,
    utcnow,
)

logger = logging.getLogger("fixflow-core.repository")


class RequestRepository(ABC):
    """
    Transactional access to the Request aggregate.

    Implementations must make ``compare_and_set_status`` fail rather than
    overwrite when the stored status differs from the expected one.
    """

    @abstractmethod
    def load_for_update(self, request_id: UUID) -> Request:
        """Load an active request for a subsequent conditional write.

        Raises:
            RequestNotFoundError: If missing or soft-deleted
        """

    @abstractmethod
    def compare_and_set_status(
        self, request_id: UUID, expected_status: RequestStatus, **fields
    ) -> Request:
        """Write ``fields`` only if the request is still in ``expected_status``.

        Raises:
            StaleStateError: If the status changed since it was loaded
        """

    @abstractmethod
    def highest_sequence_for_prefix(self, prefix: str) -> int:
        """Highest request-number sequence used for a day prefix (0 if none)."""

    @abstractmethod
    def add(self, request: Request) -> Request:
        """Stage a new request for insertion."""

    @abstractmethod
    def get_with_relations(self, request_id: UUID) -> Optional[Request]:
        """Load a request with category, location, requester and technician."""

    @abstractmethod
    def get_technician(self, technician_id: UUID) -> Optional[Technician]:
        """Look up a technician profile."""

    @abstractmethod
    def get_user(self, user_id: UUID) -> Optional[User]:
        """Look up a user."""

    @abstractmethod
    def get_category(self, category_id: UUID) -> Optional[Category]:
        """Look up a category."""

    @abstractmethod
    def get_location(self, location_id: UUID) -> Optional[Location]:
        """Look up a location."""


def _sequence_from_number(request_number: str) -> int:
    """Extract the trailing NNNN sequence from REQ-YYYYMMDD-NNNN."""
    try:
        return int(request_number.rsplit("-", 1)[1])
    except (IndexError, ValueError):
        logger.warning(f"Malformed request number ignored: {request_number}")
        return 0


class SqlAlchemyRequestRepository(RequestRepository):
    """RequestRepository backed by a SQLAlchemy session (caller owns the transaction)."""

    def __init__(self, session: Session):
        self._session = session

    def load_for_update(self, request_id: UUID) -> Request:
        # FOR UPDATE is a no-op on SQLite; the conditional UPDATE below still guards the write
        request = self._session.execute(
            select(Request)
            .where(Request.id == request_id)
            .with_for_update(of=Request)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        if request is None or request.deleted_at is not None:
            raise RequestNotFoundError(request_id)
        return request

    def compare_and_set_status(
        self, request_id: UUID, expected_status: RequestStatus, **fields
    ) -> Request:
        values = dict(fields)
        values.setdefault("updated_at", utcnow())

        result = self._session.execute(
            update(Request)
            .where(
                Request.id == request_id,
                Request.status == expected_status,
                Request.deleted_at.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            actual = self._session.execute(
                select(Request.status).where(Request.id == request_id)
            ).scalar_one_or_none()
            logger.info(
                f"Compare-and-set lost for {request_id}: expected {expected_status.value}, "
                f"found {actual.value if actual else None}"
            )
            raise StaleStateError(request_id, expected_status, actual)

        request = self._session.get(Request, request_id)
        # The bulk UPDATE bypassed the identity map
        self._session.expire(request)
        return request

    def highest_sequence_for_prefix(self, prefix: str) -> int:
        # Soft-deleted requests keep their numbers, so they are included
        latest = self._session.execute(
            select(Request.request_number)
            .where(Request.request_number.startswith(prefix))
            # Longer numbers first: sequences past 9999 outgrow the padding
            .order_by(func.length(Request.request_number).desc(), Request.request_number.desc())
            .limit(1)
        ).scalar_one_or_none()
        return _sequence_from_number(latest) if latest else 0

    def add(self, request: Request) -> Request:
        self._session.add(request)
        self._session.flush()
        return request

    def get_with_relations(self, request_id: UUID) -> Optional[Request]:
        return self._session.execute(
            select(Request)
            .options(
                joinedload(Request.category),
                joinedload(Request.location),
                joinedload(Request.requester),
                joinedload(Request.technician).joinedload(Technician.user),
            )
            .where(Request.id == request_id)
            .execution_options(populate_existing=True)
        ).unique().scalar_one_or_none()

    def get_technician(self, technician_id: UUID) -> Optional[Technician]:
        return self._session.get(Technician, technician_id)

    def get_user(self, user_id: UUID) -> Optional[User]:
        return self._session.get(User, user_id)

    def get_category(self, category_id: UUID) -> Optional[Category]:
        return self._session.get(Category, category_id)

    def get_location(self, location_id: UUID) -> Optional[Location]:
        return self._session.get(Location, location_id)

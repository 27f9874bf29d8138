"""Request number allocation: REQ-YYYYMMDD-NNNN, monotonic within a day.

Numbers come from a per-day counter row in ``request_sequences``. A single
``UPDATE ... SET last_value = last_value + 1`` takes the row lock, so
concurrent allocators for the same day are serialized until the allocating
transaction ends. A rolled-back transaction returns its number.
"""
import logging
from datetime import date

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .models import RequestSequence
from .repository import RequestRepository

logger = logging.getLogger("fixflow-core.sequences")

REQUEST_NUMBER_PREFIX = "REQ"
SEQUENCE_WIDTH = 4


def request_number_prefix(day: date) -> str:
    """Day prefix shared by every request number allocated on ``day``."""
    return f"{REQUEST_NUMBER_PREFIX}-{day:%Y%m%d}-"


def format_request_number(prefix: str, sequence: int) -> str:
    """Render a request number, zero-padding the sequence to four digits."""
    return f"{prefix}{sequence:0{SEQUENCE_WIDTH}d}"


class RequestNumberAllocator:
    """
    Allocates request numbers inside the caller's transaction.

    The counter row for a prefix is seeded from the highest number already
    stored for that day, and re-synced upward whenever stored numbers are
    ahead of it. Seeding races surface as ``IntegrityError`` from the flush;
    the caller rolls back and retries.
    """

    def __init__(self, session: Session, repository: RequestRepository):
        self._session = session
        self._repository = repository

    def next_number(self, day: date) -> str:
        """
        Allocate the next request number for ``day``.

        Raises:
            sqlalchemy.exc.IntegrityError: If another transaction seeded the
                counter row concurrently
        """
        prefix = request_number_prefix(day)

        result = self._session.execute(
            update(RequestSequence)
            .where(RequestSequence.prefix == prefix)
            .values(last_value=RequestSequence.last_value + 1)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            value = self._repository.highest_sequence_for_prefix(prefix) + 1
            self._session.add(RequestSequence(prefix=prefix, last_value=value))
            self._session.flush()
            logger.debug(f"Seeded request sequence {prefix} at {value}")
            return format_request_number(prefix, value)

        value = self._session.execute(
            select(RequestSequence.last_value).where(RequestSequence.prefix == prefix)
        ).scalar_one()

        highest = self._repository.highest_sequence_for_prefix(prefix)
        if value <= highest:
            logger.warning(
                f"Request sequence {prefix} behind stored numbers ({value} <= {highest}); resyncing"
            )
            value = highest + 1
            self._session.execute(
                update(RequestSequence)
                .where(RequestSequence.prefix == prefix)
                .values(last_value=value)
                .execution_options(synchronize_session=False)
            )

        logger.debug(f"Allocated request sequence {prefix}{value}")
        return format_request_number(prefix, value)

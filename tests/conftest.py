"""
Shared fixtures for the bike rental test suite
"""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from bike_rental.config import RentalConfig
from bike_rental.engine import RentalEngine
from bike_rental.errors import StorageError
from bike_rental.storage import TransientStorage


class FakeClock:
    """Deterministic clock; every call returns the current instant"""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, hours=0, minutes=0):
        self.now = self.now + timedelta(hours=hours, minutes=minutes)
        return self.now


class FailingStorage(TransientStorage):
    """Accepts loads but fails every write"""

    name = "failing"

    def sync(self, state, collection, record):
        raise StorageError(f"disk full while writing {collection}")

    def save_sequences(self, sequences):
        raise StorageError("disk full while writing id sequences")


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Undo setup_logging so caplog keeps seeing package records"""
    yield
    logger = logging.getLogger("bike_rental")
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rental_config():
    return RentalConfig(_env_file=None)


@pytest.fixture
def engine(rental_config, clock):
    return RentalEngine(TransientStorage(), rental_config, clock=clock)

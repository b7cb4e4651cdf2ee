"""
Domain Model Module

Bike, Customer and Rental records, the bike status machine, and the
in-memory object graph (``RentalState``) the engine owns.

Rentals reference their bike and customer by id only. The state's bike map is
the single arena of Bike objects, so a bike is never copied into a rental and
every lookup resolves through the arena.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, Iterable, List, Optional

from .currency import Money
from .errors import InvalidBikeState

logger = logging.getLogger(__name__)

BIKES = "bikes"
CUSTOMERS = "customers"
RENTALS = "rentals"
COLLECTIONS = (BIKES, CUSTOMERS, RENTALS)


class BikeStatus(Enum):
    """Bike lifecycle states"""
    AVAILABLE = "AVAILABLE"   # Ready to rent
    RENTED = "RENTED"         # Out with exactly one open rental
    IN_REPAIR = "IN_REPAIR"   # Withdrawn for maintenance


BIKE_TRANSITIONS: Dict[BikeStatus, FrozenSet[BikeStatus]] = {
    BikeStatus.AVAILABLE: frozenset({BikeStatus.RENTED, BikeStatus.IN_REPAIR}),
    BikeStatus.RENTED: frozenset({BikeStatus.AVAILABLE}),
    BikeStatus.IN_REPAIR: frozenset({BikeStatus.AVAILABLE}),
}


def bike_key(bike_id: str) -> str:
    """Arena key for a bike id; bike ids match case-insensitively"""
    return bike_id.strip().casefold()


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class BikeDefaults:
    """
    Defaults for the optional Bike fields.

    ``maintenance`` is either "now" (stamp new bikes with their creation
    time) or "unset" (leave the maintenance timestamp empty).
    """
    maintenance: str = "now"
    note: str = ""

    MAINTENANCE_POLICIES: ClassVar[FrozenSet[str]] = frozenset({"now", "unset"})

    def __post_init__(self):
        if self.maintenance not in self.MAINTENANCE_POLICIES:
            raise ValueError(
                f"maintenance must be one of {sorted(self.MAINTENANCE_POLICIES)}, got {self.maintenance!r}"
            )

    def maintenance_timestamp(self, now: datetime) -> Optional[datetime]:
        return now if self.maintenance == "now" else None


@dataclass
class Bike:
    """
    A bike in the rental inventory.

    ``status`` is read-only; only the rental engine moves a bike between
    states, through ``_transition``.
    """
    bike_id: str
    label: str
    hourly_rate: Money
    last_maintenance: Optional[datetime] = None
    note: str = ""
    _status: BikeStatus = BikeStatus.AVAILABLE

    collection: ClassVar[str] = BIKES

    @property
    def status(self) -> BikeStatus:
        return self._status

    @property
    def key(self) -> str:
        return bike_key(self.bike_id)

    @property
    def is_available(self) -> bool:
        return self._status is BikeStatus.AVAILABLE

    def _transition(self, target: BikeStatus) -> None:
        if target not in BIKE_TRANSITIONS[self._status]:
            raise InvalidBikeState(
                f"Bike {self.bike_id} cannot move from {self._status.value} to {target.value}"
            )
        self._status = target

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {
            "bike_id": self.bike_id,
            "label": self.label,
            "hourly_rate": self.hourly_rate.to_dict(),
            "status": self._status.value,
            "last_maintenance": _format_timestamp(self.last_maintenance),
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Bike':
        """Create instance from dictionary"""
        return cls(
            bike_id=data["bike_id"],
            label=data["label"],
            hourly_rate=Money.from_dict(data["hourly_rate"]),
            last_maintenance=_parse_timestamp(data.get("last_maintenance")),
            note=data.get("note") or "",
            _status=BikeStatus(data["status"]),
        )

    def __str__(self):
        return (f"Bike ID: {self.bike_id}, Type: {self.label}, "
                f"Rate: {self.hourly_rate.to_string()}/hr, Status: {self._status.value}")


@dataclass(frozen=True)
class Customer:
    """A registered customer. Immutable once created."""
    customer_id: int
    name: str

    collection: ClassVar[str] = CUSTOMERS

    def to_dict(self) -> Dict[str, Any]:
        return {"customer_id": self.customer_id, "name": self.name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Customer':
        return cls(customer_id=int(data["customer_id"]), name=data["name"])

    def __str__(self):
        return f"Customer ID: {self.customer_id}, Name: {self.name}"


@dataclass
class Rental:
    """
    A rental transaction.

    Open on creation and closed exactly once at checkout, when the charge is
    computed. Closed rentals never change again.
    """
    rental_id: int
    customer_id: int
    bike_id: str
    start_time: datetime
    _closed: bool = False
    _total_charge: Optional[Money] = None
    _duration_hours: Optional[int] = None
    _end_time: Optional[datetime] = None

    collection: ClassVar[str] = RENTALS

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_open(self) -> bool:
        return not self._closed

    @property
    def total_charge(self) -> Optional[Money]:
        return self._total_charge

    @property
    def duration_hours(self) -> Optional[int]:
        return self._duration_hours

    @property
    def end_time(self) -> Optional[datetime]:
        return self._end_time

    @property
    def bike_key(self) -> str:
        return bike_key(self.bike_id)

    def _close(self, charge: Money, duration_hours: int, end_time: datetime) -> None:
        if self._closed:
            return
        self._total_charge = charge
        self._duration_hours = duration_hours
        self._end_time = end_time
        self._closed = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rental_id": self.rental_id,
            "customer_id": self.customer_id,
            "bike_id": self.bike_id,
            "start_time": _format_timestamp(self.start_time),
            "closed": self._closed,
            "total_charge": self._total_charge.to_dict() if self._total_charge else None,
            "duration_hours": self._duration_hours,
            "end_time": _format_timestamp(self._end_time),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Rental':
        charge = data.get("total_charge")
        duration = data.get("duration_hours")
        return cls(
            rental_id=int(data["rental_id"]),
            customer_id=int(data["customer_id"]),
            bike_id=data["bike_id"],
            start_time=_parse_timestamp(data["start_time"]),
            _closed=bool(data.get("closed", False)),
            _total_charge=Money.from_dict(charge) if charge else None,
            _duration_hours=int(duration) if duration is not None else None,
            _end_time=_parse_timestamp(data.get("end_time")),
        )


@dataclass
class RentalState:
    """
    The full in-memory object graph.

    All three maps keep insertion order, which is the order queries report.
    """
    bikes: Dict[str, Bike] = field(default_factory=dict)
    customers: Dict[int, Customer] = field(default_factory=dict)
    rentals: Dict[int, Rental] = field(default_factory=dict)

    @classmethod
    def link(
        cls,
        bikes: Iterable[Bike],
        customers: Iterable[Customer],
        rentals: Iterable[Rental]
    ) -> 'RentalState':
        """
        Build a state from separately loaded collections, resolving each
        rental's bike and customer by id. Rentals pointing at a missing bike
        or customer are dropped with a warning.
        """
        state = cls()
        for bike in bikes:
            state.bikes[bike.key] = bike
        for customer in customers:
            state.customers[customer.customer_id] = customer

        for rental in rentals:
            if rental.customer_id not in state.customers:
                logger.warning(
                    "Dropping rental %s: customer %s not found", rental.rental_id, rental.customer_id
                )
                continue
            if rental.bike_key not in state.bikes:
                logger.warning(
                    "Dropping rental %s: bike %s not found", rental.rental_id, rental.bike_id
                )
                continue
            state.rentals[rental.rental_id] = rental

        return state

    def records(self, collection: str) -> List[Any]:
        """All records of one collection, in insertion order"""
        if collection == BIKES:
            return list(self.bikes.values())
        if collection == CUSTOMERS:
            return list(self.customers.values())
        if collection == RENTALS:
            return list(self.rentals.values())
        raise ValueError(f"Unknown collection: {collection}")

    def open_rentals_for(self, key: str) -> List[Rental]:
        return [r for r in self.rentals.values() if r.is_open and r.bike_key == key]

    def latest_rental_for(self, key: str) -> Optional[Rental]:
        latest = None
        for rental in self.rentals.values():
            if rental.bike_key == key:
                latest = rental
        return latest

    def is_empty(self) -> bool:
        return not (self.bikes or self.customers or self.rentals)

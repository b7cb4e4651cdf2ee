"""
Rental Engine Module

The business operations of the rental shop and the enforcement of the bike
and rental state machines. Every operation returns its result or raises one
``RentalError`` subclass; storage write failures are logged and counted but
never undo the in-memory change that triggered them.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Union
import logging
import threading

from .allocator import IdAllocator
from .config import get_config
from .currency import Money, to_decimal
from .errors import (
    AlreadyFinalized, BikeNotAvailable, BikeNotFound, CustomerNotFound,
    DuplicateBikeId, InvalidBikeState, InvalidInput, RentalNotFound, StorageError
)
from .logging_config import log_action
from .models import (
    BIKES, CUSTOMERS, RENTALS,
    Bike, BikeStatus, Customer, Rental, RentalState, bike_key
)
from .storage import StorageInterface

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutReceipt:
    """Outcome of a successful checkout"""
    rental_id: int
    customer_id: int
    customer_name: str
    bike_id: str
    bike_label: str
    hourly_rate: Money
    duration_hours: int
    charge: Money


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _whole_hours(duration_hours) -> int:
    """Validate a billing duration: a positive whole number of hours"""
    if isinstance(duration_hours, bool):
        raise InvalidInput("Rental duration must be a whole number of hours")
    try:
        hours = to_decimal(duration_hours)
    except ValueError:
        raise InvalidInput(f"Rental duration must be a whole number of hours, got {duration_hours!r}")
    if hours != hours.to_integral_value():
        raise InvalidInput("Rental duration must be in whole hours; partial hours are not billed")
    if hours <= 0:
        raise InvalidInput("Rental duration must be greater than zero hours")
    return int(hours)


def _charge(rate: Money, hours: int) -> Money:
    try:
        return rate * hours
    except ValueError as e:
        raise InvalidInput(f"Cannot bill {hours} hours at {rate.to_string()}/hr: {e}")


class RentalEngine:
    """
    Manages bikes, customers and rentals on top of a storage backend.

    The engine owns the in-memory ``RentalState`` and the id allocator. Both
    are rebuilt from storage at construction.
    """

    def __init__(
        self,
        storage: StorageInterface,
        config=None,
        allocator: Optional[IdAllocator] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        if config is None:
            config = get_config()

        self.storage = storage
        self.currency = config.currency_unit
        self.bike_defaults = config.bike_defaults
        self.allocator = allocator or IdAllocator()
        self._clock = clock or _utcnow
        self._lock = threading.RLock()
        self.persistence_failures = 0

        self.state: RentalState = storage.load_state()

        sequences = storage.load_sequences()
        self.allocator.seed(Customer, self.state.customers.keys(), sequences.get(Customer.__name__))
        self.allocator.seed(Rental, self.state.rentals.keys(), sequences.get(Rental.__name__))

        for problem in self.check_invariants():
            logger.warning("Inconsistent state loaded from %s storage: %s", storage.name, problem)
        self._release_orphaned_bikes()

        logger.info(
            "Loaded %d bikes, %d customers, %d rentals from %s storage",
            len(self.state.bikes), len(self.state.customers), len(self.state.rentals), storage.name
        )

    # Persistence

    def _persist(self, *changes, sequences: bool = False) -> bool:
        """
        Write the records changed by one operation as a single unit.

        Args:
            changes: (collection, record) pairs, in write order
            sequences: Also write the allocator counters
        """
        collections = ", ".join(collection for collection, _ in changes)
        try:
            with self.storage.operation():
                if sequences:
                    self.storage.save_sequences(self.allocator.snapshot())
                for collection, record in changes:
                    self.storage.sync(self.state, collection, record)
            return True
        except StorageError as e:
            self.persistence_failures += 1
            logger.error("Failed to persist %s change: %s", collections, e)
            return False

    def _release_orphaned_bikes(self) -> None:
        """Make RENTED bikes without an open rental AVAILABLE again"""
        for key, bike in self.state.bikes.items():
            if bike.status is BikeStatus.RENTED and not self.state.open_rentals_for(key):
                bike._transition(BikeStatus.AVAILABLE)
                logger.warning("Bike %s had no open rental; marked AVAILABLE", bike.bike_id)
                self._persist((BIKES, bike))

    # Lookups

    def find_customer(self, customer_id: int) -> Optional[Customer]:
        """Get customer by ID"""
        return self.state.customers.get(customer_id)

    def find_bike(self, bike_id: str) -> Optional[Bike]:
        """Get bike by ID, ignoring case"""
        if not isinstance(bike_id, str):
            return None
        return self.state.bikes.get(bike_key(bike_id))

    def find_rental(self, rental_id: int) -> Optional[Rental]:
        return self.state.rentals.get(rental_id)

    def bike_for(self, rental: Rental) -> Bike:
        return self.state.bikes[rental.bike_key]

    def customer_for(self, rental: Rental) -> Customer:
        return self.state.customers[rental.customer_id]

    def _require_bike(self, bike_id: str) -> Bike:
        bike = self.find_bike(bike_id)
        if bike is None:
            raise BikeNotFound(f"Bike {bike_id} not found")
        return bike

    # Customers

    def add_customer(self, name: str) -> Customer:
        """
        Register a new customer.

        Raises:
            InvalidInput: If the name is blank
        """
        if not isinstance(name, str) or not name.strip():
            raise InvalidInput("Customer name must not be blank")

        with self._lock:
            customer = Customer(customer_id=self.allocator.next(Customer), name=name.strip())
            self.state.customers[customer.customer_id] = customer
            self._persist((CUSTOMERS, customer), sequences=True)

        log_action(logger, "info", f"Customer {customer.customer_id} added",
                   action="add_customer", resource=f"customer:{customer.customer_id}")
        return customer

    def list_customers(self) -> List[Customer]:
        return list(self.state.customers.values())

    # Bikes

    def add_bike(self, bike_id: str, label: str, rate, *, note: Optional[str] = None) -> Bike:
        """
        Add a bike to the inventory in AVAILABLE state.

        Args:
            bike_id: Externally supplied id, unique ignoring case
            label: Bike type, e.g. "Mountain Bike"
            rate: Hourly rate in the configured currency
            note: Free-text note; defaults from ``BikeDefaults``

        Raises:
            InvalidInput: Blank id, or a negative or non-numeric rate
            DuplicateBikeId: A bike with that id already exists
        """
        if not isinstance(bike_id, str) or not bike_id.strip():
            raise InvalidInput("Bike id must not be blank")
        try:
            hourly_rate = Money(to_decimal(rate), self.currency)
        except ValueError:
            raise InvalidInput(f"Hourly rate must be a number in range, got {rate!r}")
        if hourly_rate.is_negative():
            raise InvalidInput("Hourly rate must not be negative")

        with self._lock:
            if bike_key(bike_id) in self.state.bikes:
                raise DuplicateBikeId(f"Bike {bike_id.strip()} already exists")

            bike = Bike(
                bike_id=bike_id.strip(),
                label=(label or "").strip(),
                hourly_rate=hourly_rate,
                last_maintenance=self.bike_defaults.maintenance_timestamp(self._clock()),
                note=self.bike_defaults.note if note is None else note,
            )
            self.state.bikes[bike.key] = bike
            self._persist((BIKES, bike))

        log_action(logger, "info", f"Bike {bike.bike_id} added",
                   action="add_bike", resource=f"bike:{bike.bike_id}",
                   extra={"hourly_rate": str(bike.hourly_rate.amount)})
        return bike

    def list_bikes(self) -> List[Bike]:
        return list(self.state.bikes.values())

    def list_available_bikes(self) -> List[Bike]:
        """Bikes in AVAILABLE state, in inventory order"""
        return [bike for bike in self.state.bikes.values() if bike.status is BikeStatus.AVAILABLE]

    def send_bike_to_repair(self, bike_id: str) -> Bike:
        """
        Move an AVAILABLE bike to IN_REPAIR.

        Raises:
            BikeNotFound: No such bike
            InvalidBikeState: The bike is not AVAILABLE
        """
        with self._lock:
            bike = self._require_bike(bike_id)
            if bike.status is not BikeStatus.AVAILABLE:
                raise InvalidBikeState(
                    f"Bike {bike.bike_id} cannot be sent to repair. Status: {bike.status.value}"
                )
            bike._transition(BikeStatus.IN_REPAIR)
            self._persist((BIKES, bike))

        log_action(logger, "info", f"Bike {bike.bike_id} sent to repair",
                   action="send_bike_to_repair", resource=f"bike:{bike.bike_id}")
        return bike

    def return_bike_from_repair(self, bike_id: str) -> Bike:
        """
        Move an IN_REPAIR bike back to AVAILABLE, stamping its maintenance time.

        Raises:
            BikeNotFound: No such bike
            InvalidBikeState: The bike is not IN_REPAIR
        """
        with self._lock:
            bike = self._require_bike(bike_id)
            if bike.status is not BikeStatus.IN_REPAIR:
                raise InvalidBikeState(
                    f"Bike {bike.bike_id} is not in repair. Status: {bike.status.value}"
                )
            bike._transition(BikeStatus.AVAILABLE)
            bike.last_maintenance = self._clock()
            self._persist((BIKES, bike))

        log_action(logger, "info", f"Bike {bike.bike_id} returned from repair",
                   action="return_bike_from_repair", resource=f"bike:{bike.bike_id}")
        return bike

    def calculate_cost_estimate(self, bike_id: str, duration_hours) -> Money:
        """
        Estimate the charge for renting a bike, whatever its current status.

        Raises:
            BikeNotFound: No such bike
            InvalidInput: The duration is not a positive whole number
        """
        bike = self._require_bike(bike_id)
        hours = _whole_hours(duration_hours)
        return _charge(bike.hourly_rate, hours)

    # Rentals

    def rent_bike(self, customer_id: int, bike_id: str) -> Rental:
        """
        Start a rental of an AVAILABLE bike.

        Raises:
            CustomerNotFound: No such customer
            BikeNotAvailable: No such bike, or the bike is rented or in repair
        """
        with self._lock:
            customer = self.find_customer(customer_id)
            if customer is None:
                raise CustomerNotFound(f"Customer ID {customer_id} not found")

            bike = self.find_bike(bike_id)
            if bike is None or bike.status is not BikeStatus.AVAILABLE:
                raise BikeNotAvailable(f"Bike ID {bike_id} is not available or does not exist")

            rental = Rental(
                rental_id=self.allocator.next(Rental),
                customer_id=customer.customer_id,
                bike_id=bike.bike_id,
                start_time=self._clock(),
            )
            bike._transition(BikeStatus.RENTED)
            self.state.rentals[rental.rental_id] = rental

            self._persist((RENTALS, rental), (BIKES, bike), sequences=True)

        log_action(logger, "info", f"Rental {rental.rental_id} started",
                   action="rent_bike", resource=f"rental:{rental.rental_id}",
                   extra={"customer_id": customer.customer_id, "bike_id": bike.bike_id})
        return rental

    def _resolve_rental(self, selector: Union[int, str]) -> Rental:
        """
        Find the rental a checkout refers to.

        An int is a rental id. A string is a bike id, falling back to a
        rental id when it is all digits and names no bike. For a bike, its
        open rental wins; otherwise its most recent one.
        """
        if isinstance(selector, bool):
            raise RentalNotFound(f"No rental matches {selector!r}")

        if isinstance(selector, int):
            rental = self.find_rental(selector)
            if rental is None:
                raise RentalNotFound(f"Rental {selector} not found")
            return rental

        if isinstance(selector, str) and selector.strip():
            key = bike_key(selector)
            if key in self.state.bikes:
                open_rentals = self.state.open_rentals_for(key)
                rental = open_rentals[0] if open_rentals else self.state.latest_rental_for(key)
                if rental is None:
                    raise RentalNotFound(f"Bike ID {selector} is not actively rented")
                return rental
            if selector.strip().isdigit():
                return self._resolve_rental(int(selector.strip()))

        raise RentalNotFound(f"No rental matches {selector!r}")

    def checkout_and_return_bike(self, selector: Union[int, str], duration_hours) -> CheckoutReceipt:
        """
        Close a rental, bill whole hours at the bike's rate and make the bike
        AVAILABLE again.

        Args:
            selector: Bike id or rental id
            duration_hours: Whole hours to bill, greater than zero

        Raises:
            InvalidInput: The duration is not a positive whole number
            RentalNotFound: Nothing matches the selector
            AlreadyFinalized: The rental was already checked out
        """
        hours = _whole_hours(duration_hours)

        with self._lock:
            rental = self._resolve_rental(selector)
            if rental.closed:
                raise AlreadyFinalized(f"Rental {rental.rental_id} has already been finalized")

            bike = self.bike_for(rental)
            customer = self.customer_for(rental)
            if bike.status is not BikeStatus.RENTED:
                raise InvalidBikeState(
                    f"Bike {bike.bike_id} of rental {rental.rental_id} is {bike.status.value}, not RENTED"
                )
            charge = _charge(bike.hourly_rate, hours)

            rental._close(charge, hours, self._clock())
            bike._transition(BikeStatus.AVAILABLE)

            self._persist((RENTALS, rental), (BIKES, bike))

        log_action(logger, "info", f"Rental {rental.rental_id} closed",
                   action="checkout_and_return_bike", resource=f"rental:{rental.rental_id}",
                   extra={"bike_id": bike.bike_id, "hours": hours, "charge": str(charge.amount)})

        return CheckoutReceipt(
            rental_id=rental.rental_id,
            customer_id=customer.customer_id,
            customer_name=customer.name,
            bike_id=bike.bike_id,
            bike_label=bike.label,
            hourly_rate=bike.hourly_rate,
            duration_hours=hours,
            charge=charge,
        )

    def get_currently_rented_bikes(self) -> List[Rental]:
        """Open rentals, in the order they were started"""
        return [rental for rental in self.state.rentals.values() if rental.is_open]

    def list_rentals(self) -> List[Rental]:
        return list(self.state.rentals.values())

    # Diagnostics

    def is_empty(self) -> bool:
        return self.state.is_empty()

    def check_invariants(self) -> List[str]:
        """
        Describe every bike whose status disagrees with its open rentals.

        A bike is RENTED exactly when one open rental references it.
        """
        problems = []
        for key, bike in self.state.bikes.items():
            open_count = len(self.state.open_rentals_for(key))
            if bike.status is BikeStatus.RENTED and open_count != 1:
                problems.append(f"Bike {bike.bike_id} is RENTED with {open_count} open rentals")
            elif bike.status is not BikeStatus.RENTED and open_count:
                problems.append(
                    f"Bike {bike.bike_id} is {bike.status.value} with {open_count} open rentals"
                )
        return problems

"""
Tests for Bike, Customer and Rental records and the RentalState graph
"""

import logging
import pytest
from decimal import Decimal
from datetime import datetime, timezone

from bike_rental.currency import Money, Currency
from bike_rental.errors import InvalidBikeState
from bike_rental.models import (
    BIKES, CUSTOMERS, RENTALS,
    Bike, BikeDefaults, BikeStatus, Customer, Rental, RentalState, bike_key
)


START = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def make_bike(bike_id="R101", label="Road Bike", rate="150.00", **kwargs):
    return Bike(bike_id=bike_id, label=label, hourly_rate=Money(Decimal(rate), Currency.INR), **kwargs)


class TestBike:
    """Test Bike record and its status machine"""

    def test_new_bike_is_available(self):
        """Test default status"""
        bike = make_bike()
        assert bike.status is BikeStatus.AVAILABLE
        assert bike.is_available
        assert bike.last_maintenance is None
        assert bike.note == ""

    def test_allowed_transitions(self):
        """Test AVAILABLE -> RENTED -> AVAILABLE -> IN_REPAIR -> AVAILABLE"""
        bike = make_bike()
        bike._transition(BikeStatus.RENTED)
        assert bike.status is BikeStatus.RENTED
        bike._transition(BikeStatus.AVAILABLE)
        bike._transition(BikeStatus.IN_REPAIR)
        assert bike.status is BikeStatus.IN_REPAIR
        bike._transition(BikeStatus.AVAILABLE)
        assert bike.is_available

    @pytest.mark.parametrize("path", [
        (BikeStatus.RENTED, BikeStatus.IN_REPAIR),
        (BikeStatus.IN_REPAIR, BikeStatus.RENTED),
        (BikeStatus.RENTED, BikeStatus.RENTED),
        (BikeStatus.AVAILABLE,),
    ])
    def test_illegal_transitions(self, path):
        """Test illegal moves raise InvalidBikeState and leave status alone"""
        bike = make_bike()
        for target in path[:-1]:
            bike._transition(target)
        before = bike.status

        with pytest.raises(InvalidBikeState):
            bike._transition(path[-1])
        assert bike.status is before

    def test_status_is_read_only(self):
        """Test status cannot be assigned directly"""
        bike = make_bike()
        with pytest.raises(AttributeError):
            bike.status = BikeStatus.RENTED

    def test_key_ignores_case_and_whitespace(self):
        """Test arena key"""
        assert make_bike(bike_id="R101").key == "r101"
        assert bike_key("  r101 ") == bike_key("R101")

    def test_dict_conversion(self):
        """Test to_dict/from_dict keep every field"""
        bike = make_bike(last_maintenance=START, note="new tyres")
        bike._transition(BikeStatus.IN_REPAIR)

        data = bike.to_dict()
        assert data["status"] == "IN_REPAIR"
        assert data["hourly_rate"] == {"amount": "150.00", "currency": "INR"}
        assert data["last_maintenance"] == START.isoformat()

        restored = Bike.from_dict(data)
        assert restored == bike
        assert restored is not bike

    def test_str(self):
        """Test listing format"""
        assert str(make_bike()) == "Bike ID: R101, Type: Road Bike, Rate: ₹150.00/hr, Status: AVAILABLE"


class TestBikeDefaults:
    """Test BikeDefaults policy"""

    def test_now_policy(self):
        """Test maintenance stamped with creation time"""
        assert BikeDefaults().maintenance_timestamp(START) == START

    def test_unset_policy(self):
        """Test maintenance left empty"""
        assert BikeDefaults(maintenance="unset").maintenance_timestamp(START) is None

    def test_invalid_policy(self):
        """Test unknown policy is rejected"""
        with pytest.raises(ValueError, match="maintenance"):
            BikeDefaults(maintenance="yesterday")


class TestCustomer:
    """Test Customer record"""

    def test_customer_is_immutable(self):
        """Test frozen dataclass"""
        customer = Customer(customer_id=1, name="Alice")
        with pytest.raises(AttributeError):
            customer.name = "Bob"

    def test_dict_conversion(self):
        """Test to_dict/from_dict"""
        customer = Customer(customer_id=7, name="Priya Singh")
        assert Customer.from_dict(customer.to_dict()) == customer
        assert str(customer) == "Customer ID: 7, Name: Priya Singh"


class TestRental:
    """Test Rental record"""

    def test_new_rental_is_open(self):
        """Test open rental has no charge"""
        rental = Rental(rental_id=1, customer_id=1, bike_id="R101", start_time=START)
        assert rental.is_open
        assert not rental.closed
        assert rental.total_charge is None
        assert rental.duration_hours is None
        assert rental.end_time is None
        assert rental.bike_key == "r101"

    def test_close_once(self):
        """Test closing fixes the charge and a second close changes nothing"""
        rental = Rental(rental_id=1, customer_id=1, bike_id="R101", start_time=START)
        charge = Money(Decimal("450.00"), Currency.INR)
        rental._close(charge, 3, START)

        assert rental.closed
        assert rental.total_charge == charge
        assert rental.duration_hours == 3

        rental._close(Money(Decimal("1.00"), Currency.INR), 9, START)
        assert rental.total_charge == charge
        assert rental.duration_hours == 3

    def test_dict_conversion(self):
        """Test open and closed rentals survive to_dict/from_dict"""
        rental = Rental(rental_id=4, customer_id=2, bike_id="M205", start_time=START)
        assert Rental.from_dict(rental.to_dict()) == rental

        rental._close(Money(Decimal("360.00"), Currency.INR), 2, START)
        data = rental.to_dict()
        assert data["closed"] is True
        assert data["total_charge"] == {"amount": "360.00", "currency": "INR"}
        assert Rental.from_dict(data) == rental


class TestRentalState:
    """Test the in-memory object graph"""

    def test_link_resolves_by_id(self):
        """Test rentals are attached when bike and customer exist"""
        bikes = [make_bike("R101"), make_bike("M205", "Mountain Bike", "180.00")]
        customers = [Customer(1, "Rahul Sharma")]
        rentals = [Rental(1, 1, "r101", START)]

        state = RentalState.link(bikes, customers, rentals)

        assert list(state.bikes) == ["r101", "m205"]
        assert state.rentals[1].bike_key in state.bikes
        assert state.bikes["r101"] is bikes[0]

    def test_link_drops_dangling_rentals(self, caplog):
        """Test rentals with missing references are dropped with a warning"""
        bikes = [make_bike("R101")]
        customers = [Customer(1, "Rahul Sharma")]
        rentals = [
            Rental(1, 1, "R101", START),
            Rental(2, 99, "R101", START),
            Rental(3, 1, "X999", START),
        ]

        with caplog.at_level(logging.WARNING, logger="bike_rental"):
            state = RentalState.link(bikes, customers, rentals)

        assert list(state.rentals) == [1]
        assert "customer 99 not found" in caplog.text
        assert "bike X999 not found" in caplog.text

    def test_records_and_queries(self):
        """Test records, open_rentals_for and latest_rental_for"""
        state = RentalState.link([make_bike("R101")], [Customer(1, "A")], [])
        assert state.records(BIKES)[0].bike_id == "R101"
        assert state.records(CUSTOMERS)[0].name == "A"
        assert state.records(RENTALS) == []
        assert state.latest_rental_for("r101") is None

        first = Rental(1, 1, "R101", START)
        first._close(Money(Decimal("150"), Currency.INR), 1, START)
        second = Rental(2, 1, "R101", START)
        state.rentals[1] = first
        state.rentals[2] = second

        assert state.open_rentals_for("r101") == [second]
        assert state.latest_rental_for("r101") is second

        with pytest.raises(ValueError):
            state.records("invoices")

    def test_is_empty(self):
        """Test empty detection"""
        assert RentalState().is_empty()
        assert not RentalState.link([], [Customer(1, "A")], []).is_empty()

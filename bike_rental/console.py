"""
Interactive admin console.

Thin front end over ``RentalEngine``: it prompts, calls one engine operation
per request, and prints whatever the engine returns or raises.
"""

from typing import Callable, List, Optional
import logging

from .config import RentalConfig
from .currency import Money
from .engine import CheckoutReceipt, RentalEngine
from .errors import RentalError
from .models import Rental

logger = logging.getLogger(__name__)

RULE = "================================================="

MENU_OPTIONS = (
    "Add Customer and Assign Bike (Start Rental)",
    "Add New Bike to Inventory",
    "See Current Bikes Available",
    "List Actively Rented Bikes",
    "Complete Rental & Generate Receipt (Checkout)",
    "Send Bike to Repair",
    "Return Bike from Repair",
    "Estimate Rental Cost",
    "Exit System",
)


def seed_demo_data(engine: RentalEngine) -> None:
    """Populate an empty shop with a few customers, bikes and one rental"""
    engine.add_customer("Rahul Sharma")
    engine.add_customer("Priya Singh")

    engine.add_bike("R101", "Road Bike", "150.00")
    engine.add_bike("M205", "Mountain Bike", "180.00")
    engine.add_bike("E300", "Electric Scooter", "250.00")

    engine.rent_bike(1, "R101")


def format_receipt(receipt: CheckoutReceipt) -> List[str]:
    return [
        f"--- RENTAL RECEIPT (ID: {receipt.rental_id}) ---",
        f"Customer Name: {receipt.customer_name}",
        f"Bike Returned: {receipt.bike_label} (ID: {receipt.bike_id})",
        f"Hourly Rate: {receipt.hourly_rate.to_string()}",
        f"Total Duration: {receipt.duration_hours} hours",
        f"FINAL CHARGE: {receipt.charge.to_string()}",
        "----------------------------------------",
    ]


class RentalConsole:
    """Menu-driven console session"""

    def __init__(
        self,
        engine: RentalEngine,
        config: RentalConfig,
        input_fn: Optional[Callable[[str], str]] = None,
        output: Optional[Callable[[str], None]] = None
    ):
        self.engine = engine
        self.config = config
        self._input = input_fn or input
        self._print = output or print

    def _ask(self, prompt: str) -> str:
        return self._input(prompt).strip()

    def _ask_int(self, prompt: str) -> Optional[int]:
        answer = self._ask(prompt)
        try:
            return int(answer)
        except ValueError:
            self._print(f"  ❌ ERROR: '{answer}' is not a whole number.")
            return None

    def _fail(self, error: RentalError) -> None:
        self._print(f"  ❌ ERROR: {error.message}")

    def authenticate(self) -> bool:
        self._print(RULE)
        self._print("       BIKE RENTAL SYSTEM - ADMIN LOGIN          ")
        self._print(RULE)
        username = self._input("Username: ")
        password = self._input("Password: ")
        if username == self.config.admin_username and password == self.config.admin_password:
            return True
        logger.warning("Failed admin login for user %r", username)
        return False

    def display_menu(self) -> None:
        self._print("")
        self._print(RULE)
        self._print("            BIKE RENTAL SYSTEM MENU              ")
        self._print(RULE)
        for number, option in enumerate(MENU_OPTIONS, start=1):
            self._print(f"{number}) {option}")
        self._print(RULE)

    def run(self) -> int:
        """
        Log in and serve the menu until the user exits.

        Returns:
            Process exit status
        """
        if not self.authenticate():
            self._print(RULE)
            self._print("❌ ACCESS DENIED. Invalid credentials. Exiting.")
            self._print(RULE)
            return 1

        handlers = (
            self.handle_add_customer_with_rental,
            self.handle_add_bike,
            self.handle_list_available_bikes,
            self.handle_list_rented_bikes,
            self.handle_checkout_and_return,
            self.handle_send_to_repair,
            self.handle_return_from_repair,
            self.handle_cost_estimate,
        )

        while True:
            self.display_menu()
            choice = self._ask(f"Enter your choice (1-{len(MENU_OPTIONS)}): ")
            if choice == str(len(MENU_OPTIONS)):
                self._print("\n👋 Thank you for using the Bike Rental System! Goodbye.")
                if self.engine.persistence_failures:
                    self._print(f"⚠️ {self.engine.persistence_failures} change(s) could not be saved.")
                return 0
            if choice.isdigit() and 1 <= int(choice) <= len(handlers):
                handlers[int(choice) - 1]()
            else:
                self._print(f"\n⚠️ Invalid choice. Please enter a number between 1 and {len(MENU_OPTIONS)}.")

    # Menu handlers

    def handle_add_customer_with_rental(self) -> None:
        self._print("\n--- ADD CUSTOMER & START RENTAL ---")
        name = self._ask("Enter Customer Name: ")
        try:
            customer = self.engine.add_customer(name)
        except RentalError as e:
            self._fail(e)
            return
        self._print(f"  ✅ SUCCESS: New Customer {customer.name} added with ID: {customer.customer_id}")

        if self._ask(f"Do you want to assign a bike to {customer.name} now? (y/n): ").lower() != "y":
            return

        self.handle_list_available_bikes()
        bike_id = self._ask("Enter Bike ID to rent: ")
        try:
            rental = self.engine.rent_bike(customer.customer_id, bike_id)
        except RentalError as e:
            self._fail(e)
            return
        self._print(f"  ✅ SUCCESS: Rental started! Rental ID: {rental.rental_id}")

    def handle_add_bike(self) -> None:
        self._print("\n--- ADD NEW BIKE TO INVENTORY ---")
        bike_id = self._ask("Enter Bike ID (e.g., K999): ")
        label = self._ask("Enter Bike Type (e.g., City Cruiser): ")
        rate = self._ask(f"Enter Hourly Rate (e.g., 150.00): {self.engine.currency.symbol}")
        try:
            bike = self.engine.add_bike(bike_id, label, rate)
        except RentalError as e:
            self._fail(e)
            return
        self._print(f"  ✅ SUCCESS: Bike {bike.bike_id} ({bike.label}) added to inventory.")

    def handle_list_available_bikes(self) -> None:
        self._print("\n--- CURRENTLY AVAILABLE BIKES ---")
        bikes = self.engine.list_available_bikes()
        if not bikes:
            self._print("  (No bikes currently available for rent.)")
        for bike in bikes:
            self._print(str(bike))

    def _describe_rental(self, rental: Rental) -> str:
        bike = self.engine.bike_for(rental)
        customer = self.engine.customer_for(rental)
        return (f"  ID: {rental.rental_id} | Customer: {customer.name} | "
                f"Bike ID: {bike.bike_id} ({bike.label})")

    def handle_list_rented_bikes(self) -> None:
        self._print("\n--- CURRENTLY ACTIVELY RENTED BIKES ---")
        rentals = self.engine.get_currently_rented_bikes()
        if not rentals:
            self._print("  (No bikes are currently out for rental.)")
        for rental in rentals:
            self._print(self._describe_rental(rental))

    def handle_checkout_and_return(self) -> None:
        self._print("\n--- COMPLETE RENTAL & RECEIPT ---")
        self.handle_list_rented_bikes()
        selector = self._ask("Enter the Bike ID (or Rental ID) being returned: ")
        hours = self._ask_int("Enter the rental duration in WHOLE HOURS: ")
        if hours is None:
            return
        try:
            receipt = self.engine.checkout_and_return_bike(selector, hours)
        except RentalError as e:
            self._fail(e)
            return
        self._print("")
        for line in format_receipt(receipt):
            self._print(line)

    def handle_send_to_repair(self) -> None:
        self._print("\n--- SEND BIKE TO REPAIR ---")
        bike_id = self._ask("Enter Bike ID: ")
        try:
            bike = self.engine.send_bike_to_repair(bike_id)
        except RentalError as e:
            self._fail(e)
            return
        self._print(f"  ✅ Bike {bike.bike_id} sent to repair.")

    def handle_return_from_repair(self) -> None:
        self._print("\n--- RETURN BIKE FROM REPAIR ---")
        bike_id = self._ask("Enter Bike ID: ")
        try:
            bike = self.engine.return_bike_from_repair(bike_id)
        except RentalError as e:
            self._fail(e)
            return
        self._print(f"  ✅ Bike {bike.bike_id} returned from repair.")

    def handle_cost_estimate(self) -> None:
        self._print("\n--- ESTIMATE RENTAL COST ---")
        bike_id = self._ask("Enter Bike ID: ")
        hours = self._ask_int("Enter the rental duration in WHOLE HOURS: ")
        if hours is None:
            return
        try:
            estimate: Money = self.engine.calculate_cost_estimate(bike_id, hours)
        except RentalError as e:
            self._fail(e)
            return
        self._print(f"  Estimated charge for {hours} hours: {estimate.to_string()}")

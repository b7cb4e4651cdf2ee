"""
Bike Rental System

Tracks bikes, customers and rental transactions for a small rental shop,
with interchangeable persistence backends and Decimal-precise billing.
"""

__version__ = "1.0.0"

"""
Bank Ledger

Balance and transaction-log core for a digital bank: administrator balance
adjustments, peer-to-peer transfers and receipt lookups, with fixed-point
Decimal money and all-or-nothing ledger writes.
"""

__version__ = "1.0.0"

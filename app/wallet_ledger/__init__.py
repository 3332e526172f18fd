"""Crypto payment intake and wallet ledger service."""

__version__ = "1.0.0"

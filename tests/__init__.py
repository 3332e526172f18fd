"""
Wallet Ledger Test Suite

This package contains all tests for the wallet ledger service including:
- Unit tests for the state machine, signatures and webhook parsing
- Ledger, refund and reconciliation tests against SQLite
- Webhook redelivery and concurrency tests
- HTTP tests for the FastAPI application
"""

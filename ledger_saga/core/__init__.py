"""
Core modules for ledger-saga.

This package contains the creation saga, compensations, consistency
checks and repair, and health monitoring.
"""

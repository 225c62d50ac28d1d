"""
Core modules for credit_meter.

This package contains credit arithmetic, the ratio store, the account
ledger, the deduction coordinator and administrative operations.
"""

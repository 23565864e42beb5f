"""Paid generation task lifecycle engine with an idempotent credit ledger."""

__version__ = "0.1.0"

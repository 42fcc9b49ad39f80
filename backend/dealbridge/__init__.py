"""Reconciliation layer between Pipedrive deals and QuickBooks invoices."""

__version__ = "0.1.0"

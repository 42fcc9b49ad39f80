"""Credential lifecycle, API clients and the reconciliation services."""
